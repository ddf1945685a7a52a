import logging
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Literal, Optional
from uuid import uuid4

from ledger.errors import (
    AlreadyClaimedError,
    AlreadyCompletedError,
    BonusNotFoundError,
    InsufficientBalanceError,
    NoActivePackageError,
    PackageNotFoundError,
    SurveyInactiveError,
    SurveyNotFoundError,
    ValidationError,
)
from ledger.models import (
    BonusMetadata,
    PackagePurchaseMetadata,
    SurveyEarningMetadata,
    TransactionType,
)
from ledger.service import LedgerService
from ledger.store import (
    BONUSES,
    PACKAGES,
    SURVEY_COMPLETIONS,
    SURVEYS,
    USER_BONUSES,
    USER_PACKAGES,
    USERS,
    ArrayRemove,
    ArrayUnion,
    DocumentExistsError,
    Increment,
    Transaction,
)

from .models import (
    ActivePackage,
    AddBonusRequest,
    AddPackageRequest,
    AddSurveyRequest,
    Bonus,
    BonusClaimResponse,
    Package,
    PackagePurchaseResponse,
    Survey,
    SurveyCompletion,
    SurveyCompletionResponse,
    SurveyListing,
    UserBonuses,
    UserPackage,
)

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8

Funding = Literal["balance", "external"]


def generate_referral_code() -> str:
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def completion_id(user_id: str, survey_id: str) -> str:
    return f"{user_id}:{survey_id}"


class EntitlementService:
    """Surveys, packages and bonuses, layered on the ledger's store transactions."""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger

    @property
    def store(self):
        return self.ledger.store

    def _now(self) -> datetime:
        return self.ledger.clock()

    # Surveys

    async def complete_survey(self, user_id: str, survey_id: str) -> SurveyCompletionResponse:
        async with self.store.transaction() as txn:
            survey = await self._load_survey(txn, survey_id)
            account = await self.ledger.load_account(txn, user_id)

            key = completion_id(user_id, survey_id)
            if await txn.get(SURVEY_COMPLETIONS, key) is not None:
                logger.warning("Survey %s already completed by user %s", survey_id, user_id)
                raise AlreadyCompletedError("Survey already completed")

            now = self._now()
            if not account.has_active_package(now):
                raise NoActivePackageError("No active package. Purchase a package to take surveys")

            completion = SurveyCompletion(
                id=key,
                user_id=user_id,
                survey_id=survey_id,
                survey_title=survey.title,
                reward=survey.reward,
                completed_at=now,
            )
            await txn.create(SURVEY_COMPLETIONS, key, completion.model_dump())

            change = await self.ledger.apply_balance_delta(
                user_id,
                survey.reward,
                TransactionType.SURVEY_EARNING,
                SurveyEarningMetadata(
                    survey_id=survey_id,
                    survey_title=survey.title,
                    category=survey.category,
                    duration=survey.duration,
                ),
                txn=txn,
            )
            await txn.update(USERS, user_id, {"available_surveys": Increment(-1)})

        logger.info("User %s completed survey %s for %s", user_id, survey_id, survey.reward)
        return SurveyCompletionResponse(
            reward=survey.reward,
            survey=survey,
            completion=completion,
            transaction=change.transaction,
        )

    async def list_surveys(self, user_id: Optional[str] = None) -> list[SurveyListing]:
        docs = await self.store.query(SURVEYS, {"is_active": True}, order_by="reward", descending=True)
        completed: set[str] = set()
        if user_id:
            completions = await self.store.query(SURVEY_COMPLETIONS, {"user_id": user_id})
            completed = {c["survey_id"] for c in completions}
        return [SurveyListing(**d, completed=d["id"] in completed) for d in docs]

    async def add_survey(self, request: AddSurveyRequest) -> Survey:
        now = self._now()
        survey = Survey(id=str(uuid4()), created_at=now, updated_at=now, **request.model_dump())
        await self.store.set(SURVEYS, survey.id, survey.model_dump())
        logger.info("Added survey %s (%s)", survey.id, survey.title)
        return survey

    async def _load_survey(self, txn: Transaction, survey_id: str) -> Survey:
        data = await txn.get(SURVEYS, survey_id)
        if data is None:
            raise SurveyNotFoundError("Survey not found")
        survey = Survey(**data)
        if not survey.is_active:
            raise SurveyInactiveError("Survey is no longer available")
        return survey

    # Packages

    async def purchase_package(
        self,
        user_id: str,
        package_id: str,
        amount_paid: Optional[Decimal] = None,
        funding: Funding = "balance",
        reference: Optional[str] = None,
    ) -> PackagePurchaseResponse:
        async with self.store.transaction() as txn:
            package = await self._load_package(txn, package_id)
            account = await self.ledger.load_account(txn, user_id)

            price = package.price if amount_paid is None else amount_paid
            if price < package.price:
                raise ValidationError("Amount paid does not cover the package price")

            metadata = PackagePurchaseMetadata(
                package_id=package.id,
                package_name=package.name,
                surveys=package.surveys,
                duration=package.duration,
                funding=funding,
                amount_paid=price,
                reference=reference,
            )
            if funding == "balance":
                if account.balance < price:
                    logger.warning(
                        "Package %s rejected for user %s: balance %s", package_id, user_id, account.balance
                    )
                    raise InsufficientBalanceError("Insufficient balance for this package")
                delta = -price
            else:
                # Paid through the gateway; the ledger entry is informational only.
                delta = Decimal("0")

            change = await self.ledger.apply_balance_delta(
                user_id, delta, TransactionType.PACKAGE_PURCHASE, metadata, txn=txn
            )

            now = self._now()
            expires_at = now + timedelta(days=package.duration)
            await txn.update(USERS, user_id, {
                "current_package_id": package.id,
                "available_surveys": Increment(package.surveys),
                "package_expiry": expires_at,
                "updated_at": now,
            })

            user_package = UserPackage(
                id=str(uuid4()),
                user_id=user_id,
                package_id=package.id,
                package_name=package.name,
                price=price,
                surveys=package.surveys,
                duration=package.duration,
                funding=funding,
                purchased_at=now,
                expires_at=expires_at,
            )
            await txn.create(USER_PACKAGES, user_package.id, user_package.model_dump())

        logger.info(
            "User %s bought package %s (%s funded, %s surveys until %s)",
            user_id, package.id, funding, package.surveys, expires_at.isoformat(),
        )
        return PackagePurchaseResponse(
            package=package,
            user_package=user_package,
            transaction=change.transaction,
        )

    async def list_packages(self) -> list[Package]:
        docs = await self.store.query(PACKAGES, {"is_active": True}, order_by="price")
        return [Package(**d) for d in docs]

    async def get_package(self, package_id: str, require_active: bool = False) -> Package:
        data = await self.store.get(PACKAGES, package_id)
        if data is None:
            raise PackageNotFoundError("Package not found")
        package = Package(**data)
        if require_active and not package.is_active:
            raise PackageNotFoundError("Package is no longer available")
        return package

    async def get_active_package(self, user_id: str) -> Optional[ActivePackage]:
        account = await self.ledger.get_account(user_id)
        if not account.has_active_package(self._now()):
            return None
        data = await self.store.get(PACKAGES, account.current_package_id)
        if data is None:
            return None
        return ActivePackage(
            package=Package(**data),
            available_surveys=account.available_surveys,
            package_expiry=account.package_expiry,
        )

    async def has_active_package(self, user_id: str) -> bool:
        account = await self.ledger.get_account(user_id)
        return account.has_active_package(self._now())

    async def list_user_packages(self, user_id: str) -> list[UserPackage]:
        docs = await self.store.query(
            USER_PACKAGES, {"user_id": user_id}, order_by="purchased_at", descending=True
        )
        return [UserPackage(**d) for d in docs]

    async def add_package(self, request: AddPackageRequest) -> Package:
        now = self._now()
        package = Package(id=str(uuid4()), created_at=now, updated_at=now, **request.model_dump())
        await self.store.set(PACKAGES, package.id, package.model_dump())
        logger.info("Added package %s (%s)", package.id, package.name)
        return package

    async def _load_package(self, txn: Transaction, package_id: str) -> Package:
        data = await txn.get(PACKAGES, package_id)
        if data is None:
            raise PackageNotFoundError("Package not found")
        package = Package(**data)
        if not package.is_active:
            raise PackageNotFoundError("Package is no longer available")
        return package

    # Bonuses

    async def initialize_user_bonuses(self, user_id: str) -> UserBonuses:
        available = [b["id"] for b in await self.store.query(BONUSES, {"is_active": True})]
        async with self.store.transaction() as txn:
            data = await txn.get(USER_BONUSES, user_id)
            if data is not None:
                return UserBonuses(**data)
            bonuses = self._new_user_bonuses(user_id, available)
            await txn.create(USER_BONUSES, user_id, bonuses.model_dump())
        return bonuses

    async def get_user_bonuses(self, user_id: str) -> UserBonuses:
        data = await self.store.get(USER_BONUSES, user_id)
        if data is None:
            await self.ledger.get_account(user_id)
            return await self.initialize_user_bonuses(user_id)
        return UserBonuses(**data)

    async def claim_bonus(self, user_id: str, bonus_id: str) -> BonusClaimResponse:
        async with self.store.transaction() as txn:
            bonus = await self._load_bonus(txn, bonus_id)
            await self.ledger.load_account(txn, user_id)

            data = await txn.get(USER_BONUSES, user_id)
            if data is None:
                await txn.create(USER_BONUSES, user_id, self._new_user_bonuses(user_id).model_dump())
            elif bonus_id in data.get("claimed_bonuses", []):
                logger.warning("Bonus %s already claimed by user %s", bonus_id, user_id)
                raise AlreadyClaimedError("Bonus already claimed")

            await txn.update(USER_BONUSES, user_id, {
                "claimed_bonuses": ArrayUnion(bonus_id),
                "available_bonuses": ArrayRemove(bonus_id),
                "total_bonus_earned": Increment(bonus.amount),
                "updated_at": self._now(),
            })

            transaction = None
            if bonus.amount > 0:
                change = await self.ledger.apply_balance_delta(
                    user_id,
                    bonus.amount,
                    TransactionType.BONUS,
                    BonusMetadata(bonus_id=bonus.id, bonus_name=bonus.name, bonus_type=bonus.type),
                    txn=txn,
                )
                transaction = change.transaction

        logger.info("User %s claimed bonus %s worth %s", user_id, bonus_id, bonus.amount)
        return BonusClaimResponse(bonus=bonus, amount=bonus.amount, transaction=transaction)

    async def add_bonus(self, request: AddBonusRequest) -> Bonus:
        bonus = Bonus(
            id=request.id or str(uuid4()),
            created_at=self._now(),
            **request.model_dump(exclude={"id"}),
        )
        try:
            async with self.store.transaction() as txn:
                await txn.create(BONUSES, bonus.id, bonus.model_dump())
        except DocumentExistsError:
            raise ValidationError(f"Bonus {bonus.id} already exists")
        logger.info("Added bonus %s (%s)", bonus.id, bonus.amount)
        return bonus

    async def _load_bonus(self, txn: Transaction, bonus_id: str) -> Bonus:
        data = await txn.get(BONUSES, bonus_id)
        if data is None or not data.get("is_active", True):
            raise BonusNotFoundError("Bonus not found")
        return Bonus(**data)

    def _new_user_bonuses(self, user_id: str, available: Optional[list[str]] = None) -> UserBonuses:
        now = self._now()
        return UserBonuses(
            user_id=user_id,
            available_bonuses=available or [],
            referral_code=generate_referral_code(),
            created_at=now,
            updated_at=now,
        )
