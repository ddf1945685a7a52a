import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from entitlements.service import EntitlementService
from ledger.config import Settings
from ledger.errors import (
    AccountDisabledError,
    LedgerServiceError,
    PaymentIntentNotFoundError,
    ValidationError,
)
from ledger.models import PaymentMethod
from ledger.service import LedgerService
from ledger.store import PAYMENT_INTENTS, StoreError

from .gateway import PaymentGateway, poll_payment
from .models import IntentStatus, PaymentIntent, PaymentPurpose, PollOutcome

logger = logging.getLogger(__name__)

CONFIRMABLE_STATUSES = frozenset({IntentStatus.AWAITING, IntentStatus.TIMEOUT})

STATUS_MESSAGES = {
    IntentStatus.AWAITING: "Check your phone to authorize the payment",
    IntentStatus.CONFIRMED: "Payment confirmed, applying to your account",
    IntentStatus.APPLIED: "Payment received and applied",
    IntentStatus.APPLY_FAILED: "Payment received but could not be applied; support will reconcile it",
    IntentStatus.CAN_RETRY: "Payment not completed. You can try again.",
    IntentStatus.TIMEOUT: "Payment monitoring timed out. Please check your transaction history.",
}


class PaymentService:
    """Turns gateway payments into deposits or package purchases exactly once per reference."""

    def __init__(
        self,
        ledger: LedgerService,
        entitlements: EntitlementService,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.entitlements = entitlements
        self.gateway = gateway
        self.settings = settings or ledger.settings
        self.sleep = sleep

    @property
    def store(self):
        return self.ledger.store

    async def start(
        self,
        user_id: str,
        purpose: PaymentPurpose,
        amount: Decimal,
        method: PaymentMethod = PaymentMethod.MPESA,
        phone: Optional[str] = None,
        package_id: Optional[str] = None,
    ) -> PaymentIntent:
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        account = await self.ledger.get_account(user_id)
        if not account.is_active:
            raise AccountDisabledError("Account is disabled")

        if purpose == PaymentPurpose.PACKAGE_PURCHASE:
            if not package_id:
                raise ValidationError("package_id is required for a package payment")
            package = await self.entitlements.get_package(package_id, require_active=True)
            if amount < package.price:
                raise ValidationError("Amount paid does not cover the package price")

        phone = phone or account.phone
        result = await self.gateway.initialize(amount, phone, account.email)

        now = self.ledger.clock()
        intent = PaymentIntent(
            id=result.reference,
            user_id=user_id,
            purpose=purpose,
            amount=amount,
            method=method,
            phone=phone,
            package_id=package_id,
            requires_authorization=result.requires_authorization,
            created_at=now,
            updated_at=now,
        )
        async with self.store.transaction() as txn:
            await txn.create(PAYMENT_INTENTS, intent.id, intent.model_dump())
        logger.info(
            "Started %s payment %s of %s for user %s", purpose.value, intent.id, amount, user_id
        )

        if not result.requires_authorization:
            return await self.confirm(intent.id)
        return intent

    async def get_intent(self, reference: str) -> PaymentIntent:
        data = await self.store.get(PAYMENT_INTENTS, reference)
        if data is None:
            raise PaymentIntentNotFoundError(f"Payment {reference} not found")
        return PaymentIntent(**data)

    async def confirm(self, reference: str) -> PaymentIntent:
        async with self.store.transaction() as txn:
            data = await txn.get(PAYMENT_INTENTS, reference)
            if data is None:
                raise PaymentIntentNotFoundError(f"Payment {reference} not found")
            intent = PaymentIntent(**data)
            if intent.status not in CONFIRMABLE_STATUSES:
                logger.info("Payment %s already %s; ignoring confirmation", reference, intent.status.value)
                return intent
            await txn.update(PAYMENT_INTENTS, reference, {
                "status": IntentStatus.CONFIRMED,
                "updated_at": self.ledger.clock(),
            })

        try:
            if intent.purpose == PaymentPurpose.DEPOSIT:
                deposit = await self.ledger.create_deposit(
                    intent.user_id,
                    intent.amount,
                    intent.method,
                    reference=reference,
                    description="Gateway payment",
                )
                transaction_id = deposit.transaction.id
            else:
                purchase = await self.entitlements.purchase_package(
                    intent.user_id,
                    intent.package_id,
                    intent.amount,
                    funding="external",
                    reference=reference,
                )
                transaction_id = purchase.transaction.id
        except (LedgerServiceError, StoreError) as e:
            logger.error("Payment %s confirmed but not applied", reference, exc_info=True)
            await self._mark(reference, IntentStatus.APPLY_FAILED, error=str(e))
            raise

        return await self._mark(reference, IntentStatus.APPLIED, transaction_id=transaction_id)

    async def settle(self, reference: str) -> PaymentIntent:
        intent = await self.get_intent(reference)
        if intent.status != IntentStatus.AWAITING:
            return intent

        outcome = await poll_payment(
            self.gateway,
            reference,
            interval=self.settings.payment_poll_interval_seconds,
            max_attempts=self.settings.payment_poll_max_attempts,
            sleep=self.sleep,
        )
        if outcome == PollOutcome.PAID:
            return await self.confirm(reference)
        if outcome == PollOutcome.CAN_RETRY:
            return await self._mark(reference, IntentStatus.CAN_RETRY, only_from=IntentStatus.AWAITING)
        return await self._mark(reference, IntentStatus.TIMEOUT, only_from=IntentStatus.AWAITING)

    async def _mark(
        self,
        reference: str,
        status: IntentStatus,
        only_from: Optional[IntentStatus] = None,
        **fields,
    ) -> PaymentIntent:
        async with self.store.transaction() as txn:
            data = await txn.get(PAYMENT_INTENTS, reference)
            if only_from is None or data["status"] == only_from:
                await txn.update(PAYMENT_INTENTS, reference, {
                    "status": status,
                    "updated_at": self.ledger.clock(),
                    **fields,
                })
        return await self.get_intent(reference)
