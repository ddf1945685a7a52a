import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional
from uuid import uuid4

from .config import Settings, get_settings
from .errors import (
    AccountDisabledError,
    AccountExistsError,
    AccountNotFoundError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    ValidationError,
    WithdrawalNotFoundError,
)
from .models import (
    REFUNDABLE_WITHDRAWAL_STATUSES,
    BalanceChange,
    DepositMetadata,
    DepositResponse,
    PaymentMethod,
    RefundMetadata,
    TransactionHistoryResponse,
    TransactionMetadata,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    UserAccount,
    Withdrawal,
    WithdrawalMetadata,
    WithdrawalResponse,
    WithdrawalStatus,
    WithdrawalStatusResponse,
    utcnow,
)
from .store import (
    TRANSACTIONS,
    USERS,
    WITHDRAWALS,
    DocumentStore,
    Increment,
    InMemoryDocumentStore,
    Transaction,
)

logger = logging.getLogger(__name__)

EMAIL_DOMAIN = "surveyrewards.com"
PROFILE_FIELDS = frozenset({"full_name", "phone"})


class LedgerService:
    """Accounts, the balance ledger, deposits and withdrawals.

    Every money-moving call runs inside one store transaction, so the balance
    increment, the transaction record and any companion record (a withdrawal,
    a completion, an entitlement update) commit together or not at all.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store or InMemoryDocumentStore()
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    # Accounts

    async def register_account(self, user_id: str, phone: str, full_name: str) -> UserAccount:
        now = self.clock()
        account = UserAccount(
            id=user_id,
            phone=phone,
            full_name=full_name,
            email=f"{phone}@{EMAIL_DOMAIN}",
            created_at=now,
            updated_at=now,
            last_login=now,
        )
        async with self.store.transaction() as txn:
            if await txn.get(USERS, user_id) is not None:
                raise AccountExistsError("Account already registered")
            await txn.create(USERS, user_id, account.model_dump())

        logger.info("Registered account %s", user_id)
        return account

    async def get_account(self, user_id: str) -> UserAccount:
        data = await self.store.get(USERS, user_id)
        if data is None:
            raise AccountNotFoundError(f"User {user_id} not found")
        return UserAccount(**data)

    async def record_login(self, user_id: str) -> UserAccount:
        await self.get_account(user_id)
        await self.store.update(USERS, user_id, {"last_login": self.clock()})
        return await self.get_account(user_id)

    async def update_profile(self, user_id: str, **updates) -> UserAccount:
        unknown = set(updates) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        fields = {k: v for k, v in updates.items() if v is not None}
        if "phone" in fields:
            fields["email"] = f"{fields['phone']}@{EMAIL_DOMAIN}"
        await self.get_account(user_id)
        await self.store.update(USERS, user_id, {**fields, "updated_at": self.clock()})
        return await self.get_account(user_id)

    async def list_accounts(self) -> list[UserAccount]:
        docs = await self.store.query(USERS, order_by="created_at", descending=True)
        return [UserAccount(**d) for d in docs]

    async def update_user_status(self, user_id: str, is_active: bool) -> UserAccount:
        await self.get_account(user_id)
        await self.store.update(USERS, user_id, {"is_active": is_active, "updated_at": self.clock()})
        logger.info("User %s %s", user_id, "enabled" if is_active else "disabled")
        return await self.get_account(user_id)

    async def load_account(self, txn: Transaction, user_id: str, require_active: bool = True) -> UserAccount:
        data = await txn.get(USERS, user_id)
        if data is None:
            raise AccountNotFoundError(f"User {user_id} not found")
        account = UserAccount(**data)
        if require_active and not account.is_active:
            raise AccountDisabledError("Account is disabled")
        return account

    # Ledger primitive

    async def apply_balance_delta(
        self,
        user_id: str,
        delta: Decimal,
        kind: TransactionType,
        metadata: TransactionMetadata,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        txn: Optional[Transaction] = None,
    ) -> BalanceChange:
        if txn is not None:
            return await self._apply_balance_delta(txn, user_id, delta, kind, metadata, status)
        async with self.store.transaction() as own_txn:
            return await self._apply_balance_delta(own_txn, user_id, delta, kind, metadata, status)

    async def _apply_balance_delta(
        self,
        txn: Transaction,
        user_id: str,
        delta: Decimal,
        kind: TransactionType,
        metadata: TransactionMetadata,
        status: TransactionStatus,
    ) -> BalanceChange:
        account = await self.load_account(txn, user_id, require_active=False)
        previous_balance = account.balance
        new_balance = previous_balance + delta
        if delta < 0 and new_balance < 0:
            raise InsufficientBalanceError("Insufficient balance")

        now = self.clock()
        fields = {"balance": Increment(delta), "updated_at": now}
        if kind == TransactionType.SURVEY_EARNING:
            fields["total_earnings"] = Increment(delta)
            fields["surveys_completed"] = Increment(1)
        await txn.update(USERS, user_id, fields)

        record = TransactionRecord(
            id=str(uuid4()),
            user_id=user_id,
            type=kind,
            amount=delta,
            previous_balance=previous_balance,
            new_balance=new_balance,
            status=status,
            metadata=metadata,
            created_at=now,
        )
        await txn.create(TRANSACTIONS, record.id, record.model_dump())
        return BalanceChange(new_balance=new_balance, transaction=record)

    # Deposits

    async def create_deposit(
        self,
        user_id: str,
        amount: Decimal,
        method: PaymentMethod,
        reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> DepositResponse:
        if amount <= 0:
            raise ValidationError("Deposit amount must be positive")

        async with self.store.transaction() as txn:
            await self.load_account(txn, user_id)
            change = await self._apply_balance_delta(
                txn,
                user_id,
                amount,
                TransactionType.DEPOSIT,
                DepositMetadata(method=method, reference=reference, description=description),
                TransactionStatus.COMPLETED,
            )

        logger.info(
            "Deposit of %s via %s for user %s recorded as %s",
            amount, method.value, user_id, change.transaction.id,
        )
        return DepositResponse(transaction=change.transaction, new_balance=change.new_balance)

    # Withdrawals

    def service_fee(self, amount: Decimal) -> Decimal:
        return (amount * self.settings.withdrawal_fee_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    async def create_withdrawal(self, user_id: str, amount: Decimal, phone: str) -> WithdrawalResponse:
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")

        service_fee = self.service_fee(amount)
        net_amount = amount - service_fee
        total_debit = amount + service_fee
        withdrawal_id = str(uuid4())

        async with self.store.transaction() as txn:
            account = await self.load_account(txn, user_id)
            if account.balance < total_debit:
                logger.warning(
                    "Withdrawal of %s rejected for user %s: balance %s", amount, user_id, account.balance
                )
                raise InsufficientBalanceError("Insufficient balance for withdrawal and service fee")

            change = await self._apply_balance_delta(
                txn,
                user_id,
                -total_debit,
                TransactionType.WITHDRAWAL,
                WithdrawalMetadata(
                    withdrawal_id=withdrawal_id,
                    phone=phone,
                    service_fee=service_fee,
                    net_amount=net_amount,
                ),
                TransactionStatus.PENDING,
            )
            now = self.clock()
            withdrawal = Withdrawal(
                id=withdrawal_id,
                user_id=user_id,
                amount=amount,
                service_fee=service_fee,
                net_amount=net_amount,
                phone=phone,
                status=WithdrawalStatus.PENDING,
                transaction_id=change.transaction.id,
                created_at=now,
                updated_at=now,
            )
            await txn.create(WITHDRAWALS, withdrawal.id, withdrawal.model_dump())

        logger.info(
            "Withdrawal %s of %s (fee %s) created for user %s",
            withdrawal.id, amount, service_fee, user_id,
        )
        return WithdrawalResponse(
            withdrawal=withdrawal,
            transaction=change.transaction,
            new_balance=change.new_balance,
        )

    async def update_withdrawal_status(
        self, withdrawal_id: str, status: WithdrawalStatus
    ) -> WithdrawalStatusResponse:
        refund: Optional[TransactionRecord] = None

        async with self.store.transaction() as txn:
            data = await txn.get(WITHDRAWALS, withdrawal_id)
            if data is None:
                raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")

            withdrawal = Withdrawal(**data)
            if not withdrawal.can_transition_to(status):
                raise InvalidStateTransitionError(
                    f"Cannot move withdrawal from {withdrawal.status.value} to {status.value}"
                )

            fields = {"status": status, "updated_at": self.clock()}
            if status in REFUNDABLE_WITHDRAWAL_STATUSES:
                change = await self._apply_balance_delta(
                    txn,
                    withdrawal.user_id,
                    withdrawal.total_debit,
                    TransactionType.REFUND,
                    RefundMetadata(withdrawal_id=withdrawal.id, reason=f"Withdrawal {status.value}"),
                    TransactionStatus.COMPLETED,
                )
                refund = change.transaction
                fields["refund_transaction_id"] = refund.id
            await txn.update(WITHDRAWALS, withdrawal_id, fields)

        withdrawal = withdrawal.model_copy(update=fields)
        logger.info("Withdrawal %s moved to %s", withdrawal_id, status.value)
        return WithdrawalStatusResponse(
            withdrawal=withdrawal,
            refund=refund,
            message="Withdrawal status updated successfully",
        )

    async def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        data = await self.store.get(WITHDRAWALS, withdrawal_id)
        if data is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return Withdrawal(**data)

    async def list_withdrawals(self, user_id: Optional[str] = None) -> list[Withdrawal]:
        filters = {"user_id": user_id} if user_id else {}
        docs = await self.store.query(WITHDRAWALS, filters, order_by="created_at", descending=True)
        return [Withdrawal(**d) for d in docs]

    # History

    async def list_transactions(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        limit: int = 50,
    ) -> list[TransactionRecord]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        filters = {"user_id": user_id}
        if type is not None:
            filters["type"] = type
        docs = await self.store.query(
            TRANSACTIONS, filters, order_by="created_at", descending=True, limit=limit
        )
        return [TransactionRecord(**d) for d in docs]

    async def get_ledger_history(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        limit: int = 50,
    ) -> TransactionHistoryResponse:
        account = await self.get_account(user_id)
        return TransactionHistoryResponse(
            user_id=user_id,
            transactions=await self.list_transactions(user_id, type, limit),
            current_balance=account.balance,
        )
