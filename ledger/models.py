from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    SURVEY_EARNING = "survey_earning"
    PACKAGE_PURCHASE = "package_purchase"
    BONUS = "bonus"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    PAYPAL = "paypal"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, frozenset[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({
        WithdrawalStatus.PROCESSING, WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FAILED, WithdrawalStatus.CANCELLED,
    }),
    WithdrawalStatus.PROCESSING: frozenset({
        WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED, WithdrawalStatus.CANCELLED,
    }),
    WithdrawalStatus.COMPLETED: frozenset(),
    WithdrawalStatus.FAILED: frozenset(),
    WithdrawalStatus.CANCELLED: frozenset(),
}

REFUNDABLE_WITHDRAWAL_STATUSES = frozenset({WithdrawalStatus.FAILED, WithdrawalStatus.CANCELLED})


class DepositMetadata(BaseModel):
    kind: Literal["deposit"] = "deposit"
    method: PaymentMethod
    reference: Optional[str] = None
    description: Optional[str] = None


class WithdrawalMetadata(BaseModel):
    kind: Literal["withdrawal"] = "withdrawal"
    withdrawal_id: str
    phone: str
    service_fee: Decimal
    net_amount: Decimal
    method: PaymentMethod = PaymentMethod.MPESA


class SurveyEarningMetadata(BaseModel):
    kind: Literal["survey_earning"] = "survey_earning"
    survey_id: str
    survey_title: str
    category: Optional[str] = None
    duration: Optional[int] = None


class PackagePurchaseMetadata(BaseModel):
    kind: Literal["package_purchase"] = "package_purchase"
    package_id: str
    package_name: str
    surveys: int
    duration: int
    funding: Literal["balance", "external"] = "balance"
    amount_paid: Decimal
    reference: Optional[str] = None


class BonusMetadata(BaseModel):
    kind: Literal["bonus"] = "bonus"
    bonus_id: str
    bonus_name: str
    bonus_type: Optional[str] = None


class RefundMetadata(BaseModel):
    kind: Literal["refund"] = "refund"
    withdrawal_id: str
    reason: str


TransactionMetadata = Annotated[
    Union[
        DepositMetadata,
        WithdrawalMetadata,
        SurveyEarningMetadata,
        PackagePurchaseMetadata,
        BonusMetadata,
        RefundMetadata,
    ],
    Field(discriminator="kind"),
]


class UserAccount(BaseModel):
    id: str
    phone: str
    full_name: str
    email: str
    balance: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")
    surveys_completed: int = 0
    current_package_id: Optional[str] = None
    available_surveys: int = 0
    package_expiry: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime
    last_login: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def has_active_package(self, now: datetime) -> bool:
        if not self.current_package_id or self.package_expiry is None:
            return False
        return self.package_expiry > now and self.available_surveys > 0


class TransactionRecord(BaseModel):
    id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    metadata: TransactionMetadata
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Withdrawal(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    service_fee: Decimal
    net_amount: Decimal
    phone: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    transaction_id: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def total_debit(self) -> Decimal:
        return self.amount + self.service_fee

    def can_transition_to(self, status: WithdrawalStatus) -> bool:
        return status in WITHDRAWAL_TRANSITIONS[self.status]


class BalanceChange(BaseModel):
    new_balance: Decimal
    transaction: TransactionRecord


class RegisterAccountRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, description="Identity provider id; generated when omitted")
    phone: str = Field(..., min_length=9)
    full_name: str = Field(..., min_length=1)


class UpdateProfileRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=9)


class UpdateUserStatusRequest(BaseModel):
    is_active: bool


class CreateDepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.MPESA
    reference: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 500, "method": "card", "reference": "card-ref-001"}
    })


class CreateWithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    phone: str = Field(..., min_length=9)


class UpdateWithdrawalStatusRequest(BaseModel):
    status: WithdrawalStatus


class AccountResponse(BaseModel):
    success: bool = True
    user: UserAccount
    token: Optional[str] = None


class AccountListResponse(BaseModel):
    success: bool = True
    users: list[UserAccount]


class DepositResponse(BaseModel):
    success: bool = True
    transaction: TransactionRecord
    new_balance: Decimal


class WithdrawalResponse(BaseModel):
    success: bool = True
    withdrawal: Withdrawal
    transaction: TransactionRecord
    new_balance: Decimal


class WithdrawalStatusResponse(BaseModel):
    success: bool = True
    withdrawal: Withdrawal
    refund: Optional[TransactionRecord] = None
    message: str


class WithdrawalDetailResponse(BaseModel):
    success: bool = True
    withdrawal: Withdrawal


class WithdrawalListResponse(BaseModel):
    success: bool = True
    withdrawals: list[Withdrawal]


class TransactionHistoryResponse(BaseModel):
    success: bool = True
    user_id: str
    transactions: list[TransactionRecord]
    current_balance: Decimal


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
