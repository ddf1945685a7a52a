from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import PaymentMethod


class PaymentPurpose(str, Enum):
    DEPOSIT = "deposit"
    PACKAGE_PURCHASE = "package_purchase"


class PollOutcome(str, Enum):
    PAID = "paid"
    CAN_RETRY = "can_retry"
    TIMEOUT = "timeout"


class IntentStatus(str, Enum):
    AWAITING = "awaiting"
    CONFIRMED = "confirmed"
    APPLIED = "applied"
    APPLY_FAILED = "apply_failed"
    CAN_RETRY = "can_retry"
    TIMEOUT = "timeout"


class InitializeResult(BaseModel):
    reference: str
    requires_authorization: bool = False


class PaymentStatus(BaseModel):
    paid: bool = False
    can_retry: bool = False


class PaymentIntent(BaseModel):
    id: str = Field(..., description="Gateway reference")
    user_id: str
    purpose: PaymentPurpose
    amount: Decimal
    method: PaymentMethod
    phone: str
    package_id: Optional[str] = None
    status: IntentStatus = IntentStatus.AWAITING
    requires_authorization: bool = False
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def reference(self) -> str:
        return self.id


class StartPaymentRequest(BaseModel):
    purpose: PaymentPurpose
    amount: Decimal = Field(..., gt=0)
    method: PaymentMethod = PaymentMethod.MPESA
    phone: Optional[str] = Field(default=None, description="Defaults to the account phone")
    package_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"purpose": "deposit", "amount": 500, "method": "mpesa", "phone": "0712345678"}
    })


class PaymentIntentResponse(BaseModel):
    success: bool = True
    intent: PaymentIntent
    message: str
