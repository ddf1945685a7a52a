from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import TransactionRecord


class Survey(BaseModel):
    id: str
    title: str
    description: str = ""
    reward: Decimal = Field(..., gt=0)
    category: Optional[str] = None
    duration: Optional[int] = Field(default=None, description="Estimated minutes to complete")
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SurveyListing(Survey):
    completed: bool = False


class SurveyCompletion(BaseModel):
    id: str
    user_id: str
    survey_id: str
    survey_title: str
    reward: Decimal
    completed_at: datetime


class Package(BaseModel):
    id: str
    name: str
    price: Decimal = Field(..., gt=0)
    surveys: int = Field(..., gt=0)
    duration: int = Field(..., gt=0, description="Days of validity")
    is_active: bool = True
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserPackage(BaseModel):
    id: str
    user_id: str
    package_id: str
    package_name: str
    price: Decimal
    surveys: int
    duration: int
    funding: Literal["balance", "external"] = "balance"
    purchased_at: datetime
    expires_at: datetime
    is_active: bool = True


class ActivePackage(BaseModel):
    package: Package
    available_surveys: int
    package_expiry: datetime


class Bonus(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    amount: Decimal = Decimal("0")
    description: str = ""
    is_active: bool = True
    created_at: datetime


class UserBonuses(BaseModel):
    user_id: str
    available_bonuses: list[str] = Field(default_factory=list)
    claimed_bonuses: list[str] = Field(default_factory=list)
    total_bonus_earned: Decimal = Decimal("0")
    referral_code: str
    created_at: datetime
    updated_at: datetime


class AddSurveyRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    reward: Decimal = Field(..., gt=0)
    category: Optional[str] = None
    duration: Optional[int] = Field(default=None, gt=0)


class AddPackageRequest(BaseModel):
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., gt=0)
    surveys: int = Field(..., gt=0)
    duration: int = Field(..., gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {"name": "Silver", "price": 300, "surveys": 10, "duration": 7}
    })


class AddBonusRequest(BaseModel):
    id: Optional[str] = Field(default=None, description="Stable id such as welcome_bonus")
    name: str = Field(..., min_length=1)
    type: Optional[str] = None
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    description: str = ""


class PurchasePackageRequest(BaseModel):
    amount_paid: Optional[Decimal] = Field(default=None, gt=0, description="Defaults to the package price")


class SurveyCompletionResponse(BaseModel):
    success: bool = True
    reward: Decimal
    survey: Survey
    completion: SurveyCompletion
    transaction: TransactionRecord


class PackagePurchaseResponse(BaseModel):
    success: bool = True
    package: Package
    user_package: UserPackage
    transaction: TransactionRecord


class BonusClaimResponse(BaseModel):
    success: bool = True
    bonus: Bonus
    amount: Decimal
    transaction: Optional[TransactionRecord] = None


class SurveyListResponse(BaseModel):
    success: bool = True
    surveys: list[SurveyListing]


class PackageListResponse(BaseModel):
    success: bool = True
    packages: list[Package]


class UserPackageListResponse(BaseModel):
    success: bool = True
    packages: list[UserPackage]


class ActivePackageResponse(BaseModel):
    success: bool = True
    active_package: Optional[ActivePackage] = None


class UserBonusesResponse(BaseModel):
    success: bool = True
    bonuses: UserBonuses


class CatalogItemResponse(BaseModel):
    success: bool = True
    id: str
