from typing import Optional

from fastapi import APIRouter, Depends, status

from ledger.dependencies import current_user_id, get_entitlement_service, require_admin

from .models import (
    ActivePackageResponse,
    AddBonusRequest,
    AddPackageRequest,
    AddSurveyRequest,
    BonusClaimResponse,
    CatalogItemResponse,
    PackageListResponse,
    PurchasePackageRequest,
    PackagePurchaseResponse,
    SurveyCompletionResponse,
    SurveyListResponse,
    UserBonusesResponse,
    UserPackageListResponse,
)
from .service import EntitlementService

router = APIRouter()


@router.get("/surveys", response_model=SurveyListResponse, tags=["Surveys"])
async def list_surveys(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SurveyListResponse:
    return SurveyListResponse(surveys=await service.list_surveys(user_id))


@router.post("/surveys/{survey_id}/complete", response_model=SurveyCompletionResponse, tags=["Surveys"])
async def complete_survey(
    survey_id: str,
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> SurveyCompletionResponse:
    return await service.complete_survey(user_id, survey_id)


@router.get("/packages", response_model=PackageListResponse, tags=["Packages"])
async def list_packages(service: EntitlementService = Depends(get_entitlement_service)) -> PackageListResponse:
    return PackageListResponse(packages=await service.list_packages())


@router.get("/packages/active", response_model=ActivePackageResponse, tags=["Packages"])
async def get_active_package(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> ActivePackageResponse:
    return ActivePackageResponse(active_package=await service.get_active_package(user_id))


@router.get("/packages/history", response_model=UserPackageListResponse, tags=["Packages"])
async def list_user_packages(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> UserPackageListResponse:
    return UserPackageListResponse(packages=await service.list_user_packages(user_id))


@router.post("/packages/{package_id}/purchase", response_model=PackagePurchaseResponse, tags=["Packages"])
async def purchase_package(
    package_id: str,
    request: Optional[PurchasePackageRequest] = None,
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> PackagePurchaseResponse:
    amount_paid = request.amount_paid if request else None
    return await service.purchase_package(user_id, package_id, amount_paid, funding="balance")


@router.get("/bonuses", response_model=UserBonusesResponse, tags=["Bonuses"])
async def get_user_bonuses(
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> UserBonusesResponse:
    return UserBonusesResponse(bonuses=await service.get_user_bonuses(user_id))


@router.post("/bonuses/{bonus_id}/claim", response_model=BonusClaimResponse, tags=["Bonuses"])
async def claim_bonus(
    bonus_id: str,
    user_id: str = Depends(current_user_id),
    service: EntitlementService = Depends(get_entitlement_service),
) -> BonusClaimResponse:
    return await service.claim_bonus(user_id, bonus_id)


@router.post(
    "/admin/surveys",
    response_model=CatalogItemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def add_survey(
    request: AddSurveyRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> CatalogItemResponse:
    survey = await service.add_survey(request)
    return CatalogItemResponse(id=survey.id)


@router.post(
    "/admin/packages",
    response_model=CatalogItemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def add_package(
    request: AddPackageRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> CatalogItemResponse:
    package = await service.add_package(request)
    return CatalogItemResponse(id=package.id)


@router.post(
    "/admin/bonuses",
    response_model=CatalogItemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
    tags=["Admin"],
)
async def add_bonus(
    request: AddBonusRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> CatalogItemResponse:
    bonus = await service.add_bonus(request)
    return CatalogItemResponse(id=bonus.id)
