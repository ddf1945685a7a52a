from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ledger.config import Settings
from ledger.dependencies import current_user_id, get_payment_service, get_settings_dep, require_admin
from ledger.errors import PaymentIntentNotFoundError, ValidationError

from .models import IntentStatus, PaymentIntent, PaymentIntentResponse, PaymentPurpose, StartPaymentRequest
from .service import STATUS_MESSAGES, PaymentService

router = APIRouter(prefix="/payments", tags=["Payments"])


def _intent_response(intent: PaymentIntent) -> JSONResponse:
    body = PaymentIntentResponse(intent=intent, message=STATUS_MESSAGES[intent.status])
    code = status.HTTP_202_ACCEPTED if intent.status in (IntentStatus.AWAITING, IntentStatus.TIMEOUT) else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


async def _owned_intent(service: PaymentService, reference: str, user_id: str) -> PaymentIntent:
    intent = await service.get_intent(reference)
    if intent.user_id != user_id:
        raise PaymentIntentNotFoundError(f"Payment {reference} not found")
    return intent


@router.post("", response_model=PaymentIntentResponse)
async def start_payment(
    request: StartPaymentRequest,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_settings_dep),
) -> JSONResponse:
    if request.purpose == PaymentPurpose.DEPOSIT and not (
        settings.min_deposit <= request.amount <= settings.max_deposit
    ):
        raise ValidationError(f"Deposit must be between {settings.min_deposit} and {settings.max_deposit}")
    intent = await service.start(
        user_id,
        request.purpose,
        request.amount,
        method=request.method,
        phone=request.phone,
        package_id=request.package_id,
    )
    return _intent_response(intent)


@router.get("/{reference}", response_model=PaymentIntentResponse)
async def get_payment(
    reference: str,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    return _intent_response(await _owned_intent(service, reference, user_id))


@router.post("/{reference}/settle", response_model=PaymentIntentResponse)
async def settle_payment(
    reference: str,
    user_id: str = Depends(current_user_id),
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    await _owned_intent(service, reference, user_id)
    return _intent_response(await service.settle(reference))


@router.post("/{reference}/confirm", response_model=PaymentIntentResponse, dependencies=[Depends(require_admin)])
async def confirm_payment(
    reference: str,
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    return _intent_response(await service.confirm(reference))
