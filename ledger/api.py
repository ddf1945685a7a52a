import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from entitlements.api import router as entitlements_router
from entitlements.service import EntitlementService
from observability import correlation_id_context, setup_logging
from payments.api import router as payments_router
from payments.gateway import PaymentGateway, PaymentGatewayClient
from payments.service import PaymentService

from .config import Settings, get_settings
from .dependencies import (
    current_user_id,
    get_entitlement_service,
    get_identity_provider,
    get_ledger_service,
    get_settings_dep,
    require_admin,
)
from .errors import (
    GENERIC_FAILURE,
    CollaboratorError,
    LedgerServiceError,
    ValidationError,
    WithdrawalNotFoundError,
)
from .identity import IdentityProvider, InMemoryIdentityProvider
from .models import (
    AccountListResponse,
    AccountResponse,
    CreateDepositRequest,
    CreateWithdrawalRequest,
    DepositResponse,
    RegisterAccountRequest,
    TransactionHistoryResponse,
    TransactionType,
    UpdateProfileRequest,
    UpdateUserStatusRequest,
    UpdateWithdrawalStatusRequest,
    WithdrawalDetailResponse,
    WithdrawalListResponse,
    WithdrawalResponse,
    WithdrawalStatusResponse,
)
from .service import LedgerService
from .store import DocumentStore, InMemoryDocumentStore, StoreError

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(
    store: Optional[DocumentStore] = None,
    identity: Optional[IdentityProvider] = None,
    gateway: Optional[PaymentGateway] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    gateway = gateway or PaymentGatewayClient(settings.payment_gateway_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        close = getattr(gateway, "close", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="SurveyRewards Ledger API",
        description="Balances, transaction trail and survey-package entitlements for SurveyRewards",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ledger = LedgerService(store or InMemoryDocumentStore(), settings)
    entitlements = EntitlementService(ledger)
    app.state.settings = settings
    app.state.identity = identity or InMemoryIdentityProvider()
    app.state.ledger = ledger
    app.state.entitlements = entitlements
    app.state.payments = PaymentService(ledger, entitlements, gateway, settings)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        with correlation_id_context(request.headers.get("X-Request-ID")) as correlation_id:
            response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        if isinstance(exc, CollaboratorError):
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            return _error(exc.status_code, GENERIC_FAILURE)
        return _error(exc.status_code, exc.message)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("%s %s store failure", request.method, request.url.path, exc_info=exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, GENERIC_FAILURE)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, message)

    app.include_router(_build_router())
    app.include_router(entitlements_router)
    app.include_router(payments_router)
    return app


def _build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "surveyrewards-ledger"}

    @router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    async def register_account(
        request: RegisterAccountRequest,
        ledger: LedgerService = Depends(get_ledger_service),
        entitlements: EntitlementService = Depends(get_entitlement_service),
        identity: IdentityProvider = Depends(get_identity_provider),
    ) -> AccountResponse:
        user_id = request.user_id or uuid4().hex
        account = await ledger.register_account(user_id, request.phone, request.full_name)
        await entitlements.initialize_user_bonuses(user_id)
        token = identity.sign_in(user_id, {"phone": account.phone, "full_name": account.full_name})
        return AccountResponse(user=account, token=token)

    @router.get("/me", response_model=AccountResponse, tags=["Accounts"])
    async def get_me(
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> AccountResponse:
        return AccountResponse(user=await ledger.get_account(user_id))

    @router.post("/me/login", response_model=AccountResponse, tags=["Accounts"])
    async def record_login(
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> AccountResponse:
        return AccountResponse(user=await ledger.record_login(user_id))

    @router.patch("/me", response_model=AccountResponse, tags=["Accounts"])
    async def update_profile(
        request: UpdateProfileRequest,
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> AccountResponse:
        updates = request.model_dump(exclude_none=True)
        return AccountResponse(user=await ledger.update_profile(user_id, **updates))

    @router.post("/deposits", response_model=DepositResponse, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
    async def create_deposit(
        request: CreateDepositRequest,
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
        settings: Settings = Depends(get_settings_dep),
    ) -> DepositResponse:
        if not settings.min_deposit <= request.amount <= settings.max_deposit:
            raise ValidationError(f"Deposit must be between {settings.min_deposit} and {settings.max_deposit}")
        return await ledger.create_deposit(
            user_id, request.amount, request.method, request.reference, request.description
        )

    @router.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
    async def create_withdrawal(
        request: CreateWithdrawalRequest,
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
        settings: Settings = Depends(get_settings_dep),
    ) -> WithdrawalResponse:
        if not settings.min_withdrawal <= request.amount <= settings.max_withdrawal:
            raise ValidationError(
                f"Withdrawal must be between {settings.min_withdrawal} and {settings.max_withdrawal}"
            )
        return await ledger.create_withdrawal(user_id, request.amount, request.phone)

    @router.get("/withdrawals", response_model=WithdrawalListResponse, tags=["Ledger"])
    async def list_withdrawals(
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalListResponse:
        return WithdrawalListResponse(withdrawals=await ledger.list_withdrawals(user_id))

    @router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalDetailResponse, tags=["Ledger"])
    async def get_withdrawal(
        withdrawal_id: str,
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalDetailResponse:
        withdrawal = await ledger.get_withdrawal(withdrawal_id)
        if withdrawal.user_id != user_id:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return WithdrawalDetailResponse(withdrawal=withdrawal)

    @router.get("/transactions", response_model=TransactionHistoryResponse, tags=["Ledger"])
    async def list_transactions(
        type: Optional[TransactionType] = None,
        limit: int = Query(50, ge=1, le=200),
        user_id: str = Depends(current_user_id),
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> TransactionHistoryResponse:
        return await ledger.get_ledger_history(user_id, type, limit)

    @router.get(
        "/admin/withdrawals",
        response_model=WithdrawalListResponse,
        dependencies=[Depends(require_admin)],
        tags=["Admin"],
    )
    async def list_all_withdrawals(ledger: LedgerService = Depends(get_ledger_service)) -> WithdrawalListResponse:
        return WithdrawalListResponse(withdrawals=await ledger.list_withdrawals())

    @router.patch(
        "/admin/withdrawals/{withdrawal_id}",
        response_model=WithdrawalStatusResponse,
        dependencies=[Depends(require_admin)],
        tags=["Admin"],
    )
    async def update_withdrawal_status(
        withdrawal_id: str,
        request: UpdateWithdrawalStatusRequest,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> WithdrawalStatusResponse:
        return await ledger.update_withdrawal_status(withdrawal_id, request.status)

    @router.get(
        "/admin/users",
        response_model=AccountListResponse,
        dependencies=[Depends(require_admin)],
        tags=["Admin"],
    )
    async def list_users(ledger: LedgerService = Depends(get_ledger_service)) -> AccountListResponse:
        return AccountListResponse(users=await ledger.list_accounts())

    @router.patch(
        "/admin/users/{user_id}",
        response_model=AccountResponse,
        dependencies=[Depends(require_admin)],
        tags=["Admin"],
    )
    async def update_user_status(
        user_id: str,
        request: UpdateUserStatusRequest,
        ledger: LedgerService = Depends(get_ledger_service),
    ) -> AccountResponse:
        return AccountResponse(user=await ledger.update_user_status(user_id, request.is_active))

    return router


_settings = get_settings()
setup_logging(_settings.log_level, _settings.log_format, _settings.environment)
app = create_app(settings=_settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
