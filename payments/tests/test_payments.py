"""
Unit Tests for gateway payments

Tests cover:
1. Phone normalisation and the HTTP gateway client
2. Bounded status polling
3. Exactly-once application of confirmed payments
"""

import json
from decimal import Decimal

import httpx
import pytest

from entitlements.models import AddPackageRequest
from entitlements.service import EntitlementService
from ledger.config import Settings
from ledger.errors import AccountDisabledError, PackageNotFoundError, PaymentGatewayError, ValidationError
from ledger.models import PaymentMethod, TransactionType
from ledger.service import LedgerService
from ledger.store import PACKAGES, PAYMENT_INTENTS, InMemoryDocumentStore
from payments.gateway import PaymentGatewayClient, format_phone_number, poll_payment
from payments.models import InitializeResult, IntentStatus, PaymentPurpose, PaymentStatus, PollOutcome
from payments.service import PaymentService


# Test constants
USER_ID = "user-550e8400"
PHONE = "0712345678"
REFERENCE = "ref-7f3a"


class FakeGateway:
    """Scripted gateway: each poll pops the next status, repeating the last one."""

    def __init__(self, statuses=None, requires_authorization=True, fail_initialize=False):
        self.statuses = list(statuses or [PaymentStatus()])
        self.requires_authorization = requires_authorization
        self.fail_initialize = fail_initialize
        self.initialized = []
        self.polls = 0

    async def initialize(self, amount, phone, email):
        if self.fail_initialize:
            raise PaymentGatewayError("gateway offline")
        self.initialized.append((amount, phone, email))
        return InitializeResult(reference=REFERENCE, requires_authorization=self.requires_authorization)

    async def poll_status(self, reference):
        self.polls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return status


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


async def make_service(gateway=None, settings=None):
    settings = settings or Settings()
    ledger = LedgerService(InMemoryDocumentStore(), settings)
    entitlements = EntitlementService(ledger)
    await ledger.register_account(USER_ID, PHONE, "Jane Surveyor")
    sleep = SleepRecorder()
    service = PaymentService(ledger, entitlements, gateway or FakeGateway(), settings, sleep=sleep)
    return service, sleep


class TestFormatPhoneNumber:
    """Tests for M-Pesa phone normalisation."""

    @pytest.mark.parametrize("raw,expected", [
        ("0712345678", "254712345678"),
        ("712345678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("0112 345 678", "254112345678"),
    ])
    def test_normalises(self, raw, expected):
        """Local and international forms map to 254XXXXXXXXX."""
        assert format_phone_number(raw) == expected


class TestPaymentGatewayClient:
    """Tests for the HTTP gateway client."""

    @pytest.mark.asyncio
    async def test_initialize_posts_payment(self):
        """Initialize sends email, amount and normalised phone."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "reference": REFERENCE})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
        gateway = PaymentGatewayClient("http://gateway.test", client=client)

        result = await gateway.initialize(Decimal("500"), PHONE, "0712345678@surveyrewards.com")

        assert result.reference == REFERENCE
        assert result.requires_authorization is False
        assert seen["path"] == "/api/initialize"
        assert seen["body"] == {
            "email": "0712345678@surveyrewards.com",
            "amount": "500",
            "phone": "254712345678",
        }
        await gateway.close()

    @pytest.mark.asyncio
    async def test_initialize_rejected(self):
        """An unsuccessful gateway answer becomes a gateway error."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "Invalid phone"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
        gateway = PaymentGatewayClient("http://gateway.test", client=client)

        with pytest.raises(PaymentGatewayError, match="Invalid phone"):
            await gateway.initialize(Decimal("500"), PHONE, "a@b.c")

    @pytest.mark.asyncio
    async def test_poll_status(self):
        """Status responses carry paid and can_retry flags."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == f"/api/status/{REFERENCE}"
            return httpx.Response(200, json={"success": True, "paid": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
        gateway = PaymentGatewayClient("http://gateway.test", client=client)

        status = await gateway.poll_status(REFERENCE)

        assert status.paid is True
        assert status.can_retry is False

    @pytest.mark.asyncio
    async def test_http_failure(self):
        """Transport and HTTP errors are wrapped."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gateway.test")
        gateway = PaymentGatewayClient("http://gateway.test", client=client)

        with pytest.raises(PaymentGatewayError):
            await gateway.poll_status(REFERENCE)


class TestPollPayment:
    """Tests for bounded status polling."""

    @pytest.mark.asyncio
    async def test_paid_after_pending(self):
        """Polling stops at the first paid status."""
        gateway = FakeGateway([PaymentStatus(), PaymentStatus(), PaymentStatus(paid=True)])
        sleep = SleepRecorder()

        outcome = await poll_payment(gateway, REFERENCE, sleep=sleep)

        assert outcome == PollOutcome.PAID
        assert gateway.polls == 3
        assert sleep.calls == [6.0, 6.0, 6.0]

    @pytest.mark.asyncio
    async def test_can_retry(self):
        """A retryable failure ends polling immediately."""
        gateway = FakeGateway([PaymentStatus(can_retry=True)])

        outcome = await poll_payment(gateway, REFERENCE, sleep=SleepRecorder())

        assert outcome == PollOutcome.CAN_RETRY
        assert gateway.polls == 1

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self):
        """Thirty pending answers at six seconds apart time out."""
        gateway = FakeGateway([PaymentStatus()])
        sleep = SleepRecorder()

        outcome = await poll_payment(gateway, REFERENCE, sleep=sleep)

        assert outcome == PollOutcome.TIMEOUT
        assert gateway.polls == 30
        assert sum(sleep.calls) == 180

    @pytest.mark.asyncio
    async def test_errors_keep_polling(self):
        """A failed status check uses an attempt but does not stop polling."""
        gateway = FakeGateway([PaymentGatewayError("timeout"), PaymentStatus(paid=True)])

        outcome = await poll_payment(gateway, REFERENCE, max_attempts=5, sleep=SleepRecorder())

        assert outcome == PollOutcome.PAID
        assert gateway.polls == 2


class TestPaymentService:
    """Tests for payment intents and their application."""

    @pytest.mark.asyncio
    async def test_deposit_settles_once(self):
        """A paid deposit credits the balance once, however often it is settled."""
        gateway = FakeGateway([PaymentStatus(), PaymentStatus(paid=True)])
        service, sleep = await make_service(gateway)

        intent = await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("500"))
        assert intent.status == IntentStatus.AWAITING
        assert gateway.initialized == [(Decimal("500"), PHONE, "0712345678@surveyrewards.com")]

        settled = await service.settle(REFERENCE)
        again = await service.settle(REFERENCE)
        replay = await service.confirm(REFERENCE)

        assert settled.status == IntentStatus.APPLIED
        assert again.status == IntentStatus.APPLIED
        assert replay.transaction_id == settled.transaction_id
        assert (await service.ledger.get_account(USER_ID)).balance == Decimal("500")
        deposits = await service.ledger.list_transactions(USER_ID, TransactionType.DEPOSIT)
        assert len(deposits) == 1
        assert deposits[0].metadata.reference == REFERENCE

    @pytest.mark.asyncio
    async def test_auto_confirm_without_authorization(self):
        """Payments that need no authorization are applied straight away."""
        service, _ = await make_service(FakeGateway(requires_authorization=False))

        intent = await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("250"), method=PaymentMethod.CARD)

        assert intent.status == IntentStatus.APPLIED
        assert (await service.ledger.get_account(USER_ID)).balance == Decimal("250")

    @pytest.mark.asyncio
    async def test_package_payment_grants_credits(self):
        """Gateway-funded packages grant credits without touching the balance."""
        service, _ = await make_service(FakeGateway([PaymentStatus(paid=True)]))
        package = await service.entitlements.add_package(
            AddPackageRequest(name="Silver", price=Decimal("300"), surveys=10, duration=7)
        )

        await service.start(USER_ID, PaymentPurpose.PACKAGE_PURCHASE, Decimal("300"), package_id=package.id)
        intent = await service.settle(REFERENCE)

        assert intent.status == IntentStatus.APPLIED
        account = await service.ledger.get_account(USER_ID)
        assert account.balance == Decimal("0")
        assert account.available_surveys == 10
        assert account.current_package_id == package.id

    @pytest.mark.asyncio
    async def test_package_payment_validation(self):
        """Package payments need a package and must cover its price."""
        service, _ = await make_service()
        package = await service.entitlements.add_package(
            AddPackageRequest(name="Silver", price=Decimal("300"), surveys=10, duration=7)
        )

        with pytest.raises(ValidationError):
            await service.start(USER_ID, PaymentPurpose.PACKAGE_PURCHASE, Decimal("300"))
        with pytest.raises(ValidationError):
            await service.start(USER_ID, PaymentPurpose.PACKAGE_PURCHASE, Decimal("200"), package_id=package.id)
        assert service.gateway.initialized == []

    @pytest.mark.asyncio
    async def test_retired_package_is_not_charged(self):
        """A deactivated package is refused before the gateway is asked for money."""
        gateway = FakeGateway(requires_authorization=False)
        service, _ = await make_service(gateway)
        package = await service.entitlements.add_package(
            AddPackageRequest(name="Silver", price=Decimal("300"), surveys=10, duration=7)
        )
        await service.store.update(PACKAGES, package.id, {"is_active": False})

        with pytest.raises(PackageNotFoundError, match="no longer available"):
            await service.start(
                USER_ID,
                PaymentPurpose.PACKAGE_PURCHASE,
                Decimal("300"),
                method=PaymentMethod.CARD,
                package_id=package.id,
            )

        assert gateway.initialized == []
        assert await service.store.query(PAYMENT_INTENTS) == []
        assert (await service.ledger.get_account(USER_ID)).available_surveys == 0

    @pytest.mark.asyncio
    async def test_timeout_then_late_confirmation(self):
        """A timed-out payment can still be confirmed later, once."""
        settings = Settings(payment_poll_max_attempts=3)
        service, sleep = await make_service(FakeGateway([PaymentStatus()]), settings)
        await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("500"))

        timed_out = await service.settle(REFERENCE)
        assert timed_out.status == IntentStatus.TIMEOUT
        assert len(sleep.calls) == 3
        assert (await service.ledger.get_account(USER_ID)).balance == Decimal("0")

        confirmed = await service.confirm(REFERENCE)
        await service.confirm(REFERENCE)

        assert confirmed.status == IntentStatus.APPLIED
        assert (await service.ledger.get_account(USER_ID)).balance == Decimal("500")

    @pytest.mark.asyncio
    async def test_can_retry_leaves_balance(self):
        """A failed payment marks the intent retryable and credits nothing."""
        service, _ = await make_service(FakeGateway([PaymentStatus(can_retry=True)]))
        await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("500"))

        intent = await service.settle(REFERENCE)

        assert intent.status == IntentStatus.CAN_RETRY
        assert (await service.ledger.get_account(USER_ID)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_apply_failure_is_recorded(self):
        """A confirmed payment that cannot be applied is flagged, not retried."""
        service, _ = await make_service()
        await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("500"))
        await service.ledger.update_user_status(USER_ID, False)

        with pytest.raises(AccountDisabledError):
            await service.confirm(REFERENCE)

        intent = await service.get_intent(REFERENCE)
        assert intent.status == IntentStatus.APPLY_FAILED
        assert intent.error == "Account is disabled"
        assert (await service.confirm(REFERENCE)).status == IntentStatus.APPLY_FAILED

    @pytest.mark.asyncio
    async def test_gateway_failure_creates_no_intent(self):
        """If the gateway refuses to start, nothing is recorded."""
        service, _ = await make_service(FakeGateway(fail_initialize=True))

        with pytest.raises(PaymentGatewayError):
            await service.start(USER_ID, PaymentPurpose.DEPOSIT, Decimal("500"))

        assert await service.store.query(PAYMENT_INTENTS) == []
