"""
HTTP tests for the SurveyRewards API

Tests cover:
1. Registration and bearer sessions
2. Deposit and withdrawal bounds
3. Survey, package and bonus routes
4. Admin key protection and the uniform error body
"""

from decimal import Decimal

from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.config import Settings
from ledger.store import InMemoryDocumentStore
from payments.models import InitializeResult, PaymentStatus


ADMIN_KEY = "test-admin-key"
PHONE = "0712345678"


class InstantGateway:
    async def initialize(self, amount, phone, email):
        return InitializeResult(reference="ref-http-1", requires_authorization=False)

    async def poll_status(self, reference):
        return PaymentStatus(paid=True)


def make_client() -> TestClient:
    settings = Settings(admin_api_key=ADMIN_KEY)
    app = create_app(InMemoryDocumentStore(), gateway=InstantGateway(), settings=settings)
    return TestClient(app)


def register(client: TestClient, phone: str = PHONE) -> dict:
    response = client.post("/accounts", json={"phone": phone, "full_name": "Jane Surveyor"})
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


def admin(client: TestClient, path: str, body: dict) -> str:
    response = client.post(path, json=body, headers={"X-Admin-Key": ADMIN_KEY})
    assert response.status_code == 201
    return response.json()["id"]


class TestAccountsApi:
    """Tests for account routes."""

    def test_register_and_fetch(self):
        """Registration returns a token that identifies the new account."""
        client = make_client()
        headers = register(client)

        response = client.get("/me", headers=headers)

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["phone"] == PHONE
        assert user["email"] == "0712345678@surveyrewards.com"
        assert Decimal(user["balance"]) == Decimal("0")

    def test_missing_token(self):
        """Protected routes need a bearer token."""
        client = make_client()

        response = client.get("/me")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Missing bearer token"}

    def test_duplicate_registration(self):
        """The same user id cannot register twice."""
        client = make_client()
        body = {"user_id": "user-1", "phone": PHONE, "full_name": "Jane"}
        client.post("/accounts", json=body)

        response = client.post("/accounts", json=body)

        assert response.status_code == 409
        assert response.json()["success"] is False

    def test_serverless_handler_wraps_module_app(self):
        """The serverless entry serves the module-level app rather than building another."""
        import ledger.api
        from api.index import app as served

        assert served is ledger.api.app
        assert served.root_path == "/api"

    def test_request_id_echoed(self):
        """The caller's request id comes back on the response."""
        client = make_client()

        response = client.get("/health", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"


class TestLedgerApi:
    """Tests for deposit, withdrawal and history routes."""

    def test_deposit_and_withdraw(self):
        """Money moves through the API with the 1% fee on withdrawals."""
        client = make_client()
        headers = register(client)

        deposit = client.post("/deposits", json={"amount": 1000, "method": "card"}, headers=headers)
        assert deposit.status_code == 201
        assert Decimal(deposit.json()["new_balance"]) == Decimal("1000")

        withdrawal = client.post("/withdrawals", json={"amount": 500, "phone": PHONE}, headers=headers)
        assert withdrawal.status_code == 201
        body = withdrawal.json()
        assert Decimal(body["withdrawal"]["service_fee"]) == Decimal("5")
        assert Decimal(body["withdrawal"]["net_amount"]) == Decimal("495")
        assert Decimal(body["new_balance"]) == Decimal("495")

        history = client.get("/transactions", headers=headers).json()
        assert len(history["transactions"]) == 2
        assert Decimal(history["current_balance"]) == Decimal("495")

        withdrawal_id = body["withdrawal"]["id"]
        own = client.get(f"/withdrawals/{withdrawal_id}", headers=headers)
        other = client.get(f"/withdrawals/{withdrawal_id}", headers=register(client, "0722000111"))
        assert own.json()["withdrawal"]["status"] == "pending"
        assert other.status_code == 404

    def test_deposit_bounds(self):
        """Deposits outside 100..150000 are refused with the uniform body."""
        client = make_client()
        headers = register(client)

        low = client.post("/deposits", json={"amount": 99}, headers=headers)
        high = client.post("/deposits", json={"amount": 150001}, headers=headers)

        assert low.status_code == 422
        assert low.json() == {"success": False, "error": "Deposit must be between 100 and 150000"}
        assert high.status_code == 422

    def test_withdrawal_bounds_and_balance(self):
        """Withdrawals are bounded and need balance plus fee."""
        client = make_client()
        headers = register(client)
        client.post("/deposits", json={"amount": 100}, headers=headers)

        too_big = client.post("/withdrawals", json={"amount": 70001, "phone": PHONE}, headers=headers)
        no_fee = client.post("/withdrawals", json={"amount": 100, "phone": PHONE}, headers=headers)

        assert too_big.status_code == 422
        assert no_fee.status_code == 400
        assert no_fee.json()["error"] == "Insufficient balance for withdrawal and service fee"

    def test_history_limit_bounds(self):
        """History limits outside 1..200 are refused."""
        client = make_client()
        headers = register(client)

        for limit in (0, -1, 201):
            response = client.get(f"/transactions?limit={limit}", headers=headers)
            assert response.status_code == 422
            assert response.json()["success"] is False

        assert client.get("/transactions?limit=200", headers=headers).status_code == 200

    def test_schema_errors_use_uniform_body(self):
        """Malformed bodies still answer with success false."""
        client = make_client()
        headers = register(client)

        response = client.post("/deposits", json={"amount": -5}, headers=headers)

        assert response.status_code == 422
        assert response.json()["success"] is False
        assert response.json()["error"]


class TestAdminApi:
    """Tests for admin-only routes."""

    def test_admin_key_required(self):
        """Admin routes refuse a missing or wrong key."""
        client = make_client()

        missing = client.get("/admin/withdrawals")
        wrong = client.get("/admin/withdrawals", headers={"X-Admin-Key": "nope"})

        assert missing.status_code == 403
        assert wrong.json() == {"success": False, "error": "Unauthorized"}

    def test_list_users(self):
        """Admins see every registered account; users without the key do not."""
        client = make_client()
        headers = register(client)
        register(client, "0722000111")

        denied = client.get("/admin/users", headers=headers)
        listed = client.get("/admin/users", headers={"X-Admin-Key": ADMIN_KEY})

        assert denied.status_code == 403
        assert listed.status_code == 200
        assert sorted(u["phone"] for u in listed.json()["users"]) == ["0712345678", "0722000111"]

    def test_failed_withdrawal_refunds(self):
        """Marking a withdrawal failed returns the full debit to the user."""
        client = make_client()
        headers = register(client)
        client.post("/deposits", json={"amount": 1000}, headers=headers)
        withdrawal_id = client.post(
            "/withdrawals", json={"amount": 500, "phone": PHONE}, headers=headers
        ).json()["withdrawal"]["id"]

        response = client.patch(
            f"/admin/withdrawals/{withdrawal_id}",
            json={"status": "failed"},
            headers={"X-Admin-Key": ADMIN_KEY},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Withdrawal status updated successfully"
        assert Decimal(response.json()["refund"]["amount"]) == Decimal("505")
        me = client.get("/me", headers=headers).json()["user"]
        assert Decimal(me["balance"]) == Decimal("1000")

    def test_disabled_user_cannot_deposit(self):
        """Disabled accounts are refused money movements."""
        client = make_client()
        body = {"user_id": "user-2", "phone": PHONE, "full_name": "Jane"}
        token = client.post("/accounts", json=body).json()["token"]
        client.patch("/admin/users/user-2", json={"is_active": False}, headers={"X-Admin-Key": ADMIN_KEY})

        response = client.post("/deposits", json={"amount": 500}, headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["error"] == "Account is disabled"


class TestEntitlementsApi:
    """Tests for survey, package and bonus routes."""

    def test_package_then_survey(self):
        """Buying a package unlocks surveys, each paid once."""
        client = make_client()
        headers = register(client)
        package_id = admin(client, "/admin/packages", {"name": "Silver", "price": 300, "surveys": 10, "duration": 7})
        survey_id = admin(client, "/admin/surveys", {"title": "Shopping habits", "reward": 50})
        client.post("/deposits", json={"amount": 500}, headers=headers)

        locked = client.post(f"/surveys/{survey_id}/complete", headers=headers)
        assert locked.status_code == 400
        assert locked.json()["error"] == "No active package. Purchase a package to take surveys"

        purchase = client.post(f"/packages/{package_id}/purchase", headers=headers)
        assert purchase.status_code == 200
        active = client.get("/packages/active", headers=headers).json()["active_package"]
        assert active["available_surveys"] == 10

        first = client.post(f"/surveys/{survey_id}/complete", headers=headers)
        second = client.post(f"/surveys/{survey_id}/complete", headers=headers)
        assert first.status_code == 200
        assert Decimal(first.json()["reward"]) == Decimal("50")
        assert second.status_code == 409
        assert second.json()["error"] == "Survey already completed"

        surveys = client.get("/surveys", headers=headers).json()["surveys"]
        assert surveys[0]["completed"] is True
        purchases = client.get("/packages/history", headers=headers).json()["packages"]
        assert [p["package_id"] for p in purchases] == [package_id]
        me = client.get("/me", headers=headers).json()["user"]
        assert Decimal(me["balance"]) == Decimal("250")

    def test_bonus_claim_once(self):
        """Bonuses created before registration are available and claimable once."""
        client = make_client()
        admin(client, "/admin/bonuses", {"id": "welcome_bonus", "name": "Welcome", "amount": 100})
        headers = register(client)

        bonuses = client.get("/bonuses", headers=headers).json()["bonuses"]
        assert bonuses["available_bonuses"] == ["welcome_bonus"]

        first = client.post("/bonuses/welcome_bonus/claim", headers=headers)
        second = client.post("/bonuses/welcome_bonus/claim", headers=headers)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json() == {"success": False, "error": "Bonus already claimed"}

    def test_gateway_deposit(self):
        """A gateway payment that needs no authorization is applied at once."""
        client = make_client()
        headers = register(client)

        response = client.post("/payments", json={"purpose": "deposit", "amount": 500}, headers=headers)

        assert response.status_code == 200
        assert response.json()["intent"]["status"] == "applied"
        me = client.get("/me", headers=headers).json()["user"]
        assert Decimal(me["balance"]) == Decimal("500")
