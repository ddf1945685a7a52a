import asyncio
import logging
import re
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from ledger.errors import PaymentGatewayError

from .models import InitializeResult, PaymentStatus, PollOutcome

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 6.0
DEFAULT_MAX_ATTEMPTS = 30


def format_phone_number(phone: str) -> str:
    """Normalise a Kenyan number to the 2547XXXXXXXX form M-Pesa expects."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("0"):
        return "254" + digits[1:]
    if digits.startswith("7") or digits.startswith("1"):
        return "254" + digits
    return digits


class PaymentGateway(Protocol):
    async def initialize(self, amount: Decimal, phone: str, email: str) -> InitializeResult: ...
    async def poll_status(self, reference: str) -> PaymentStatus: ...


class PaymentGatewayClient:
    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def initialize(self, amount: Decimal, phone: str, email: str) -> InitializeResult:
        payload = {"email": email, "amount": str(amount), "phone": format_phone_number(phone)}
        data = await self._request("POST", "/api/initialize", json=payload)
        if not data.get("success") or not data.get("reference"):
            raise PaymentGatewayError(data.get("message") or "Payment initialization failed")
        return InitializeResult(
            reference=data["reference"],
            requires_authorization=bool(data.get("requires_authorization")),
        )

    async def poll_status(self, reference: str) -> PaymentStatus:
        data = await self._request("GET", f"/api/status/{reference}")
        if not data.get("success"):
            raise PaymentGatewayError(data.get("message") or f"Status check failed for {reference}")
        return PaymentStatus(paid=bool(data.get("paid")), can_retry=bool(data.get("can_retry")))

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentGatewayError(f"Payment gateway request failed: {e}") from e


async def poll_payment(
    gateway: PaymentGateway,
    reference: str,
    interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome:
    """Check the payment every ``interval`` seconds, at most ``max_attempts`` times."""
    for attempt in range(1, max_attempts + 1):
        await sleep(interval)
        try:
            status = await gateway.poll_status(reference)
        except PaymentGatewayError as e:
            logger.warning("Status check %d/%d for %s failed: %s", attempt, max_attempts, reference, e)
            continue

        if status.paid:
            logger.info("Payment %s confirmed after %d checks", reference, attempt)
            return PollOutcome.PAID
        if status.can_retry:
            logger.info("Payment %s not completed; payer may retry", reference)
            return PollOutcome.CAN_RETRY

    logger.warning("Payment %s unresolved after %d checks", reference, max_attempts)
    return PollOutcome.TIMEOUT
