"""
Payment gateway integration: M-Pesa push initialisation, bounded status
polling and exactly-once application of confirmed payments.
"""

from .gateway import PaymentGatewayClient, format_phone_number, poll_payment
from .models import IntentStatus, PaymentIntent, PaymentPurpose, PollOutcome
from .service import PaymentService

__all__ = [
    "PaymentGatewayClient",
    "format_phone_number",
    "poll_payment",
    "IntentStatus",
    "PaymentIntent",
    "PaymentPurpose",
    "PollOutcome",
    "PaymentService",
]
