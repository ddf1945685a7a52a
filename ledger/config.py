import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache


def _decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


@dataclass(frozen=True)
class Settings:
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    log_format: str = field(
        default_factory=lambda: os.getenv(
            "LOG_FORMAT", "json" if os.getenv("ENVIRONMENT") == "production" else "text"
        )
    )
    admin_api_key: str = field(default_factory=lambda: os.getenv("ADMIN_API_KEY", "dev-admin-key"))
    currency: str = field(default_factory=lambda: os.getenv("CURRENCY", "KES"))

    payment_gateway_url: str = field(
        default_factory=lambda: os.getenv("PAYMENT_GATEWAY_URL", "http://localhost:8080")
    )
    payment_poll_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", "6"))
    )
    payment_poll_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("PAYMENT_POLL_MAX_ATTEMPTS", "30"))
    )

    min_deposit: Decimal = field(default_factory=lambda: _decimal("MIN_DEPOSIT", "100"))
    max_deposit: Decimal = field(default_factory=lambda: _decimal("MAX_DEPOSIT", "150000"))
    min_withdrawal: Decimal = field(default_factory=lambda: _decimal("MIN_WITHDRAWAL", "100"))
    max_withdrawal: Decimal = field(default_factory=lambda: _decimal("MAX_WITHDRAWAL", "70000"))
    withdrawal_fee_rate: Decimal = field(default_factory=lambda: _decimal("WITHDRAWAL_FEE_RATE", "0.01"))


@lru_cache
def get_settings() -> Settings:
    return Settings()
