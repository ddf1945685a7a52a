"""
Observability for the SurveyRewards ledger: structured logging with
per-request correlation ids.
"""

from .logging import (
    setup_logging,
    correlation_id_context,
    get_correlation_id,
    generate_correlation_id,
)

__all__ = [
    "setup_logging",
    "correlation_id_context",
    "get_correlation_id",
    "generate_correlation_id",
]
