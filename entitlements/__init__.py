"""
Survey Entitlements Package

Provides the survey catalog and one-reward-per-survey completion, time-boxed
survey packages and one-time bonus claims.
"""

from .models import (
    Survey,
    Package,
    UserPackage,
    Bonus,
    UserBonuses,
)
from .service import EntitlementService

__all__ = [
    "Survey",
    "Package",
    "UserPackage",
    "Bonus",
    "UserBonuses",
    "EntitlementService",
]
