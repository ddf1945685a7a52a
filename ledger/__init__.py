"""
Balance Ledger for SurveyRewards

This module provides:
- Atomic balance changes with an append-only transaction trail
- Deposits, withdrawals and the withdrawal status lifecycle
- Accounts owned by the identity provider's user id
- The document store collaborator the flows run against
"""

from .models import (
    TransactionType,
    TransactionStatus,
    PaymentMethod,
    WithdrawalStatus,
    UserAccount,
    TransactionRecord,
    Withdrawal,
)
from .service import LedgerService
from .store import InMemoryDocumentStore

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "PaymentMethod",
    "WithdrawalStatus",
    "UserAccount",
    "TransactionRecord",
    "Withdrawal",
    "LedgerService",
    "InMemoryDocumentStore",
]
