"""
Pending-Transaction Ledger

This module provides:
- Receipt lifecycle with guarded status transitions
- One idempotency record per receipt, created before any transfer
- Per-leg payout state: not_submitted → submitted → confirmed / failed
- Balance credits applied at most once per receipt
- In-memory and SQLAlchemy storage backends
"""

from .models import (
    ReceiptStatus,
    LegKind,
    LegStatus,
    FailureReason,
    Receipt,
    ReceiptSubmission,
    TransactionLeg,
    PendingDistribution,
    UserBalance,
)
from .service import LedgerService
from .storage import InMemoryStorage, SqlStorage

__all__ = [
    "ReceiptStatus",
    "LegKind",
    "LegStatus",
    "FailureReason",
    "Receipt",
    "ReceiptSubmission",
    "TransactionLeg",
    "PendingDistribution",
    "UserBalance",
    "LedgerService",
    "InMemoryStorage",
    "SqlStorage",
]
