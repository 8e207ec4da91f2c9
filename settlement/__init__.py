"""
Settlement Package

Drives approved receipts to a confirmed two-leg payout: signing, submission
to the external ledger, confirmation polling, manual review and the
orchestrating pipeline. The HTTP app lives in ``settlement.api``.
"""

from .distributor import SplitDistributor
from .pipeline import SettlementPipeline
from .poller import ConfirmationPoller
from .review import ReviewNotifier
from .signer import Signer

__all__ = [
    "SplitDistributor",
    "SettlementPipeline",
    "ConfirmationPoller",
    "ReviewNotifier",
    "Signer",
]
