from typing import Optional

from ledger.errors import DuplicateDistributionAttempt, InvalidStateTransitionError


class SettlementError(Exception):
    pass


class ClassificationUnavailable(SettlementError):
    """The receipt classifier failed or timed out; the receipt goes to manual review."""


class LegSubmissionError(SettlementError):
    """A transfer could not be handed to the external ledger. Transient."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class LegReverted(SettlementError):
    """The external ledger executed the transfer and reverted it. Not retried."""

    def __init__(self, receipt_id: str, leg: str, reference: str):
        super().__init__(f"{leg} leg of {receipt_id} reverted on-chain ({reference})")
        self.receipt_id = receipt_id
        self.leg = leg
        self.reference = reference


class ConfirmationTimeout(SettlementError):
    def __init__(self, receipt_id: str, leg: str, reference: Optional[str] = None):
        super().__init__(f"No definitive result for {leg} leg of {receipt_id} ({reference})")
        self.receipt_id = receipt_id
        self.leg = leg
        self.reference = reference


class WebhookMalformedPayload(SettlementError):
    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


__all__ = [
    "SettlementError",
    "ClassificationUnavailable",
    "DuplicateDistributionAttempt",
    "LegSubmissionError",
    "LegReverted",
    "ConfirmationTimeout",
    "WebhookMalformedPayload",
    "InvalidStateTransitionError",
]
