class LedgerServiceError(Exception):
    pass


class ReceiptNotFoundError(LedgerServiceError):
    pass


class DistributionNotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    """A transition the receipt or leg state machine does not allow.

    These point at a logic bug or a lost race and must reach an operator.
    """


class StaleRecordError(InvalidStateTransitionError):
    pass


class DuplicateDistributionAttempt(LedgerServiceError):
    """Raised by storage when a second distribution row is inserted for a receipt."""

    def __init__(self, receipt_id: str):
        super().__init__(f"Distribution for receipt {receipt_id} already exists")
        self.receipt_id = receipt_id
