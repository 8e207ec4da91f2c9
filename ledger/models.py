from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from rewards.calculator import RewardQuote


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptStatus(str, Enum):
    SUBMITTED = "submitted"
    AUTO_APPROVED = "auto_approved"
    PENDING_MANUAL_REVIEW = "pending_manual_review"
    MANUAL_APPROVED = "manual_approved"
    MANUAL_REJECTED = "manual_rejected"
    DISTRIBUTION_PENDING = "distribution_pending"
    DISTRIBUTION_PARTIAL = "distribution_partial"
    DISTRIBUTION_COMPLETE = "distribution_complete"
    DISTRIBUTION_FAILED = "distribution_failed"


TERMINAL_RECEIPT_STATUSES = frozenset({
    ReceiptStatus.MANUAL_REJECTED,
    ReceiptStatus.DISTRIBUTION_COMPLETE,
    ReceiptStatus.DISTRIBUTION_FAILED,
})

RECEIPT_TRANSITIONS: dict[ReceiptStatus, frozenset[ReceiptStatus]] = {
    ReceiptStatus.SUBMITTED: frozenset({ReceiptStatus.AUTO_APPROVED, ReceiptStatus.PENDING_MANUAL_REVIEW}),
    ReceiptStatus.AUTO_APPROVED: frozenset({ReceiptStatus.DISTRIBUTION_PENDING}),
    ReceiptStatus.PENDING_MANUAL_REVIEW: frozenset({ReceiptStatus.MANUAL_APPROVED, ReceiptStatus.MANUAL_REJECTED}),
    ReceiptStatus.MANUAL_APPROVED: frozenset({ReceiptStatus.DISTRIBUTION_PENDING}),
    ReceiptStatus.DISTRIBUTION_PENDING: frozenset({
        ReceiptStatus.DISTRIBUTION_PARTIAL,
        ReceiptStatus.DISTRIBUTION_COMPLETE,
        ReceiptStatus.DISTRIBUTION_FAILED,
    }),
    ReceiptStatus.DISTRIBUTION_PARTIAL: frozenset({ReceiptStatus.DISTRIBUTION_PENDING, ReceiptStatus.DISTRIBUTION_COMPLETE}),
    ReceiptStatus.MANUAL_REJECTED: frozenset(),
    ReceiptStatus.DISTRIBUTION_COMPLETE: frozenset(),
    ReceiptStatus.DISTRIBUTION_FAILED: frozenset(),
}

# What the submitting user is shown. A partial payout never reads as success.
PUBLIC_STATUS: dict[ReceiptStatus, str] = {
    ReceiptStatus.SUBMITTED: "processing",
    ReceiptStatus.AUTO_APPROVED: "processing",
    ReceiptStatus.PENDING_MANUAL_REVIEW: "pending",
    ReceiptStatus.MANUAL_APPROVED: "processing",
    ReceiptStatus.MANUAL_REJECTED: "rejected",
    ReceiptStatus.DISTRIBUTION_PENDING: "processing",
    ReceiptStatus.DISTRIBUTION_PARTIAL: "payout_incomplete",
    ReceiptStatus.DISTRIBUTION_COMPLETE: "rewarded",
    ReceiptStatus.DISTRIBUTION_FAILED: "payout_failed",
}


class LegKind(str, Enum):
    USER = "user"
    APP_FUND = "app_fund"


class LegStatus(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


LEG_TRANSITIONS: dict[LegStatus, frozenset[LegStatus]] = {
    LegStatus.NOT_SUBMITTED: frozenset({LegStatus.SUBMITTED, LegStatus.FAILED}),
    LegStatus.SUBMITTED: frozenset({LegStatus.SUBMITTED, LegStatus.CONFIRMED, LegStatus.FAILED}),
    LegStatus.FAILED: frozenset({LegStatus.SUBMITTED}),
    LegStatus.CONFIRMED: frozenset(),
}


class FailureReason(str, Enum):
    SUBMISSION_ERROR = "submission_error"
    REVERTED = "reverted"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    EXPIRED = "expired"


class ReceiptSubmission(BaseModel):
    receipt_id: str = Field(..., min_length=1, description="Unique, never reused")
    user_id: str = Field(..., min_length=1)
    wallet_address: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    category: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    store_name: Optional[str] = None
    evidence_url: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "receipt_id": "rcpt-2024-0001",
            "user_id": "user-42",
            "wallet_address": "0x7567d83b7b8d80addcb281a71d54fc7b3364ffed",
            "amount": "25.99",
            "category": "ride_share",
            "confidence": 0.92,
            "store_name": "Uber",
        }
    })


class Receipt(BaseModel):
    receipt_id: str
    user_id: str
    wallet_address: str
    amount: Decimal
    category: Optional[str] = None
    confidence: Optional[float] = None
    store_name: Optional[str] = None
    evidence_url: Optional[str] = None
    status: ReceiptStatus = ReceiptStatus.SUBMITTED
    routing_reason: Optional[str] = None
    review_notes: Optional[str] = None
    reviewer: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RECEIPT_STATUSES

    @property
    def public_status(self) -> str:
        return PUBLIC_STATUS[self.status]

    def can_transition(self, new_status: ReceiptStatus) -> bool:
        return new_status in RECEIPT_TRANSITIONS[self.status]


class LegAttempt(BaseModel):
    reference: str = Field(..., min_length=1)
    nonce: int
    submitted_at: datetime = Field(default_factory=utcnow)
    outcome: AttemptOutcome = AttemptOutcome.PENDING


class TransactionLeg(BaseModel):
    kind: LegKind
    target_address: str
    amount: Decimal
    status: LegStatus = LegStatus.NOT_SUBMITTED
    reference: Optional[str] = None
    attempts: list[LegAttempt] = Field(default_factory=list)
    submission_errors: int = 0
    failure_reason: Optional[FailureReason] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _submitted_needs_reference(self) -> "TransactionLeg":
        # A leg is only ever "submitted" against a reference the external ledger returned.
        if self.status in (LegStatus.SUBMITTED, LegStatus.CONFIRMED) and not self.reference:
            raise ValueError(f"{self.kind.value} leg is {self.status.value} without an external reference")
        return self

    @property
    def resubmissions(self) -> int:
        return max(len(self.attempts) - 1, 0)

    @property
    def is_retryable(self) -> bool:
        return self.status == LegStatus.FAILED and self.failure_reason != FailureReason.REVERTED


class PendingDistribution(BaseModel):
    receipt_id: str
    user_id: str
    quote: RewardQuote
    user_leg: TransactionLeg
    app_fund_leg: TransactionLeg
    balance_applied: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def leg(self, kind: LegKind) -> TransactionLeg:
        return self.user_leg if kind == LegKind.USER else self.app_fund_leg

    @property
    def legs(self) -> list[TransactionLeg]:
        return [self.user_leg, self.app_fund_leg]

    @property
    def is_settled(self) -> bool:
        return all(leg.status in (LegStatus.CONFIRMED, LegStatus.FAILED) for leg in self.legs)

    def outcome(self) -> ReceiptStatus:
        statuses = {leg.status for leg in self.legs}
        if statuses == {LegStatus.CONFIRMED}:
            return ReceiptStatus.DISTRIBUTION_COMPLETE
        if statuses == {LegStatus.FAILED}:
            return ReceiptStatus.DISTRIBUTION_FAILED
        if self.is_settled:
            return ReceiptStatus.DISTRIBUTION_PARTIAL
        return ReceiptStatus.DISTRIBUTION_PENDING


class UserBalance(BaseModel):
    user_id: str
    balance: Decimal = Decimal("0")
    streak: int = 0
    credited_receipts: int = 0
    last_credited_at: Optional[datetime] = None
    last_activity_date: Optional[date] = None

    model_config = ConfigDict(from_attributes=True)


class OpenResult(BaseModel):
    distribution: PendingDistribution
    created: bool


class ReceiptResponse(BaseModel):
    receipt: Receipt
    public_status: str
    message: str

    @classmethod
    def of(cls, receipt: Receipt, message: str) -> "ReceiptResponse":
        return cls(receipt=receipt, public_status=receipt.public_status, message=message)


class RetryLegsRequest(BaseModel):
    include_reverted: bool = False
    performed_by: Optional[str] = None
