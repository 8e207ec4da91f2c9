import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from rewards.calculator import RewardQuote

from .errors import (
    LedgerServiceError,
    ReceiptNotFoundError,
    DistributionNotFoundError,
    InvalidStateTransitionError,
    DuplicateDistributionAttempt,
)
from .models import (
    LEG_TRANSITIONS,
    AttemptOutcome,
    FailureReason,
    LegAttempt,
    LegKind,
    LegStatus,
    OpenResult,
    PendingDistribution,
    Receipt,
    ReceiptStatus,
    TransactionLeg,
    UserBalance,
    utcnow,
)
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerService",
    "LedgerServiceError",
    "ReceiptNotFoundError",
    "DistributionNotFoundError",
    "InvalidStateTransitionError",
    "DuplicateDistributionAttempt",
]


class LedgerService:
    """Single source of truth for receipt state and payout state.

    Every other component asks the ledger before acting and records what it
    did through one of the guarded transitions below; none of them keep their
    own idea of whether a receipt has been paid.
    """

    def __init__(self, storage: Optional[Storage] = None):
        self.storage = storage or InMemoryStorage()

    # --- receipts ---

    def record_receipt(self, receipt: Receipt) -> tuple[Receipt, bool]:
        stored, created = self.storage.insert_receipt(receipt)
        if created:
            logger.info("Receipt %s recorded for user %s", receipt.receipt_id, receipt.user_id)
        return stored, created

    def get_receipt(self, receipt_id: str) -> Receipt:
        receipt = self.storage.get_receipt(receipt_id)
        if not receipt:
            raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
        return receipt

    def list_receipts(self, status: Optional[ReceiptStatus] = None) -> list[Receipt]:
        return self.storage.list_receipts(status)

    def transition_receipt(self, receipt_id: str, new_status: ReceiptStatus, **fields) -> Receipt:
        receipt = self.get_receipt(receipt_id)
        if not receipt.can_transition(new_status):
            logger.error("Rejected receipt transition %s: %s -> %s", receipt_id, receipt.status.value, new_status.value)
            raise InvalidStateTransitionError(
                f"Cannot move receipt {receipt_id} from {receipt.status.value} to {new_status.value}"
            )
        updated = receipt.model_copy(update={**fields, "status": new_status, "updated_at": utcnow()})
        stored = self.storage.update_receipt(updated, receipt.version)
        logger.info("Receipt %s: %s -> %s", receipt_id, receipt.status.value, new_status.value)
        return stored

    # --- distributions ---

    def open_distribution(
        self,
        receipt_id: str,
        quote: RewardQuote,
        user_address: str,
        app_fund_address: str,
    ) -> OpenResult:
        """Create the one distribution record for ``receipt_id``.

        A second call never creates another row: it returns the stored record
        unchanged with ``created=False``, and the caller resumes from it.
        """
        existing = self.storage.get_distribution(receipt_id)
        if existing:
            return OpenResult(distribution=existing, created=False)

        receipt = self.get_receipt(receipt_id)
        distribution = PendingDistribution(
            receipt_id=receipt_id,
            user_id=receipt.user_id,
            quote=quote,
            user_leg=TransactionLeg(kind=LegKind.USER, target_address=user_address, amount=quote.user_portion),
            app_fund_leg=TransactionLeg(kind=LegKind.APP_FUND, target_address=app_fund_address,
                                        amount=quote.app_fund_portion),
        )
        try:
            stored = self.storage.insert_distribution(distribution)
        except DuplicateDistributionAttempt:
            logger.info("Distribution for %s opened concurrently; resuming existing record", receipt_id)
            return OpenResult(distribution=self.get_distribution(receipt_id), created=False)

        logger.info(
            "Opened distribution %s: user %s, app fund %s (total %s)",
            receipt_id, quote.user_portion, quote.app_fund_portion, quote.total_reward,
        )
        return OpenResult(distribution=stored, created=True)

    def get_distribution(self, receipt_id: str) -> PendingDistribution:
        distribution = self.storage.get_distribution(receipt_id)
        if not distribution:
            raise DistributionNotFoundError(f"No distribution for receipt {receipt_id}")
        return distribution

    def find_distribution(self, receipt_id: str) -> Optional[PendingDistribution]:
        return self.storage.get_distribution(receipt_id)

    def list_open_distributions(self) -> list[PendingDistribution]:
        """Distributions with unresolved legs or an uncredited confirmed user leg."""
        def is_open(d: PendingDistribution) -> bool:
            uncredited = d.user_leg.status == LegStatus.CONFIRMED and not d.balance_applied
            return not d.is_settled or uncredited

        return [d for d in self.storage.list_distributions() if is_open(d)]

    def mark_leg_submitted(self, receipt_id: str, kind: LegKind, external_ref: str, nonce: int) -> PendingDistribution:
        if not external_ref:
            raise ValueError("A submitted leg needs the reference returned by the external ledger")

        def apply(leg: TransactionLeg) -> dict:
            return {
                "reference": external_ref,
                "attempts": [*leg.attempts, LegAttempt(reference=external_ref, nonce=nonce)],
                "failure_reason": None,
                "error": None,
            }

        return self._transition_leg(receipt_id, kind, LegStatus.SUBMITTED, apply)

    def mark_leg_confirmed(self, receipt_id: str, kind: LegKind, reference: Optional[str] = None) -> PendingDistribution:
        def apply(leg: TransactionLeg) -> dict:
            confirmed_ref = reference or leg.reference
            return {
                "reference": confirmed_ref,
                "attempts": self._settle_attempts(leg, confirmed_ref, AttemptOutcome.CONFIRMED),
            }

        return self._transition_leg(receipt_id, kind, LegStatus.CONFIRMED, apply)

    def mark_leg_failed(
        self,
        receipt_id: str,
        kind: LegKind,
        reason: FailureReason,
        error: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> PendingDistribution:
        def apply(leg: TransactionLeg) -> dict:
            outcome = AttemptOutcome.REVERTED if reason == FailureReason.REVERTED else AttemptOutcome.EXPIRED
            return {
                "failure_reason": reason,
                "error": error or reason.value,
                "attempts": self._settle_attempts(leg, reference or leg.reference, outcome),
            }

        distribution = self._transition_leg(receipt_id, kind, LegStatus.FAILED, apply)
        logger.error("Leg %s/%s failed (%s): %s", receipt_id, kind.value, reason.value, error or reason.value)
        return distribution

    def record_attempt_outcome(
        self, receipt_id: str, kind: LegKind, reference: str, outcome: AttemptOutcome,
    ) -> PendingDistribution:
        """Note what the external ledger said about one reference of a leg."""
        distribution = self.get_distribution(receipt_id)
        leg = distribution.leg(kind)
        attempts = [
            a.model_copy(update={"outcome": outcome}) if a.reference == reference else a
            for a in leg.attempts
        ]
        return self._save_leg(distribution, leg.model_copy(update={"attempts": attempts, "updated_at": utcnow()}))

    def record_submission_error(self, receipt_id: str, kind: LegKind, error: str) -> PendingDistribution:
        """Count a transient submission failure without changing the leg's status."""
        distribution = self.get_distribution(receipt_id)
        leg = distribution.leg(kind)
        if leg.status == LegStatus.CONFIRMED:
            raise InvalidStateTransitionError(f"Leg {receipt_id}/{kind.value} is already confirmed")
        updated_leg = leg.model_copy(update={
            "submission_errors": leg.submission_errors + 1, "error": error, "updated_at": utcnow(),
        })
        return self._save_leg(distribution, updated_leg)

    def apply_confirmed_distribution(self, receipt_id: str, activity_date: Optional[date] = None) -> bool:
        """Credit the user's portion once the user leg is confirmed on the ledger.

        Returns True only for the call that actually moved the balance; that
        call also counts the receipt towards the user's daily streak.
        """
        distribution = self.get_distribution(receipt_id)
        if distribution.user_leg.status != LegStatus.CONFIRMED:
            return False
        if distribution.balance_applied:
            return False

        applied = self.storage.credit_balance(distribution.user_id, receipt_id, distribution.user_leg.amount)
        updated = distribution.model_copy(update={"balance_applied": True, "updated_at": utcnow()})
        self.storage.update_distribution(updated, distribution.version)
        if applied:
            logger.info("Credited %s to user %s for receipt %s",
                        distribution.user_leg.amount, distribution.user_id, receipt_id)
            self.record_activity(distribution.user_id, activity_date)
        return applied

    # --- balances ---

    def get_balance(self, user_id: str) -> UserBalance:
        return self.storage.get_balance(user_id)

    def get_streak(self, user_id: str) -> int:
        return self.storage.get_balance(user_id).streak

    def set_streak(self, user_id: str, streak: int) -> UserBalance:
        if streak < 0:
            raise LedgerServiceError(f"Streak cannot be negative: {streak}")
        return self.storage.set_streak(user_id, streak)

    def record_activity(self, user_id: str, activity_date: Optional[date] = None) -> UserBalance:
        """Advance the daily streak for a rewarded activity on ``activity_date`` (UTC today by default).

        The day after the last activity extends the streak, the same day keeps
        it, and a longer gap starts over at 1.
        """
        day = activity_date or utcnow().date()
        current = self.storage.get_balance(user_id)
        last = current.last_activity_date

        if last is None or day - last > timedelta(days=1):
            streak = 1
        elif day - last == timedelta(days=1):
            streak = current.streak + 1
        else:
            streak = max(current.streak, 1)
            day = last

        updated = self.storage.set_streak(user_id, streak, last_activity_date=day)
        logger.info("Streak for user %s is now %d (last activity %s)", user_id, streak, day)
        return updated

    # --- internals ---

    def _transition_leg(self, receipt_id: str, kind: LegKind, new_status: LegStatus, apply) -> PendingDistribution:
        distribution = self.get_distribution(receipt_id)
        leg = distribution.leg(kind)
        if new_status not in LEG_TRANSITIONS[leg.status]:
            logger.error("Rejected leg transition %s/%s: %s -> %s",
                         receipt_id, kind.value, leg.status.value, new_status.value)
            raise InvalidStateTransitionError(
                f"Cannot move {kind.value} leg of {receipt_id} from {leg.status.value} to {new_status.value}"
            )
        updated_leg = leg.model_copy(update={**apply(leg), "status": new_status, "updated_at": utcnow()})
        TransactionLeg.model_validate(updated_leg.model_dump())
        return self._save_leg(distribution, updated_leg)

    def _save_leg(self, distribution: PendingDistribution, leg: TransactionLeg) -> PendingDistribution:
        field_name = "user_leg" if leg.kind == LegKind.USER else "app_fund_leg"
        updated = distribution.model_copy(update={field_name: leg, "updated_at": utcnow()})
        return self.storage.update_distribution(updated, distribution.version)

    @staticmethod
    def _settle_attempts(leg: TransactionLeg, reference: Optional[str], outcome: AttemptOutcome) -> list[LegAttempt]:
        attempts = []
        for attempt in leg.attempts:
            if attempt.outcome != AttemptOutcome.PENDING:
                attempts.append(attempt)
            elif attempt.reference == reference:
                attempts.append(attempt.model_copy(update={"outcome": outcome}))
            else:
                attempts.append(attempt.model_copy(update={"outcome": AttemptOutcome.EXPIRED}))
        return attempts
