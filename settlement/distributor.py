import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ledger.models import FailureReason, LegKind, LegStatus, PendingDistribution
from ledger.service import LedgerService

from .chain import LedgerClient
from .errors import LegSubmissionError
from .signer import Signer, Transfer

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 5.0


@dataclass(frozen=True)
class LegResult:
    kind: LegKind
    status: LegStatus
    reference: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False


@dataclass(frozen=True)
class SplitResult:
    user: LegResult
    app_fund: LegResult


class SplitDistributor:
    """Pays out the two legs of a distribution as two separate transfers.

    Each leg has its own ledger slot, so a failure on one leg can be
    attributed and retried without touching the other. A leg returned as
    ``submitted`` only means the external ledger accepted the transfer and
    handed back a reference; the poller decides whether it was paid.
    """

    def __init__(
        self,
        ledger: LedgerService,
        client: LedgerClient,
        signer: Signer,
        max_submission_attempts: int = 3,
        backoff_seconds: float = 1.0,
        expiration_seconds: int = 320,
    ):
        self.ledger = ledger
        self.client = client
        self.signer = signer
        self.max_submission_attempts = max(1, max_submission_attempts)
        self.backoff_seconds = backoff_seconds
        self.expiration_seconds = expiration_seconds

    async def submit(self, distribution: PendingDistribution) -> SplitResult:
        user, app_fund = await asyncio.gather(
            self.submit_leg(distribution.receipt_id, LegKind.USER),
            self.submit_leg(distribution.receipt_id, LegKind.APP_FUND),
        )
        return SplitResult(user=user, app_fund=app_fund)

    async def submit_leg(
        self,
        receipt_id: str,
        kind: LegKind,
        resubmit: bool = False,
        retry: bool = False,
        include_reverted: bool = False,
    ) -> LegResult:
        leg = self.ledger.get_distribution(receipt_id).leg(kind)

        if leg.status == LegStatus.CONFIRMED:
            return LegResult(kind, leg.status, leg.reference, skipped=True)
        if leg.status == LegStatus.SUBMITTED and not resubmit:
            return LegResult(kind, leg.status, leg.reference, skipped=True)
        if leg.status == LegStatus.FAILED:
            if not retry or (leg.failure_reason == FailureReason.REVERTED and not include_reverted):
                return LegResult(kind, leg.status, leg.reference, error=leg.error, skipped=True)

        transfer = Transfer(
            to=leg.target_address,
            amount=leg.amount,
            memo=f"{receipt_id}:{kind.value}",
            expiration_seconds=self.expiration_seconds,
        )

        last_error = None
        for attempt in range(1, self.max_submission_attempts + 1):
            try:
                submitted = await self.signer.sign_and_submit(transfer, self.client.submit)
            except LegSubmissionError as e:
                last_error = str(e)
                self.ledger.record_submission_error(receipt_id, kind, last_error)
                logger.warning("Submitting %s leg of %s failed (attempt %d/%d): %s",
                               kind.value, receipt_id, attempt, self.max_submission_attempts, e)
                if not e.retryable:
                    break
                if attempt < self.max_submission_attempts:
                    await asyncio.sleep(min(self.backoff_seconds * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS))
                continue

            self.ledger.mark_leg_submitted(receipt_id, kind, submitted.reference, submitted.nonce)
            logger.info("Submitted %s leg of %s: %s %s -> %s (nonce %d)", kind.value, receipt_id,
                        leg.amount, submitted.reference, leg.target_address, submitted.nonce)
            return LegResult(kind, LegStatus.SUBMITTED, submitted.reference)

        current = self.ledger.get_distribution(receipt_id).leg(kind)
        if current.status == LegStatus.SUBMITTED:
            # A resubmission failed but an earlier transfer is still outstanding.
            return LegResult(kind, current.status, current.reference, error=last_error)

        self.ledger.mark_leg_failed(receipt_id, kind, FailureReason.SUBMISSION_ERROR, last_error)
        return LegResult(kind, LegStatus.FAILED, error=last_error)

    def preview(self, distribution: PendingDistribution) -> list[Transfer]:
        """Dry run: the transfers ``submit`` would sign. Nothing is signed or sent."""
        return [
            Transfer(
                to=leg.target_address,
                amount=leg.amount,
                memo=f"{distribution.receipt_id}:{leg.kind.value}",
                expiration_seconds=self.expiration_seconds,
            )
            for leg in distribution.legs
            if leg.status != LegStatus.CONFIRMED
        ]
