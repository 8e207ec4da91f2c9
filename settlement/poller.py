import asyncio
import logging
import math
from enum import Enum
from typing import Optional

from ledger.models import AttemptOutcome, FailureReason, LegKind, LegStatus, TransactionLeg
from ledger.service import LedgerService

from .chain import LedgerClient, TransferState
from .distributor import SplitDistributor
from .errors import ConfirmationTimeout, LegReverted

logger = logging.getLogger(__name__)


class PollOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMEOUT = "timeout"
    FAILED = "failed"


class ConfirmationPoller:
    """Waits for the external ledger to say whether a submitted leg landed.

    A reference coming back from submission proves nothing; only a receipt
    from the ledger does. Every reference ever submitted for the leg is
    polled, so a late confirmation of an earlier attempt is still seen.
    """

    def __init__(
        self,
        ledger: LedgerService,
        client: LedgerClient,
        distributor: SplitDistributor,
        interval: float = 10.0,
        max_wait: float = 320.0,
        max_resubmissions: int = 2,
        max_polls: Optional[int] = None,
    ):
        self.ledger = ledger
        self.client = client
        self.distributor = distributor
        self.interval = interval
        self.max_wait = max_wait
        self.max_resubmissions = max_resubmissions
        if max_polls is None:
            max_polls = math.ceil(max_wait / interval) if interval > 0 else 1
        self.max_polls = max(1, max_polls)

    async def watch(self, receipt_id: str, kind: LegKind) -> PollOutcome:
        for _ in range(self.max_polls):
            leg = self.ledger.get_distribution(receipt_id).leg(kind)
            if leg.status != LegStatus.SUBMITTED:
                return self._outcome_of(leg)

            await asyncio.sleep(self.interval)

            outcome = await self._poll_once(receipt_id, kind, leg)
            if outcome is not None:
                return outcome

        leg = self.ledger.get_distribution(receipt_id).leg(kind)
        logger.warning("%s", ConfirmationTimeout(receipt_id, kind.value, leg.reference))
        return PollOutcome.TIMEOUT

    async def confirm_leg(self, receipt_id: str, kind: LegKind) -> PollOutcome:
        """Watch a leg to the end, resubmitting after timeouts up to the limit.

        The resubmission budget belongs to this run: an operator retry of a
        leg that already timed out gets its new transfer watched in full.
        """
        leg = self.ledger.get_distribution(receipt_id).leg(kind)
        if leg.status != LegStatus.SUBMITTED:
            return self._outcome_of(leg)

        for round_ in range(self.max_resubmissions + 1):
            outcome = await self.watch(receipt_id, kind)
            if outcome != PollOutcome.TIMEOUT:
                return outcome
            if round_ == self.max_resubmissions:
                break

            logger.warning("Resubmitting %s leg of %s after timeout (%d/%d)",
                           kind.value, receipt_id, round_ + 1, self.max_resubmissions)
            # Earlier attempts stay pending and are still polled alongside the new one.
            result = await self.distributor.submit_leg(receipt_id, kind, resubmit=True)
            if result.status == LegStatus.FAILED:
                return PollOutcome.FAILED

        leg = self.ledger.get_distribution(receipt_id).leg(kind)
        self.ledger.mark_leg_failed(
            receipt_id, kind, FailureReason.CONFIRMATION_TIMEOUT,
            f"No confirmation after {len(leg.attempts)} submission(s)",
        )
        return PollOutcome.TIMEOUT

    async def _poll_once(self, receipt_id: str, kind: LegKind, leg: TransactionLeg) -> Optional[PollOutcome]:
        pending = [a.reference for a in leg.attempts if a.outcome == AttemptOutcome.PENDING]
        statuses = await asyncio.gather(*(self.client.get_status(ref) for ref in pending))

        for status in statuses:
            if status.state == TransferState.CONFIRMED:
                self.ledger.mark_leg_confirmed(receipt_id, kind, status.reference)
                logger.info("Confirmed %s leg of %s in block %s (%s)",
                            kind.value, receipt_id, status.block_number, status.reference)
                return PollOutcome.CONFIRMED

        reverted = [s.reference for s in statuses if s.state == TransferState.REVERTED]
        if not reverted:
            return None
        if len(reverted) == len(pending):
            self.ledger.mark_leg_failed(receipt_id, kind, FailureReason.REVERTED,
                                        f"reverted ({reverted[-1]})", reference=reverted[-1])
            logger.error("%s", LegReverted(receipt_id, kind.value, reverted[-1]))
            return PollOutcome.REVERTED
        for reference in reverted:
            self.ledger.record_attempt_outcome(receipt_id, kind, reference, AttemptOutcome.REVERTED)
        return None

    @staticmethod
    def _outcome_of(leg: TransactionLeg) -> PollOutcome:
        if leg.status == LegStatus.CONFIRMED:
            return PollOutcome.CONFIRMED
        if leg.failure_reason == FailureReason.REVERTED:
            return PollOutcome.REVERTED
        if leg.failure_reason == FailureReason.CONFIRMATION_TIMEOUT:
            return PollOutcome.TIMEOUT
        return PollOutcome.FAILED
