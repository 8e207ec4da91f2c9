"""
Receipt settlement pipeline.

Intake -> confidence routing -> (auto | manual review) -> reward quote ->
pending distribution -> split payout -> confirmation -> balance update.

Both the auto-approval path and the manual-review webhook are events fed
into ``dispatch``; they converge on ``settle`` before any money moves.
"""

import asyncio
import dataclasses
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from ledger.errors import ReceiptNotFoundError
from ledger.models import LegKind, Receipt, ReceiptStatus, ReceiptSubmission
from ledger.service import LedgerService
from rewards.calculator import RewardConfig, RewardQuote, calculate_reward
from rewards.router import DEFAULT_POLICY, Route, RoutingDecision, ThresholdPolicy, route

from .classifier import Classification, ReceiptClassifier
from .distributor import SplitDistributor
from .poller import ConfirmationPoller, PollOutcome
from .review import Decision, ReviewAck, ReviewDecision, ReviewNotifier

logger = logging.getLogger(__name__)

SETTLEABLE_STATUSES = (
    ReceiptStatus.AUTO_APPROVED,
    ReceiptStatus.MANUAL_APPROVED,
    ReceiptStatus.DISTRIBUTION_PENDING,
)

# A classifier-read total further than this from the claimed amount needs a human.
AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class Routed:
    receipt_id: str
    decision: RoutingDecision
    category: Optional[str] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class ReviewDecided:
    decision: ReviewDecision


ReceiptEvent = Union[Routed, ReviewDecided]


class SettlementPipeline:
    def __init__(
        self,
        ledger: LedgerService,
        distributor: SplitDistributor,
        poller: ConfirmationPoller,
        app_fund_address: str,
        notifier: Optional[ReviewNotifier] = None,
        classifier: Optional[ReceiptClassifier] = None,
        policy: Optional[ThresholdPolicy] = None,
        reward_config: Optional[RewardConfig] = None,
        classifier_timeout: float = 20.0,
    ):
        if not app_fund_address:
            raise ValueError("An app fund address is required")
        self.ledger = ledger
        self.distributor = distributor
        self.poller = poller
        self.app_fund_address = app_fund_address
        self.notifier = notifier
        self.classifier = classifier
        self.policy = policy or DEFAULT_POLICY
        self.reward_config = reward_config or RewardConfig()
        self.classifier_timeout = classifier_timeout
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- intake ---

    async def submit_receipt(
        self,
        submission: ReceiptSubmission,
        image: Optional[bytes] = None,
        content_type: str = "image/jpeg",
    ) -> Receipt:
        receipt, created = self.ledger.record_receipt(Receipt(**submission.model_dump()))
        if not created:
            logger.info("Receipt %s was already submitted (%s)", receipt.receipt_id, receipt.status.value)
            return receipt

        if receipt.confidence is not None:
            decision = route(receipt.confidence, receipt.category, self.policy)
            return await self.dispatch(Routed(receipt.receipt_id, decision))

        classification = await self._classify(receipt, image, content_type)
        if classification is None:
            decision = RoutingDecision(
                Route.MANUAL_REVIEW, receipt.category or "unknown", 0.0, self.policy.strictest,
                "classifier unavailable",
            )
            return await self.dispatch(Routed(receipt.receipt_id, decision, confidence=0.0))

        decision = route(classification.confidence, classification.category, self.policy)
        mismatch = self._amount_mismatch(receipt, classification)
        if decision.auto_approved and mismatch:
            decision = dataclasses.replace(decision, route=Route.MANUAL_REVIEW, reason=mismatch)
        return await self.dispatch(Routed(
            receipt.receipt_id, decision,
            category=classification.category, confidence=classification.confidence,
        ))

    async def _classify(self, receipt: Receipt, image: Optional[bytes], content_type: str) -> Optional[Classification]:
        if self.classifier is None or image is None:
            logger.warning("Receipt %s has no confidence score and cannot be classified", receipt.receipt_id)
            return None
        hints = {
            "content_type": content_type,
            "category": receipt.category,
            "store_name": receipt.store_name,
            "amount": str(receipt.amount),
        }
        try:
            return await asyncio.wait_for(self.classifier.classify(image, hints), self.classifier_timeout)
        except asyncio.TimeoutError:
            logger.warning("Classifier timed out for %s; routing to manual review", receipt.receipt_id)
        except Exception:
            logger.warning("Classifier failed for %s; routing to manual review", receipt.receipt_id, exc_info=True)
        return None

    @staticmethod
    def _amount_mismatch(receipt: Receipt, classification: Classification) -> Optional[str]:
        extracted = classification.extracted_amount
        if extracted is None or abs(extracted - receipt.amount) <= AMOUNT_TOLERANCE:
            return None
        return f"extracted amount {extracted} differs from claimed amount {receipt.amount}"

    # --- events ---

    async def dispatch(self, event: ReceiptEvent):
        if isinstance(event, Routed):
            return await self._on_routed(event)
        if isinstance(event, ReviewDecided):
            return await self._on_review_decided(event)
        raise TypeError(f"Unknown receipt event: {event!r}")

    async def _on_routed(self, event: Routed) -> Receipt:
        decision = event.decision
        fields = {"routing_reason": decision.reason}
        if event.category is not None:
            fields["category"] = event.category
        if event.confidence is not None:
            fields["confidence"] = event.confidence

        async with self._locks[event.receipt_id]:
            if decision.route == Route.AUTO_APPROVE:
                return self.ledger.transition_receipt(event.receipt_id, ReceiptStatus.AUTO_APPROVED, **fields)
            receipt = self.ledger.transition_receipt(event.receipt_id, ReceiptStatus.PENDING_MANUAL_REVIEW, **fields)

        if self.notifier:
            await self.notifier.notify(receipt, self.estimate(receipt))
        return receipt

    async def handle_review_decision(self, decision: ReviewDecision) -> ReviewAck:
        return await self.dispatch(ReviewDecided(decision))

    async def _on_review_decided(self, event: ReviewDecided) -> ReviewAck:
        decision = event.decision
        async with self._locks[decision.receipt_id]:
            try:
                receipt = self.ledger.get_receipt(decision.receipt_id)
            except ReceiptNotFoundError:
                return ReviewAck(success=False, receipt_id=decision.receipt_id,
                                 message=f"Receipt {decision.receipt_id} not found")

            if receipt.status != ReceiptStatus.PENDING_MANUAL_REVIEW:
                logger.info("Ignoring %s decision for %s: already %s",
                            decision.decision.value, receipt.receipt_id, receipt.status.value)
                return ReviewAck(success=True, receipt_id=receipt.receipt_id, status=receipt.status.value,
                                 message="Receipt already resolved; no change")

            new_status = (ReceiptStatus.MANUAL_APPROVED if decision.decision == Decision.APPROVED
                          else ReceiptStatus.MANUAL_REJECTED)
            receipt = self.ledger.transition_receipt(
                receipt.receipt_id, new_status, review_notes=decision.notes, reviewer=decision.reviewer,
            )
        return ReviewAck(success=True, receipt_id=receipt.receipt_id, status=receipt.status.value,
                         changed=True, message=f"Receipt {decision.decision.value}")

    # --- settlement ---

    def estimate(self, receipt: Receipt) -> RewardQuote:
        streak = self.ledger.get_streak(receipt.user_id)
        return calculate_reward(receipt.amount, receipt.category, streak, self.reward_config)

    async def settle(self, receipt_id: str) -> Receipt:
        async with self._locks[receipt_id]:
            receipt = self.ledger.get_receipt(receipt_id)
            if receipt.status not in SETTLEABLE_STATUSES:
                logger.info("Receipt %s is %s; nothing to settle", receipt_id, receipt.status.value)
                return receipt
            if receipt.status != ReceiptStatus.DISTRIBUTION_PENDING:
                receipt = self.ledger.transition_receipt(receipt_id, ReceiptStatus.DISTRIBUTION_PENDING)

            distribution = self.ledger.find_distribution(receipt_id)
            if distribution is None:
                opened = self.ledger.open_distribution(
                    receipt_id, self.estimate(receipt), receipt.wallet_address, self.app_fund_address,
                )
                distribution = opened.distribution

            await self.distributor.submit(distribution)
            await self._confirm_legs(receipt_id)
            return self._finalize(receipt_id)

    async def retry_failed_legs(self, receipt_id: str, include_reverted: bool = False) -> Receipt:
        """Operator recovery for a partially paid receipt."""
        async with self._locks[receipt_id]:
            receipt = self.ledger.get_receipt(receipt_id)
            if receipt.status != ReceiptStatus.DISTRIBUTION_PARTIAL:
                logger.info("Receipt %s is %s; no legs to retry", receipt_id, receipt.status.value)
                return receipt
            self.ledger.transition_receipt(receipt_id, ReceiptStatus.DISTRIBUTION_PENDING)

            await asyncio.gather(*(
                self.distributor.submit_leg(receipt_id, kind, retry=True, include_reverted=include_reverted)
                for kind in LegKind
            ))
            await self._confirm_legs(receipt_id)
            return self._finalize(receipt_id)

    async def resume_inflight(self) -> list[Receipt]:
        """Pick up every receipt that was between approval and a final payout status."""
        receipt_ids = [r.receipt_id for status in SETTLEABLE_STATUSES for r in self.ledger.list_receipts(status)]
        for distribution in self.ledger.list_open_distributions():
            if distribution.receipt_id not in receipt_ids:
                self.ledger.apply_confirmed_distribution(distribution.receipt_id)
        if receipt_ids:
            logger.info("Resuming %d in-flight receipt(s)", len(receipt_ids))
        return list(await asyncio.gather(*(self.settle(receipt_id) for receipt_id in receipt_ids)))

    async def _confirm_legs(self, receipt_id: str) -> None:
        outcomes = await asyncio.gather(*(self.poller.confirm_leg(receipt_id, kind) for kind in LegKind))
        if any(o != PollOutcome.CONFIRMED for o in outcomes):
            logger.error("Receipt %s needs attention: user leg %s, app fund leg %s",
                         receipt_id, outcomes[0].value, outcomes[1].value)
        self.ledger.apply_confirmed_distribution(receipt_id)

    def _finalize(self, receipt_id: str) -> Receipt:
        distribution = self.ledger.get_distribution(receipt_id)
        receipt = self.ledger.get_receipt(receipt_id)
        outcome = distribution.outcome()
        if outcome == receipt.status or outcome == ReceiptStatus.DISTRIBUTION_PENDING:
            return receipt
        return self.ledger.transition_receipt(receipt_id, outcome)
