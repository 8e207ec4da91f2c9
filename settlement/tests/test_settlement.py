"""
Unit Tests for the Settlement Pipeline

Tests cover:
1. Signer nonce sequencing and signatures
2. Split Distributor submission, retries and dry run
3. Confirmation Poller timeouts, resubmission and reversion
4. Pipeline routing, manual review and settlement scenarios
5. Review webhook parsing and notification delivery
6. Relayer client and classifier response handling
7. HTTP endpoints
"""

import asyncio
import dataclasses
import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from ledger.models import (
    AttemptOutcome,
    FailureReason,
    LegStatus,
    Receipt,
    ReceiptStatus,
    ReceiptSubmission,
    utcnow,
)
from rewards.calculator import calculate_reward
from settlement.api import create_app
from settlement.chain import RelayerClient, TransferState
from settlement.classifier import Classification, GroqReceiptClassifier
from settlement.errors import ClassificationUnavailable, LegSubmissionError, WebhookMalformedPayload
from settlement.review import (
    Decision,
    ReviewDecision,
    ReviewNotifier,
    parse_review_decision,
    verify_webhook_token,
)
from settlement.signer import Signer, Transfer

USER_ID = "user-42"
USER_WALLET = "0xuser"


def submission(receipt_id: str = "rcpt-001", confidence=0.92, category: str = "ride_share") -> ReceiptSubmission:
    return ReceiptSubmission(
        receipt_id=receipt_id,
        user_id=USER_ID,
        wallet_address=USER_WALLET,
        amount=Decimal("25.99"),
        category=category,
        confidence=confidence,
        store_name="Uber",
    )


def approve(receipt_id: str = "rcpt-001") -> ReviewDecision:
    return ReviewDecision(receipt_id=receipt_id, decision=Decision.APPROVED, reviewer="ops")


class TestSigner:
    """Tests for nonce ownership and transfer signing."""

    def test_concurrent_submissions_get_distinct_nonces(self):
        """Nonces are handed out one at a time under the signer lock."""
        signer = Signer("0xdistributor", "secret")
        seen = []

        async def submit(signed):
            await asyncio.sleep(0)
            seen.append(signed.nonce)
            return f"tx-{signed.nonce}"

        async def scenario():
            transfers = [Transfer(to=f"0x{i}", amount=Decimal("1.00"), memo=f"r{i}:user") for i in range(5)]
            return await asyncio.gather(*(signer.sign_and_submit(t, submit) for t in transfers))

        results = asyncio.run(scenario())

        assert sorted(r.nonce for r in results) == [0, 1, 2, 3, 4]
        assert seen == [0, 1, 2, 3, 4]

    def test_failed_submission_resynchronises_nonce(self):
        """After a failure the next nonce is read again from the ledger."""
        reads = []

        async def nonce_source(identity):
            reads.append(identity)
            return 7

        signer = Signer("0xdistributor", "secret", nonce_source=nonce_source)

        async def failing(signed):
            raise LegSubmissionError("relayer down")

        async def succeeding(signed):
            return "tx-ok"

        async def scenario():
            transfer = Transfer(to="0xuser", amount=Decimal("1.00"), memo="r:user")
            with pytest.raises(LegSubmissionError):
                await signer.sign_and_submit(transfer, failing)
            first = await signer.sign_and_submit(transfer, succeeding)
            second = await signer.sign_and_submit(transfer, succeeding)
            return first, second

        first, second = asyncio.run(scenario())

        assert len(reads) == 2
        assert (first.nonce, second.nonce) == (7, 8)

    def test_signature_detects_tampering(self):
        """A changed amount no longer verifies."""
        signer = Signer("0xdistributor", "secret")
        signed = signer.sign(Transfer(to="0xuser", amount=Decimal("4.55"), memo="r:user"), nonce=3)

        assert signer.verify(signed)
        assert not signer.verify(dataclasses.replace(signed, amount="455.00"))

    def test_signer_requires_credentials(self):
        """A signer cannot be built without an identity and secret."""
        with pytest.raises(ValueError):
            Signer("0xdistributor", "")


class TestSplitDistributor:
    """Tests for submitting the two payout legs."""

    @staticmethod
    def open(pipeline, receipt_id="rcpt-001"):
        ledger = pipeline.ledger
        ledger.record_receipt(Receipt(**submission(receipt_id).model_dump()))
        ledger.transition_receipt(receipt_id, ReceiptStatus.AUTO_APPROVED)
        ledger.transition_receipt(receipt_id, ReceiptStatus.DISTRIBUTION_PENDING)
        quote = calculate_reward(Decimal("25.99"), "ride_share", 3)
        return ledger.open_distribution(receipt_id, quote, USER_WALLET, "0xappfund").distribution

    def test_two_independent_signed_transfers(self, pipeline_factory, ledger_client):
        """Each leg is its own signed transfer with its own nonce."""
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        result = asyncio.run(pipeline.distributor.submit(distribution))

        assert result.user.status == LegStatus.SUBMITTED
        assert result.app_fund.status == LegStatus.SUBMITTED
        assert result.user.reference != result.app_fund.reference
        user_tx = ledger_client.transfers_for("user")[0]
        fund_tx = ledger_client.transfers_for("app_fund")[0]
        assert (user_tx.to, user_tx.amount) == (USER_WALLET, "4.55")
        assert (fund_tx.to, fund_tx.amount) == ("0xappfund", "1.95")
        assert {user_tx.nonce, fund_tx.nonce} == {0, 1}
        assert pipeline.distributor.signer.verify(user_tx)

    def test_submission_error_never_yields_reference(self, pipeline_factory, ledger_client):
        """Exhausted submission retries fail the leg without a reference."""
        ledger_client.failures["user"] = [LegSubmissionError("relayer unavailable") for _ in range(3)]
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        result = asyncio.run(pipeline.distributor.submit(distribution))

        leg = pipeline.ledger.get_distribution("rcpt-001").user_leg
        assert result.user.status == LegStatus.FAILED
        assert result.user.reference is None
        assert leg.status == LegStatus.FAILED
        assert leg.reference is None
        assert leg.failure_reason == FailureReason.SUBMISSION_ERROR
        assert leg.submission_errors == 3
        # The other leg is unaffected
        assert result.app_fund.status == LegStatus.SUBMITTED

    def test_transient_error_is_retried(self, pipeline_factory, ledger_client):
        """One transient failure is absorbed by the retry loop."""
        ledger_client.failures["user"] = [LegSubmissionError("timeout")]
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        result = asyncio.run(pipeline.distributor.submit(distribution))

        assert result.user.status == LegStatus.SUBMITTED
        assert pipeline.ledger.get_distribution("rcpt-001").user_leg.submission_errors == 1

    def test_rejected_transfer_is_not_retried(self, pipeline_factory, ledger_client):
        """A non-retryable rejection fails the leg after one attempt."""
        ledger_client.failures["app_fund"] = [LegSubmissionError("bad address", retryable=False)]
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        result = asyncio.run(pipeline.distributor.submit(distribution))

        leg = pipeline.ledger.get_distribution("rcpt-001").app_fund_leg
        assert result.app_fund.status == LegStatus.FAILED
        assert leg.submission_errors == 1
        assert ledger_client.transfers_for("app_fund") == []

    def test_submitted_leg_is_not_sent_twice(self, pipeline_factory, ledger_client):
        """Submitting again resumes instead of paying again."""
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        async def scenario():
            await pipeline.distributor.submit(distribution)
            return await pipeline.distributor.submit(pipeline.ledger.get_distribution("rcpt-001"))

        again = asyncio.run(scenario())

        assert again.user.skipped and again.app_fund.skipped
        assert len(ledger_client.submitted) == 2

    def test_preview_sends_nothing(self, pipeline_factory, ledger_client):
        """The dry run lists transfers without signing or sending them."""
        pipeline = pipeline_factory()
        distribution = self.open(pipeline)

        transfers = pipeline.distributor.preview(distribution)

        assert [t.amount for t in transfers] == [Decimal("4.55"), Decimal("1.95")]
        assert ledger_client.submitted == {}
        assert all(leg.reference is None for leg in pipeline.ledger.get_distribution("rcpt-001").legs)


class TestConfirmationPoller:
    """Tests for confirmation, timeout and reversion handling."""

    def test_timeout_resubmits_and_confirms(self, pipeline_factory, ledger_client):
        """A leg that never lands is resubmitted; the new transfer confirms."""
        ledger_client.stuck["user"] = 1
        pipeline = pipeline_factory(max_polls=2, max_resubmissions=1)

        async def scenario():
            await pipeline.submit_receipt(submission())
            return await pipeline.settle("rcpt-001")

        receipt = asyncio.run(scenario())

        leg = pipeline.ledger.get_distribution("rcpt-001").user_leg
        assert receipt.status == ReceiptStatus.DISTRIBUTION_COMPLETE
        assert leg.status == LegStatus.CONFIRMED
        assert leg.resubmissions == 1
        assert [a.outcome for a in leg.attempts] == [AttemptOutcome.EXPIRED, AttemptOutcome.CONFIRMED]
        assert leg.reference == leg.attempts[-1].reference

    def test_exhausted_resubmissions_fail_the_leg(self, pipeline_factory, ledger_client):
        """After the last resubmission times out the leg fails as a timeout."""
        ledger_client.stuck["user"] = 99
        pipeline = pipeline_factory(max_polls=2, max_resubmissions=1)

        async def scenario():
            await pipeline.submit_receipt(submission())
            return await pipeline.settle("rcpt-001")

        receipt = asyncio.run(scenario())

        distribution = pipeline.ledger.get_distribution("rcpt-001")
        assert receipt.status == ReceiptStatus.DISTRIBUTION_PARTIAL
        assert receipt.public_status == "payout_incomplete"
        assert distribution.user_leg.failure_reason == FailureReason.CONFIRMATION_TIMEOUT
        assert len(distribution.user_leg.attempts) == 2
        assert distribution.app_fund_leg.status == LegStatus.CONFIRMED
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("0")

    def test_retry_after_timeout_watches_the_new_transfer(self, pipeline_factory, ledger_client):
        """An operator retry of a timed-out leg polls its new transfer to confirmation."""
        ledger_client.stuck["user"] = 2
        pipeline = pipeline_factory(max_polls=2, max_resubmissions=1)

        async def scenario():
            await pipeline.submit_receipt(submission())
            partial = await pipeline.settle("rcpt-001")
            retried = await pipeline.retry_failed_legs("rcpt-001")
            return partial, retried

        partial, retried = asyncio.run(scenario())

        leg = pipeline.ledger.get_distribution("rcpt-001").user_leg
        assert partial.status == ReceiptStatus.DISTRIBUTION_PARTIAL
        assert retried.status == ReceiptStatus.DISTRIBUTION_COMPLETE
        assert leg.status == LegStatus.CONFIRMED
        assert [a.outcome for a in leg.attempts] == [
            AttemptOutcome.EXPIRED, AttemptOutcome.EXPIRED, AttemptOutcome.CONFIRMED,
        ]
        assert len(ledger_client.transfers_for("user")) == 3
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("3.50")

    def test_reverted_leg_ends_partial(self, pipeline_factory, ledger_client):
        """A reverted app fund leg is failed/reverted and the receipt is partial."""
        ledger_client.states["app_fund"] = TransferState.REVERTED
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission())
            return await pipeline.settle("rcpt-001")

        receipt = asyncio.run(scenario())

        distribution = pipeline.ledger.get_distribution("rcpt-001")
        assert receipt.status == ReceiptStatus.DISTRIBUTION_PARTIAL
        assert distribution.app_fund_leg.status == LegStatus.FAILED
        assert distribution.app_fund_leg.failure_reason == FailureReason.REVERTED
        assert distribution.app_fund_leg.reference is not None
        assert distribution.user_leg.status == LegStatus.CONFIRMED
        # Reverted legs are not resubmitted automatically
        assert len(ledger_client.transfers_for("app_fund")) == 1
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("3.50")


class TestPipeline:
    """Tests for routing, review and settlement end to end."""

    def test_auto_approved_receipt_is_paid(self, pipeline_factory):
        """25.99 ride share with a 3-day streak pays 4.55 to the user."""
        pipeline = pipeline_factory()
        pipeline.ledger.set_streak(USER_ID, 3)

        async def scenario():
            routed = await pipeline.submit_receipt(submission())
            settled = await pipeline.settle("rcpt-001")
            return routed, settled

        routed, settled = asyncio.run(scenario())

        assert routed.status == ReceiptStatus.AUTO_APPROVED
        assert settled.status == ReceiptStatus.DISTRIBUTION_COMPLETE
        assert settled.public_status == "rewarded"
        distribution = pipeline.ledger.get_distribution("rcpt-001")
        assert distribution.quote.total_reward == Decimal("6.50")
        assert distribution.balance_applied
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("4.55")

    def test_paid_receipts_build_the_streak(self, pipeline_factory):
        """A payout on the day after the last one raises the next quote's multiplier."""
        pipeline = pipeline_factory()
        pipeline.ledger.record_activity(USER_ID, utcnow().date() - timedelta(days=1))

        async def scenario():
            await pipeline.submit_receipt(submission("rcpt-001"))
            await pipeline.settle("rcpt-001")
            await pipeline.submit_receipt(submission("rcpt-002"))
            await pipeline.settle("rcpt-002")

        asyncio.run(scenario())

        first = pipeline.ledger.get_distribution("rcpt-001").quote
        second = pipeline.ledger.get_distribution("rcpt-002").quote
        assert first.streak_multiplier == Decimal("1.1")
        assert second.streak_multiplier == Decimal("1.2")
        assert second.total_reward == Decimal("6.00")
        assert pipeline.ledger.get_streak(USER_ID) == 2

    def test_low_confidence_goes_to_review(self, pipeline_factory, notifier):
        """A score below the threshold waits for a reviewer and the user sees 'pending'."""
        pipeline = pipeline_factory()

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=0.5)))

        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW
        assert receipt.public_status == "pending"
        assert "below threshold" in receipt.routing_reason
        assert notifier.notified == [("rcpt-001", Decimal("5.00"))]

    def test_classifier_failure_goes_to_review(self, pipeline_factory, failing_classifier, notifier):
        """A classifier error never auto-approves."""
        pipeline = pipeline_factory(classifier=failing_classifier)

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None), image=b"jpeg"))

        assert failing_classifier.calls == 1
        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW
        assert receipt.confidence == 0.0
        assert len(notifier.notified) == 1

    def test_classifier_timeout_goes_to_review(self, pipeline_factory, classifier_factory):
        """A slow classifier is abandoned and the receipt is escalated."""
        slow = classifier_factory(result=Classification(confidence=0.99, category="ride_share"), delay=1)
        pipeline = pipeline_factory(classifier=slow, classifier_timeout=0.01)

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None), image=b"jpeg"))

        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW

    def test_missing_image_goes_to_review(self, pipeline_factory, classifier_factory):
        """Without a score or an image there is nothing to trust."""
        pipeline = pipeline_factory(classifier=classifier_factory(result=Classification(0.99, "ride_share")))

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None)))

        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW

    def test_classified_receipt_is_routed(self, pipeline_factory, classifier_factory):
        """The classifier's score and category drive routing."""
        classifier = classifier_factory(result=Classification(confidence=0.9, category="ride_share"))
        pipeline = pipeline_factory(classifier=classifier)

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None, category="Lyft"), image=b"jpeg"))

        assert receipt.status == ReceiptStatus.AUTO_APPROVED
        assert receipt.confidence == 0.9
        assert receipt.category == "ride_share"

    def test_extracted_amount_mismatch_goes_to_review(self, pipeline_factory, classifier_factory, notifier):
        """A confident read whose total disagrees with the claim is escalated."""
        classifier = classifier_factory(result=Classification(0.99, "ride_share", extracted_amount=Decimal("52.00")))
        pipeline = pipeline_factory(classifier=classifier)

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None), image=b"jpeg"))

        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW
        assert "extracted amount 52.00" in receipt.routing_reason
        assert len(notifier.notified) == 1

    def test_matching_extracted_amount_keeps_auto_approval(self, pipeline_factory, classifier_factory):
        classifier = classifier_factory(result=Classification(0.99, "ride_share", extracted_amount=Decimal("25.99")))
        pipeline = pipeline_factory(classifier=classifier)

        receipt = asyncio.run(pipeline.submit_receipt(submission(confidence=None), image=b"jpeg"))

        assert receipt.status == ReceiptStatus.AUTO_APPROVED

    def test_duplicate_submission_is_not_rerouted(self, pipeline_factory, notifier):
        """Submitting the same receipt id again returns the stored receipt."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission(confidence=0.5))
            return await pipeline.submit_receipt(submission(confidence=0.99))

        receipt = asyncio.run(scenario())

        assert receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW
        assert len(notifier.notified) == 1

    def test_duplicate_approval_after_payout_is_a_noop(self, pipeline_factory, ledger_client):
        """A retried approval webhook for a paid receipt is acked without paying again."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission(confidence=0.5))
            first = await pipeline.handle_review_decision(approve())
            await pipeline.settle("rcpt-001")
            second = await pipeline.handle_review_decision(approve())
            await pipeline.settle("rcpt-001")
            return first, second

        first, second = asyncio.run(scenario())

        assert first.success and first.changed
        assert first.status == ReceiptStatus.MANUAL_APPROVED.value
        assert second.success and not second.changed
        assert second.status == ReceiptStatus.DISTRIBUTION_COMPLETE.value
        assert len(pipeline.ledger.storage.list_distributions()) == 1
        assert len(ledger_client.submitted) == 2
        assert pipeline.ledger.get_receipt("rcpt-001").reviewer == "ops"

    def test_rejected_receipt_is_never_paid(self, pipeline_factory, ledger_client):
        """A rejection is terminal and settlement does nothing."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission(confidence=0.5))
            ack = await pipeline.handle_review_decision(
                ReviewDecision(receipt_id="rcpt-001", decision=Decision.REJECTED, notes="blurry"))
            receipt = await pipeline.settle("rcpt-001")
            return ack, receipt

        ack, receipt = asyncio.run(scenario())

        assert ack.status == ReceiptStatus.MANUAL_REJECTED.value
        assert receipt.status == ReceiptStatus.MANUAL_REJECTED
        assert receipt.review_notes == "blurry"
        assert pipeline.ledger.find_distribution("rcpt-001") is None
        assert ledger_client.submitted == {}

    def test_decision_for_unknown_receipt(self, pipeline_factory):
        """An unknown receipt id is acked as unsuccessful."""
        pipeline = pipeline_factory()

        ack = asyncio.run(pipeline.handle_review_decision(approve("missing")))

        assert not ack.success
        assert "not found" in ack.message

    def test_concurrent_settlement_pays_once(self, pipeline_factory, ledger_client):
        """Two triggers for the same receipt produce one distribution."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission())
            return await asyncio.gather(pipeline.settle("rcpt-001"), pipeline.settle("rcpt-001"))

        results = asyncio.run(scenario())

        assert all(r.status == ReceiptStatus.DISTRIBUTION_COMPLETE for r in results)
        assert len(ledger_client.submitted) == 2
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("3.50")

    def test_resume_inflight_settles_approved_receipts(self, pipeline_factory):
        """Receipts approved before a restart are settled on resume."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission("rcpt-001"))
            await pipeline.submit_receipt(submission("rcpt-002"))
            await pipeline.submit_receipt(submission("rcpt-003", confidence=0.1))
            return await pipeline.resume_inflight()

        resumed = asyncio.run(scenario())

        assert sorted(r.receipt_id for r in resumed) == ["rcpt-001", "rcpt-002"]
        assert all(r.status == ReceiptStatus.DISTRIBUTION_COMPLETE for r in resumed)
        assert pipeline.ledger.get_receipt("rcpt-003").status == ReceiptStatus.PENDING_MANUAL_REVIEW

    def test_retry_reverted_leg_only_when_asked(self, pipeline_factory, ledger_client):
        """Operator retry skips reverted legs unless explicitly included."""
        ledger_client.states["app_fund"] = TransferState.REVERTED
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission())
            await pipeline.settle("rcpt-001")
            skipped = await pipeline.retry_failed_legs("rcpt-001")
            ledger_client.states["app_fund"] = TransferState.CONFIRMED
            retried = await pipeline.retry_failed_legs("rcpt-001", include_reverted=True)
            return skipped, retried

        skipped, retried = asyncio.run(scenario())

        assert skipped.status == ReceiptStatus.DISTRIBUTION_PARTIAL
        assert retried.status == ReceiptStatus.DISTRIBUTION_COMPLETE
        assert len(ledger_client.transfers_for("app_fund")) == 2
        assert len(ledger_client.transfers_for("user")) == 1
        assert pipeline.ledger.get_balance(USER_ID).balance == Decimal("3.50")

    def test_retry_ignores_receipts_that_are_not_partial(self, pipeline_factory):
        """Only partial payouts can be retried."""
        pipeline = pipeline_factory()

        async def scenario():
            await pipeline.submit_receipt(submission())
            return await pipeline.retry_failed_legs("rcpt-001")

        receipt = asyncio.run(scenario())

        assert receipt.status == ReceiptStatus.AUTO_APPROVED


class TestReviewGateway:
    """Tests for webhook parsing and reviewer notification."""

    def test_parse_accepts_alternate_field_names(self):
        """receiptId / status / admin_notes are accepted alongside the canonical names."""
        decision = parse_review_decision({"receiptId": "rcpt-001", "status": "approved", "admin_notes": "ok"})

        assert decision.receipt_id == "rcpt-001"
        assert decision.decision == Decision.APPROVED
        assert decision.notes == "ok"

    @pytest.mark.parametrize("payload", [
        {"receipt_id": "rcpt-001"},
        {"receipt_id": "rcpt-001", "decision": "maybe"},
        {"decision": "approved"},
        ["rcpt-001", "approved"],
        None,
    ])
    def test_malformed_payload_rejected(self, payload):
        """Bad payloads are refused, never coerced into a decision."""
        with pytest.raises(WebhookMalformedPayload):
            parse_review_decision(payload)

    def test_malformed_payload_lists_errors(self):
        """Validation problems are reported field by field."""
        with pytest.raises(WebhookMalformedPayload) as excinfo:
            parse_review_decision({"receipt_id": "", "decision": "maybe"})

        assert len(excinfo.value.errors) == 2

    def test_webhook_token(self):
        """Tokens are compared when one is configured."""
        assert verify_webhook_token("secret", "secret")
        assert not verify_webhook_token("wrong", "secret")
        assert not verify_webhook_token(None, "secret")
        assert verify_webhook_token(None, "")

    def test_notifier_retries_until_delivered(self):
        """A failed delivery is retried with the retry count header."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if len(requests) == 1:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"ok": True})

        receipt = Receipt(**submission(confidence=0.5).model_dump())
        estimate = calculate_reward(receipt.amount, receipt.category, 0)

        async def scenario():
            client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            notifier = ReviewNotifier("http://review.test/hook", evidence_base_url="http://evidence.test",
                                      backoff_seconds=0, client=client)
            try:
                return await notifier.notify(receipt, estimate)
            finally:
                await notifier.aclose()

        delivered = asyncio.run(scenario())

        assert delivered is True
        assert [r.headers["X-Retry-Count"] for r in requests] == ["0", "1"]
        body = json.loads(requests[-1].content)
        assert body["receipt_id"] == "rcpt-001"
        assert body["estimated_reward"] == "5.00"
        assert body["evidence_url"] == "http://evidence.test/receipts/rcpt-001/image"

    def test_notifier_without_url(self):
        """Without a webhook the receipt just waits in the review queue."""
        receipt = Receipt(**submission(confidence=0.5).model_dump())
        estimate = calculate_reward(receipt.amount, receipt.category, 0)

        async def scenario():
            notifier = ReviewNotifier("")
            try:
                return await notifier.notify(receipt, estimate)
            finally:
                await notifier.aclose()

        assert asyncio.run(scenario()) is False


class TestRelayerClient:
    """Tests for the external ledger HTTP client."""

    @staticmethod
    def run(handler, call):
        async def scenario():
            client = RelayerClient("http://relayer.test", client=httpx.AsyncClient(
                base_url="http://relayer.test", transport=httpx.MockTransport(handler)))
            try:
                return await call(client)
            finally:
                await client.aclose()

        return asyncio.run(scenario())

    @staticmethod
    def signed():
        return Signer("0xdistributor", "secret").sign(Transfer(to="0xuser", amount=Decimal("4.55"), memo="r:user"), 0)

    def test_submit_returns_reference(self):
        """The relayer's id is the leg reference."""
        reference = self.run(lambda request: httpx.Response(200, json={"id": "0xabc"}),
                             lambda client: client.submit(self.signed()))

        assert reference == "0xabc"

    def test_submit_without_id_raises(self):
        """A reply without an id never becomes a reference."""
        with pytest.raises(LegSubmissionError):
            self.run(lambda request: httpx.Response(200, json={}), lambda client: client.submit(self.signed()))

    def test_server_errors_are_retryable(self):
        """5xx and 429 are transient; other 4xx are not."""
        with pytest.raises(LegSubmissionError) as transient:
            self.run(lambda request: httpx.Response(502), lambda client: client.submit(self.signed()))
        with pytest.raises(LegSubmissionError) as rejected:
            self.run(lambda request: httpx.Response(400, text="bad"), lambda client: client.submit(self.signed()))

        assert transient.value.retryable is True
        assert rejected.value.retryable is False

    def test_status_states(self):
        """null is pending, a receipt is confirmed unless it reverted."""
        bodies = {
            "/transactions/tx-1/receipt": None,
            "/transactions/tx-2/receipt": {"reverted": False, "meta": {"blockNumber": 12}},
            "/transactions/tx-3/receipt": {"reverted": True, "meta": {"blockNumber": 13}},
        }

        def handler(request):
            return httpx.Response(200, json=bodies[request.url.path])

        async def statuses(client):
            return [await client.get_status(ref) for ref in ("tx-1", "tx-2", "tx-3")]

        pending, confirmed, reverted = self.run(handler, statuses)

        assert pending.state == TransferState.PENDING
        assert (confirmed.state, confirmed.block_number) == (TransferState.CONFIRMED, 12)
        assert reverted.state == TransferState.REVERTED

    def test_status_lookup_errors_read_as_pending(self):
        """A failed lookup is not a verdict."""
        status = self.run(lambda request: httpx.Response(500), lambda client: client.get_status("tx-1"))

        assert status.state == TransferState.PENDING


class TestClassifierParsing:
    """Tests for reading the vision model's reply."""

    def test_parse_json_in_prose(self):
        """The JSON object is pulled out of surrounding text."""
        result = GroqReceiptClassifier.parse_result(
            'Here you go:\n```json\n{"confidence": 0.91, "category": "ride_share", '
            '"extracted_amount": 25.99, "store_name": "Uber"}\n```'
        )

        assert result.confidence == 0.91
        assert result.category == "ride_share"
        assert result.extracted_amount == Decimal("25.99")

    @pytest.mark.parametrize("text", ["no json here", '{"category": "ride_share"}', '{"confidence": 1.7}'])
    def test_unusable_reply_raises(self, text):
        """Missing or out-of-range confidence is unavailable, not zero."""
        with pytest.raises(ClassificationUnavailable):
            GroqReceiptClassifier.parse_result(text)

    def test_no_api_key(self):
        """Without a key the classifier reports itself unavailable."""
        classifier = GroqReceiptClassifier(api_key="")

        assert not classifier.is_available
        with pytest.raises(ClassificationUnavailable):
            asyncio.run(classifier.classify(b"jpeg", {}))


class TestApi:
    """Tests for the HTTP surface."""

    HEADERS = {"X-Webhook-Token": "secret"}

    @staticmethod
    def body(receipt_id="rcpt-api-1", confidence=0.92):
        return {
            "receipt_id": receipt_id,
            "user_id": USER_ID,
            "wallet_address": USER_WALLET,
            "amount": "25.99",
            "category": "ride_share",
            "confidence": confidence,
        }

    def test_health(self, pipeline_factory):
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_auto_approved_receipt_settles_in_background(self, pipeline_factory):
        """The submission answers immediately; settlement runs as a background task."""
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            created = client.post("/receipts", json=self.body())
            fetched = client.get("/receipts/rcpt-api-1")
            distribution = client.get("/distributions/rcpt-api-1")
            balance = client.get(f"/users/{USER_ID}/balance")

        assert created.status_code == 201
        assert created.json()["receipt"]["status"] == "auto_approved"
        assert fetched.json()["receipt"]["status"] == "distribution_complete"
        assert fetched.json()["public_status"] == "rewarded"
        assert distribution.json()["user_leg"]["status"] == "confirmed"
        assert Decimal(balance.json()["balance"]) == Decimal("3.50")

    def test_manual_review_round_trip(self, pipeline_factory):
        """A pending receipt is listed, approved by webhook and then paid."""
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            created = client.post("/receipts", json=self.body(confidence=0.4))
            queue = client.get("/admin/receipts/pending-review")
            ack = client.post("/webhooks/manual-review", headers=self.HEADERS,
                              json={"receipt_id": "rcpt-api-1", "decision": "approved"})
            repeat = client.post("/webhooks/manual-review", headers=self.HEADERS,
                                 json={"receipt_id": "rcpt-api-1", "decision": "approved"})
            fetched = client.get("/receipts/rcpt-api-1")

        assert created.json()["public_status"] == "pending"
        assert [r["receipt_id"] for r in queue.json()] == ["rcpt-api-1"]
        assert ack.status_code == 200
        assert ack.json()["success"] is True
        assert ack.json()["status"] == "manual_approved"
        assert repeat.json()["success"] is True
        assert repeat.json()["changed"] is False
        assert fetched.json()["receipt"]["status"] == "distribution_complete"

    def test_malformed_webhook_gets_json_400(self, pipeline_factory):
        """Invalid JSON and invalid fields both answer 400 with a JSON body."""
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            not_json = client.post("/webhooks/manual-review", headers=self.HEADERS, content="not json")
            missing = client.post("/webhooks/manual-review", headers=self.HEADERS, json={"receipt_id": "x"})

        assert not_json.status_code == 400
        assert not_json.json()["error_code"] == "MALFORMED_PAYLOAD"
        assert missing.status_code == 400
        assert missing.json()["success"] is False
        assert missing.json()["errors"]

    def test_webhook_requires_token(self, pipeline_factory):
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            response = client.post("/webhooks/manual-review", headers={"X-Webhook-Token": "nope"},
                                   json={"receipt_id": "x", "decision": "approved"})

        assert response.status_code == 401

    def test_webhook_for_unknown_receipt(self, pipeline_factory):
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            response = client.post("/webhooks/manual-review", headers=self.HEADERS,
                                   json={"receipt_id": "missing", "decision": "rejected"})

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_errors_map_to_status_codes(self, pipeline_factory):
        """Missing records are 404, retrying a paid receipt is 409, bad input is 422."""
        with TestClient(create_app(pipeline_factory(), webhook_token="secret")) as client:
            client.post("/receipts", json=self.body())
            retry = client.post("/distributions/rcpt-api-1/retry", json={"include_reverted": True})
            missing_receipt = client.get("/receipts/missing")
            missing_distribution = client.get("/distributions/missing")
            invalid = client.post("/receipts", json={**self.body("rcpt-bad"), "amount": "-1"})

        assert retry.status_code == 409
        assert missing_receipt.status_code == 404
        assert missing_distribution.status_code == 404
        assert invalid.status_code == 422


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
