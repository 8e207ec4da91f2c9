import asyncio
from decimal import Decimal
from typing import Optional

import pytest

from ledger.service import LedgerService
from settlement.chain import TransferState, TransferStatus
from settlement.classifier import Classification
from settlement.distributor import SplitDistributor
from settlement.errors import ClassificationUnavailable, LegSubmissionError
from settlement.pipeline import SettlementPipeline
from settlement.poller import ConfirmationPoller
from settlement.signer import SignedTransfer, Signer

APP_FUND_ADDRESS = "0xappfund"
DISTRIBUTOR_ADDRESS = "0xdistributor"


class FakeLedgerClient:
    """In-process stand-in for the relayer.

    ``states`` scripts the final state per leg kind ("user" / "app_fund"),
    ``stuck`` makes the first N submissions of a kind never land, and
    ``failures`` raises the given errors on the next submissions of a kind.
    """

    def __init__(self):
        self.submitted: dict[str, SignedTransfer] = {}
        self.states: dict[str, TransferState] = {}
        self.stuck: dict[str, int] = {}
        self.failures: dict[str, list[LegSubmissionError]] = {}
        self.attempts: dict[str, int] = {}
        self._stuck_refs: set[str] = set()

    @staticmethod
    def kind_of(signed: SignedTransfer) -> str:
        return signed.memo.rsplit(":", 1)[1]

    def transfers_for(self, kind: str) -> list[SignedTransfer]:
        return [s for s in self.submitted.values() if self.kind_of(s) == kind]

    async def submit(self, signed: SignedTransfer) -> str:
        await asyncio.sleep(0)
        kind = self.kind_of(signed)
        pending_failures = self.failures.get(kind)
        if pending_failures:
            raise pending_failures.pop(0)

        reference = f"tx-{len(self.submitted) + 1}"
        self.submitted[reference] = signed
        attempt = self.attempts.get(kind, 0)
        self.attempts[kind] = attempt + 1
        if attempt < self.stuck.get(kind, 0):
            self._stuck_refs.add(reference)
        return reference

    async def get_status(self, reference: str) -> TransferStatus:
        signed = self.submitted[reference]
        if reference in self._stuck_refs:
            return TransferStatus(reference, TransferState.PENDING)
        state = self.states.get(self.kind_of(signed), TransferState.CONFIRMED)
        return TransferStatus(reference, state, block_number=100)

    async def get_nonce(self, identity: str) -> int:
        return len(self.submitted)


class FakeClassifier:
    def __init__(self, result: Optional[Classification] = None, error: Optional[Exception] = None, delay: float = 0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def classify(self, image: bytes, hints: dict) -> Classification:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class FakeNotifier:
    def __init__(self):
        self.notified: list[tuple[str, Decimal]] = []

    async def notify(self, receipt, estimate) -> bool:
        self.notified.append((receipt.receipt_id, estimate.total_reward))
        return True


@pytest.fixture
def ledger_client():
    return FakeLedgerClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def failing_classifier():
    return FakeClassifier(error=ClassificationUnavailable("model offline"))


@pytest.fixture
def pipeline_factory(ledger_client, notifier):
    def build(
        ledger: Optional[LedgerService] = None,
        classifier=None,
        max_polls: int = 2,
        max_resubmissions: int = 1,
        max_submission_attempts: int = 3,
        classifier_timeout: float = 1.0,
    ) -> SettlementPipeline:
        ledger = ledger or LedgerService()
        signer = Signer(DISTRIBUTOR_ADDRESS, "test-secret", nonce_source=ledger_client.get_nonce)
        distributor = SplitDistributor(
            ledger, ledger_client, signer,
            max_submission_attempts=max_submission_attempts, backoff_seconds=0,
        )
        poller = ConfirmationPoller(
            ledger, ledger_client, distributor,
            interval=0, max_polls=max_polls, max_resubmissions=max_resubmissions,
        )
        return SettlementPipeline(
            ledger, distributor, poller,
            app_fund_address=APP_FUND_ADDRESS,
            notifier=notifier,
            classifier=classifier,
            classifier_timeout=classifier_timeout,
        )

    return build


@pytest.fixture
def classifier_factory():
    return FakeClassifier
