import base64
import binascii
import json
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger.models import (
    PendingDistribution, Receipt, ReceiptResponse, ReceiptStatus, ReceiptSubmission,
    RetryLegsRequest, UserBalance,
)
from ledger.service import (
    DistributionNotFoundError, InvalidStateTransitionError, LedgerService, ReceiptNotFoundError,
)
from ledger.storage import InMemoryStorage, SqlStorage

from .chain import RelayerClient
from .classifier import GroqReceiptClassifier
from .config import Settings, settings
from .distributor import SplitDistributor
from .errors import WebhookMalformedPayload
from .pipeline import SettlementPipeline
from .poller import ConfirmationPoller
from .review import ReviewAck, ReviewNotifier, parse_review_decision, verify_webhook_token
from .signer import Signer

logger = logging.getLogger(__name__)


class ReceiptIntakeRequest(ReceiptSubmission):
    image_base64: Optional[str] = None
    image_type: str = "image/jpeg"


def build_pipeline(config: Settings = settings) -> SettlementPipeline:
    """Assemble the pipeline from configuration. The only place settings are read."""
    storage = SqlStorage(config.DATABASE_URL) if config.DATABASE_URL else InMemoryStorage()
    ledger = LedgerService(storage)
    client = RelayerClient(config.LEDGER_API_URL, api_key=config.LEDGER_API_KEY)
    signer = Signer(config.DISTRIBUTOR_ADDRESS, config.DISTRIBUTOR_SECRET, nonce_source=client.get_nonce)
    distributor = SplitDistributor(
        ledger, client, signer,
        max_submission_attempts=config.MAX_SUBMISSION_ATTEMPTS,
        backoff_seconds=config.SUBMISSION_BACKOFF_SECONDS,
        expiration_seconds=config.TRANSFER_EXPIRATION_SECONDS,
    )
    poller = ConfirmationPoller(
        ledger, client, distributor,
        interval=config.CONFIRMATION_POLL_INTERVAL_SECONDS,
        max_wait=config.CONFIRMATION_MAX_WAIT_SECONDS,
        max_resubmissions=config.MAX_RESUBMISSIONS,
    )
    notifier = ReviewNotifier(config.MANUAL_REVIEW_WEBHOOK_URL, evidence_base_url=config.EVIDENCE_BASE_URL)
    classifier = GroqReceiptClassifier(api_key=config.GROQ_API_KEY, model=config.CLASSIFIER_MODEL)
    return SettlementPipeline(
        ledger, distributor, poller,
        app_fund_address=config.APP_FUND_ADDRESS,
        notifier=notifier,
        classifier=classifier if classifier.is_available else None,
        classifier_timeout=config.CLASSIFIER_TIMEOUT_SECONDS,
    )


async def _run_settlement(pipeline: SettlementPipeline, receipt_id: str) -> None:
    try:
        receipt = await pipeline.settle(receipt_id)
        logger.info("Settlement of %s finished as %s", receipt_id, receipt.status.value)
    except Exception:
        logger.exception("Settlement of %s stopped; it will be picked up by resume", receipt_id)


async def _run_retry(pipeline: SettlementPipeline, receipt_id: str, include_reverted: bool) -> None:
    try:
        receipt = await pipeline.retry_failed_legs(receipt_id, include_reverted=include_reverted)
        logger.info("Retry of %s finished as %s", receipt_id, receipt.status.value)
    except Exception:
        logger.exception("Retry of %s stopped", receipt_id)


async def _run_resume(pipeline: SettlementPipeline) -> None:
    try:
        receipts = await pipeline.resume_inflight()
        logger.info("Resumed %d receipt(s)", len(receipts))
    except Exception:
        logger.exception("Resuming in-flight receipts stopped")


def create_app(pipeline: Optional[SettlementPipeline] = None, webhook_token: Optional[str] = None) -> FastAPI:
    app = FastAPI(
        title="Reward Settlement API",
        description="Receipt routing, split reward payout and confirmation tracking",
        version="1.0.0",
    )
    app.state.pipeline = pipeline
    app.state.webhook_token = settings.MANUAL_REVIEW_WEBHOOK_TOKEN if webhook_token is None else webhook_token

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_pipeline(request: Request) -> SettlementPipeline:
        if request.app.state.pipeline is None:
            request.app.state.pipeline = build_pipeline()
        return request.app.state.pipeline

    @app.exception_handler(WebhookMalformedPayload)
    async def malformed_payload_handler(request: Request, exc: WebhookMalformedPayload):
        logger.warning("Rejected malformed review payload: %s %s", exc, exc.errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error_code": "MALFORMED_PAYLOAD", "message": str(exc), "errors": exc.errors},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "reward-settlement"}

    @app.post("/receipts", response_model=ReceiptResponse, status_code=status.HTTP_201_CREATED, tags=["Receipts"])
    async def submit_receipt(
        request: ReceiptIntakeRequest,
        background_tasks: BackgroundTasks,
        pipeline: SettlementPipeline = Depends(get_pipeline),
    ) -> ReceiptResponse:
        image = None
        if request.image_base64:
            try:
                image = base64.b64decode(request.image_base64, validate=True)
            except (binascii.Error, ValueError):
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="image_base64 is not valid base64")

        submission = ReceiptSubmission(**request.model_dump(exclude={"image_base64", "image_type"}))
        try:
            receipt = await pipeline.submit_receipt(submission, image=image, content_type=request.image_type)
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        if receipt.status == ReceiptStatus.AUTO_APPROVED:
            background_tasks.add_task(_run_settlement, pipeline, receipt.receipt_id)
            return ReceiptResponse.of(receipt, "Receipt approved; reward is being distributed")
        if receipt.status == ReceiptStatus.PENDING_MANUAL_REVIEW:
            return ReceiptResponse.of(receipt, "Receipt is pending manual review")
        return ReceiptResponse.of(receipt, f"Receipt is {receipt.public_status}")

    @app.get("/receipts/{receipt_id}", response_model=ReceiptResponse, tags=["Receipts"])
    def get_receipt(receipt_id: str, pipeline: SettlementPipeline = Depends(get_pipeline)) -> ReceiptResponse:
        try:
            receipt = pipeline.ledger.get_receipt(receipt_id)
        except ReceiptNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Receipt {receipt_id} not found")
        return ReceiptResponse.of(receipt, f"Receipt is {receipt.public_status}")

    @app.post("/webhooks/manual-review", response_model=ReviewAck, tags=["Review"])
    async def manual_review_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_webhook_token: Optional[str] = Header(default=None),
        pipeline: SettlementPipeline = Depends(get_pipeline),
    ):
        if not verify_webhook_token(x_webhook_token, request.app.state.webhook_token):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"success": False, "error_code": "UNAUTHORIZED", "message": "Invalid webhook token"},
            )

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookMalformedPayload(f"Body is not valid JSON: {e}") from e
        decision = parse_review_decision(payload)

        try:
            ack = await pipeline.handle_review_decision(decision)
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

        if not ack.success:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=ack.model_dump())
        if ack.changed and ack.status == ReceiptStatus.MANUAL_APPROVED.value:
            background_tasks.add_task(_run_settlement, pipeline, ack.receipt_id)
        return ack

    @app.get("/admin/receipts/pending-review", response_model=list[Receipt], tags=["Admin"])
    def list_pending_review(pipeline: SettlementPipeline = Depends(get_pipeline)) -> list[Receipt]:
        return pipeline.ledger.list_receipts(ReceiptStatus.PENDING_MANUAL_REVIEW)

    @app.post("/admin/distributions/resume", status_code=status.HTTP_202_ACCEPTED, tags=["Admin"])
    def resume_distributions(
        background_tasks: BackgroundTasks,
        pipeline: SettlementPipeline = Depends(get_pipeline),
    ):
        background_tasks.add_task(_run_resume, pipeline)
        return {"success": True, "message": "Resuming in-flight receipts"}

    @app.get("/distributions/{receipt_id}", response_model=PendingDistribution, tags=["Distributions"])
    def get_distribution(receipt_id: str, pipeline: SettlementPipeline = Depends(get_pipeline)) -> PendingDistribution:
        try:
            return pipeline.ledger.get_distribution(receipt_id)
        except DistributionNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No distribution for {receipt_id}")

    @app.post("/distributions/{receipt_id}/retry", response_model=ReceiptResponse,
              status_code=status.HTTP_202_ACCEPTED, tags=["Distributions"])
    def retry_distribution(
        receipt_id: str,
        request: RetryLegsRequest,
        background_tasks: BackgroundTasks,
        pipeline: SettlementPipeline = Depends(get_pipeline),
    ) -> ReceiptResponse:
        try:
            receipt = pipeline.ledger.get_receipt(receipt_id)
        except ReceiptNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Receipt {receipt_id} not found")
        if receipt.status != ReceiptStatus.DISTRIBUTION_PARTIAL:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Receipt {receipt_id} is {receipt.status.value}; only partial payouts can be retried",
            )

        logger.info("Retry of %s requested by %s (include reverted: %s)",
                    receipt_id, request.performed_by or "unknown", request.include_reverted)
        background_tasks.add_task(_run_retry, pipeline, receipt_id, request.include_reverted)
        return ReceiptResponse.of(receipt, "Retrying failed legs")

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: str, pipeline: SettlementPipeline = Depends(get_pipeline)) -> UserBalance:
        return pipeline.ledger.get_balance(user_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
