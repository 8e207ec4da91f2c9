import asyncio
import hmac
import logging
from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ledger.models import Receipt, utcnow
from rewards.calculator import RewardQuote

from .errors import WebhookMalformedPayload

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 5.0


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(BaseModel):
    receipt_id: str = Field(..., min_length=1, validation_alias=AliasChoices("receipt_id", "receiptId"))
    decision: Decision = Field(..., validation_alias=AliasChoices("decision", "status"))
    notes: Optional[str] = Field(default=None, validation_alias=AliasChoices("notes", "admin_notes"))
    reviewer: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ReviewAck(BaseModel):
    success: bool
    receipt_id: str
    status: Optional[str] = None
    changed: bool = False
    message: str


def parse_review_decision(payload: Any) -> ReviewDecision:
    if not isinstance(payload, dict):
        raise WebhookMalformedPayload("Review payload must be a JSON object")
    try:
        return ReviewDecision.model_validate(payload)
    except ValidationError as e:
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
        raise WebhookMalformedPayload("Invalid review payload", errors) from e


def verify_webhook_token(provided: Optional[str], expected: str) -> bool:
    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class ReviewNotifier:
    """Posts receipts that need a human decision to the reviewer surface."""

    def __init__(
        self,
        webhook_url: str,
        evidence_base_url: str = "",
        max_retries: int = 3,
        timeout: float = 10.0,
        backoff_seconds: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.evidence_base_url = evidence_base_url.rstrip("/")
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def evidence_url(self, receipt: Receipt) -> Optional[str]:
        if receipt.evidence_url:
            return receipt.evidence_url
        if self.evidence_base_url:
            return f"{self.evidence_base_url}/receipts/{receipt.receipt_id}/image"
        return None

    def build_payload(self, receipt: Receipt, estimate: RewardQuote) -> dict:
        return {
            "event_type": "manual_review",
            "receipt_id": receipt.receipt_id,
            "user_id": receipt.user_id,
            "wallet_address": receipt.wallet_address,
            "store_name": receipt.store_name,
            "category": estimate.category,
            "amount": str(receipt.amount),
            "confidence": receipt.confidence,
            "estimated_reward": str(estimate.total_reward),
            "estimated_user_reward": str(estimate.user_portion),
            "reason": receipt.routing_reason,
            "evidence_url": self.evidence_url(receipt),
            "timestamp": utcnow().isoformat(),
        }

    async def notify(self, receipt: Receipt, estimate: RewardQuote) -> bool:
        if not self.webhook_url:
            logger.warning("No review webhook configured; receipt %s waits in the pending-review queue",
                           receipt.receipt_id)
            return False

        payload = self.build_payload(receipt, estimate)
        for attempt in range(1, self.max_retries + 1):
            headers = {
                "X-Webhook-Source": "reward-settlement",
                "X-Event-Type": "manual_review",
                "X-Retry-Count": str(attempt - 1),
            }
            try:
                response = await self._client.post(self.webhook_url, json=payload, headers=headers)
                if response.is_success:
                    logger.info("Receipt %s sent for manual review", receipt.receipt_id)
                    return True
                logger.warning("Review webhook attempt %d/%d for %s answered %s: %s", attempt,
                               self.max_retries, receipt.receipt_id, response.status_code, response.text[:200])
            except httpx.HTTPError as e:
                logger.warning("Review webhook attempt %d/%d for %s failed: %s",
                               attempt, self.max_retries, receipt.receipt_id, e)
            if attempt < self.max_retries:
                await asyncio.sleep(min(self.backoff_seconds * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS))

        logger.error("Could not deliver receipt %s to the review webhook after %d attempts",
                     receipt.receipt_id, self.max_retries)
        return False

    async def aclose(self) -> None:
        await self._client.aclose()
