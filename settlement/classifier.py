import base64
import json
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

from groq import AsyncGroq, GroqError

from .errors import ClassificationUnavailable

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You check receipts for a sustainable transportation rewards app.
Look at the receipt image and decide whether it is a genuine receipt for one of these categories:
ride_share, electric_vehicle, public_transit, transportation, pre_owned, used_books, sustainable_purchase

Return ONLY valid JSON in this shape, no explanations:
{
    "confidence": number between 0 and 1,
    "category": "one of the categories above",
    "extracted_amount": number or null,
    "store_name": "provider or store name, or null"
}"""


@dataclass(frozen=True)
class Classification:
    confidence: float
    category: str
    extracted_amount: Optional[Decimal] = None
    store_name: Optional[str] = None


class ReceiptClassifier(Protocol):
    async def classify(self, image: bytes, hints: dict) -> Classification: ...


class GroqReceiptClassifier:
    def __init__(self, api_key: str = "", model: str = "meta-llama/llama-4-scout-17b-16e-instruct"):
        self.api_key = api_key
        self.model = model
        self.client = AsyncGroq(api_key=api_key) if api_key else None

    @property
    def is_available(self) -> bool:
        return self.client is not None

    async def classify(self, image: bytes, hints: dict) -> Classification:
        if not self.client:
            raise ClassificationUnavailable("No classifier API key configured")

        content_type = hints.get("content_type", "image/jpeg")
        image_url = f"data:{content_type};base64,{base64.b64encode(image).decode()}"
        hint_text = "Hints: " + json.dumps({k: v for k, v in hints.items() if k != "content_type"}, default=str)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": [
                        {"type": "text", "text": hint_text},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ]},
                ],
                temperature=0.1,
                max_tokens=512,
            )
        except GroqError as e:
            raise ClassificationUnavailable(f"Classifier request failed: {e}") from e

        return self.parse_result(response.choices[0].message.content or "")

    @classmethod
    def parse_result(cls, text: str) -> Classification:
        data = cls._extract_json(text)
        try:
            confidence = float(data["confidence"])
        except (KeyError, TypeError, ValueError) as e:
            raise ClassificationUnavailable(f"Classifier returned no usable confidence: {text[:200]}") from e
        if not 0.0 <= confidence <= 1.0:
            raise ClassificationUnavailable(f"Classifier confidence out of range: {confidence}")

        amount = None
        if data.get("extracted_amount") is not None:
            try:
                amount = Decimal(str(data["extracted_amount"]))
            except InvalidOperation:
                logger.warning("Ignoring unparseable extracted amount %r", data["extracted_amount"])

        return Classification(
            confidence=confidence,
            category=str(data.get("category") or "sustainable_purchase"),
            extracted_amount=amount,
            store_name=data.get("store_name"),
        )

    @staticmethod
    def _extract_json(text: str) -> dict:
        json_match = re.search(r'\{[\s\S]*\}', text)
        if json_match:
            try:
                return json.loads(json_match.group())
            except json.JSONDecodeError:
                pass
        return {}
