import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import httpx

from .errors import LegSubmissionError
from .signer import SignedTransfer

logger = logging.getLogger(__name__)


class TransferState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass(frozen=True)
class TransferStatus:
    reference: str
    state: TransferState
    block_number: Optional[int] = None


class LedgerClient(Protocol):
    async def submit(self, signed: SignedTransfer) -> str: ...
    async def get_status(self, reference: str) -> TransferStatus: ...
    async def get_nonce(self, identity: str) -> int: ...


class RelayerClient:
    """Client for the token relayer in front of the chain.

    ``POST /transactions`` takes a signed transfer and answers with its id.
    ``GET /transactions/{id}/receipt`` answers ``null`` until the transfer is
    in a block, then a receipt carrying a ``reverted`` flag.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def submit(self, signed: SignedTransfer) -> str:
        try:
            response = await self._client.post("/transactions", json=signed.to_dict())
        except httpx.HTTPError as e:
            raise LegSubmissionError(f"Transport error submitting transfer: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise LegSubmissionError(f"Relayer unavailable: {response.status_code} {response.text}")
        if response.status_code >= 400:
            raise LegSubmissionError(f"Transfer rejected: {response.status_code} {response.text}", retryable=False)

        try:
            data = response.json()
        except ValueError as e:
            raise LegSubmissionError(f"Relayer returned a non-JSON body: {response.text[:200]}") from e

        reference = data.get("id") if isinstance(data, dict) else None
        if not reference:
            raise LegSubmissionError(f"Relayer accepted the transfer without an id: {data}")
        return reference

    async def get_status(self, reference: str) -> TransferStatus:
        try:
            response = await self._client.get(f"/transactions/{reference}/receipt")
        except httpx.HTTPError as e:
            logger.warning("Could not fetch receipt for %s: %s", reference, e)
            return TransferStatus(reference, TransferState.PENDING)

        if response.status_code == 404:
            return TransferStatus(reference, TransferState.PENDING)
        if response.status_code >= 400:
            logger.warning("Receipt lookup for %s answered %s", reference, response.status_code)
            return TransferStatus(reference, TransferState.PENDING)

        try:
            receipt = response.json()
        except ValueError:
            logger.warning("Receipt lookup for %s returned a non-JSON body", reference)
            return TransferStatus(reference, TransferState.PENDING)
        if not receipt:
            return TransferStatus(reference, TransferState.PENDING)
        block_number = (receipt.get("meta") or {}).get("blockNumber")
        state = TransferState.REVERTED if receipt.get("reverted") else TransferState.CONFIRMED
        return TransferStatus(reference, state, block_number)

    async def get_nonce(self, identity: str) -> int:
        try:
            response = await self._client.get(f"/accounts/{identity}/nonce")
            response.raise_for_status()
            return int(response.json()["nonce"])
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise LegSubmissionError(f"Could not read nonce for {identity}: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
