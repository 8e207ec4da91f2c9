import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transfer:
    to: str
    amount: Decimal
    memo: str
    expiration_seconds: int = 320


@dataclass(frozen=True)
class SignedTransfer:
    sender: str
    to: str
    amount: str
    memo: str
    nonce: int
    expires_at: int
    signature: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SubmittedTransfer:
    reference: str
    nonce: int


class Signer:
    """Holds the distributor credential and hands out nonces one at a time.

    Signing and submission happen under a single lock so two legs can never
    be signed with the same nonce. Share one instance per signing identity.
    After a failed submission the next nonce is re-read from
    ``nonce_source`` because the external ledger may or may not have seen it.
    """

    def __init__(
        self,
        identity: str,
        secret: str,
        nonce_source: Optional[Callable[[str], Awaitable[int]]] = None,
    ):
        if not identity or not secret:
            raise ValueError("Signer needs an identity and a secret")
        self.identity = identity
        self._secret = secret.encode()
        self._nonce_source = nonce_source
        self._next_nonce: Optional[int] = None
        self._lock = asyncio.Lock()

    async def sign_and_submit(
        self,
        transfer: Transfer,
        submit: Callable[[SignedTransfer], Awaitable[str]],
    ) -> SubmittedTransfer:
        async with self._lock:
            nonce = await self._reserve_nonce()
            signed = self.sign(transfer, nonce)
            try:
                reference = await submit(signed)
            except Exception:
                self._next_nonce = None
                raise
            self._next_nonce = nonce + 1
            return SubmittedTransfer(reference=reference, nonce=nonce)

    def sign(self, transfer: Transfer, nonce: int) -> SignedTransfer:
        body = {
            "sender": self.identity,
            "to": transfer.to,
            "amount": str(transfer.amount),
            "memo": transfer.memo,
            "nonce": nonce,
            "expires_at": int(time.time()) + transfer.expiration_seconds,
        }
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":")).encode()
        signature = hmac.new(self._secret, canonical, hashlib.sha256).hexdigest()
        return SignedTransfer(signature=signature, **body)

    def verify(self, signed: SignedTransfer) -> bool:
        body = signed.to_dict()
        signature = body.pop("signature")
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":")).encode()
        expected = hmac.new(self._secret, canonical, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature, expected)

    async def _reserve_nonce(self) -> int:
        if self._next_nonce is None:
            if self._nonce_source:
                self._next_nonce = await self._nonce_source(self.identity)
                logger.info("Signer %s resynchronised at nonce %d", self.identity, self._next_nonce)
            else:
                self._next_nonce = 0
        return self._next_nonce
