"""Attested decryption of encrypted balances with bounded retry.

Freshly written handles are only decryptable once the off-chain covalidator
has indexed them, which takes an unpredictable few seconds. Decryption is a
verification step, so exhausting the retry budget yields the
``DECRYPT_FAILED`` sentinel instead of an exception.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Sequence

import requests
from requests import Response

from .signing import MessageSigner, canonical_message

logger = logging.getLogger(__name__)

DECRYPT_FAILED = "DECRYPT_FAILED"

_NOT_INDEXED_MARKERS = ("no ciphertext", "not yet indexed", "not indexed")


class DecryptServiceError(RuntimeError):
    """Terminal failure reported by the decryption service."""


class DecryptNotIndexedError(DecryptServiceError):
    """The handle exists on chain but the service has not indexed it yet."""


def is_not_indexed_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NOT_INDEXED_MARKERS)


@dataclass(frozen=True)
class BackoffPolicy:
    """Linear backoff: attempt ``n`` (1-based) waits ``base_delay + n * increment`` seconds."""

    base_delay: float = 5.0
    increment: float = 3.0
    max_attempts: int = 5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.increment < 0:
            raise ValueError("Backoff delays must be non-negative")

    def delay(self, attempt: int) -> float:
        return self.base_delay + attempt * self.increment

    def delays(self) -> List[float]:
        return [self.delay(attempt) for attempt in range(1, self.max_attempts + 1)]

    def wait(self, attempt: int) -> None:
        self.sleep(self.delay(attempt))


class DecryptService(Protocol):
    def decrypt(self, handles: Sequence[str], signer: MessageSigner) -> List[str]:
        """Return plaintexts for ``handles`` in request order."""


class AttestedDecryptClient:
    """HTTP adapter for an attested-decrypt endpoint.

    The request body is a placeholder wire format of this client, not the
    attested-decrypt SDK protocol: a canonical sorted-JSON message
    ``{address, handles, nonce, timestamp}`` plus its base64 Ed25519
    signature. Swap in another :class:`DecryptService` to talk to a
    different service.
    """

    def __init__(self, url: str, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_request(self, handles: Sequence[str], signer: MessageSigner) -> Dict[str, Any]:
        message = {
            "address": str(signer.address),
            "handles": [str(handle) for handle in handles],
            "nonce": uuid.uuid4().hex,
            "timestamp": int(time.time()),
        }
        return {"message": message, "signature": signer.sign_b64(canonical_message(message))}

    def decrypt(self, handles: Sequence[str], signer: MessageSigner) -> List[str]:
        payload = self.build_request(handles, signer)
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error(
                "Decrypt request to %s failed",
                self.url,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise DecryptServiceError(f"Decrypt service unreachable at {self.url}: {exc}") from exc

        body = self._json_body(response)
        error_text = self._error_text(response, body)
        if error_text is not None:
            if is_not_indexed_message(error_text):
                raise DecryptNotIndexedError(error_text)
            raise DecryptServiceError(error_text)

        plaintexts = body.get("plaintexts") if isinstance(body, dict) else None
        if not isinstance(plaintexts, list) or len(plaintexts) != len(handles):
            raise DecryptServiceError(f"Decrypt service returned a malformed response: {body!r}")
        return ["0" if value in (None, "") else str(value) for value in plaintexts]

    @staticmethod
    def _json_body(response: Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    @staticmethod
    def _error_text(response: Response, body: Any) -> str | None:
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            if isinstance(error, dict):
                return str(error.get("message") or error)
            return str(error)
        if response.status_code >= 400:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        return None


class BalanceDecryptor:
    """Decrypt handles for ``signer`` with the configured retry policy."""

    def __init__(
        self,
        service: DecryptService,
        signer: MessageSigner,
        policy: BackoffPolicy | None = None,
    ) -> None:
        self.service = service
        self.signer = signer
        self.policy = policy or BackoffPolicy()

    def decrypt_with_retry(self, handle: int | str) -> str:
        """Return the plaintext of ``handle`` or :data:`DECRYPT_FAILED`.

        The policy delay is waited before every attempt, including the first,
        since a handle is never indexed in the same instant it was written.
        """

        return self.decrypt_many([handle])[0]

    def decrypt_many(self, handles: Sequence[int | str]) -> List[str]:
        """Decrypt ``handles`` in one request each attempt, preserving order."""

        if not handles:
            return []
        requested = [str(handle) for handle in handles]
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            self.policy.wait(attempt)
            try:
                return self.service.decrypt(requested, self.signer)
            except DecryptNotIndexedError as exc:
                if attempt < attempts:
                    logger.info("Retry %d/%d; handle not indexed yet: %s", attempt, attempts, exc)
                    continue
                logger.warning("Decrypt retries exhausted for %s: %s", requested, exc)
            except DecryptServiceError as exc:
                logger.error("Decrypt failed on attempt %d for %s: %s", attempt, requested, exc)
                break
        return [DECRYPT_FAILED] * len(requested)
