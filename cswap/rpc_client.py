"""JSON-RPC clients for the Solana ledger and the compressed-state indexer.

Both endpoints speak JSON-RPC 2.0 over HTTP. ``SolanaRPCClient`` covers the
ledger reads and writes the swap flow needs (blockhashes, account data,
simulation, submission, signature status and logs) while
``IndexerRPCClient`` exposes the compressed-account and validity-proof
methods served by the indexer. Neither client interprets responses beyond
unwrapping the JSON-RPC envelope; shape normalization lives with the callers.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from typing import Any, Dict, Optional, Sequence

import requests
from requests import RequestException, Response

from .config import SwapConfig

logger = logging.getLogger(__name__)


class RPCError(RuntimeError):
    """Raised when an RPC endpoint responds with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def logs(self) -> list[str]:
        """Return simulation logs attached to preflight failures, if any."""

        if isinstance(self.data, dict):
            logs = self.data.get("logs")
            if isinstance(logs, list):
                return [str(line) for line in logs]
        return []


class RPCTransportError(RuntimeError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common Solana JSON-RPC failures.

    The mapping is conservative and only covers failure modes seen while
    submitting confidential swaps: expired blockhashes, fee-payer funding,
    oversized transactions (usually a lookup table missing entries), compute
    exhaustion and rate limiting.
    """

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))

    lowered = message.lower()
    if "blockhash not found" in lowered or "block height exceeded" in lowered:
        return "The blockhash expired before the transaction landed. Rebuild the transaction from a fresh quote."
    if "insufficient funds for fee" in lowered or "insufficient lamports" in lowered:
        return "The fee payer cannot cover fees or rent. Fund the fee payer and retry."
    if "too large" in lowered or "encoding overruns" in lowered:
        return (
            "The transaction exceeds the maximum encoded size. Make sure the address lookup "
            "table contains every account the swap references before assembling."
        )
    if "computational budget exceeded" in lowered or "exceeded cus meter" in lowered:
        return "The program ran out of compute units; raise compute_unit_limit in the transaction config."
    if code == 429 or "rate limit" in lowered or "too many requests" in lowered:
        return "The RPC provider is rate limiting requests. Wait and retry, or use a dedicated endpoint."
    if code == -32002 and "custom program error" in lowered:
        return "Preflight simulation rejected the swap. Encrypted-state programs can fail preflight spuriously; retry with skip_preflight."
    return None


class JSONRPCClient:
    """Thin JSON-RPC 2.0 transport shared by the ledger and indexer clients."""

    endpoint_name = "RPC"

    def __init__(self, url: str, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def call(self, method: str, params: Optional[Any] = None) -> Any:
        """Perform a JSON-RPC request and return its ``result`` member."""

        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params if params is not None else [],
        }
        logger.debug("%s call %s params=%s", self.endpoint_name, method, params)
        try:
            response = self._session.post(
                self.url,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
                timeout=self.timeout,
            )
        except RequestException as exc:
            logger.error(
                "%s connection failed: %s",
                self.endpoint_name,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                f"{self.endpoint_name} connection failed. Ensure the endpoint is reachable and "
                "CSWAP_* variables (or ~/.cswap.yaml) point to the right URL."
            ) from exc
        try:
            self._raise_for_status(response)
        except requests.HTTPError as exc:
            logger.error(
                "%s HTTP error: %s", self.endpoint_name, exc, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise RPCTransportError(
                f"{self.endpoint_name} server returned an HTTP error; check the URL and API key.",
                status_code=response.status_code,
            ) from exc
        try:
            result = response.json()
        except ValueError as exc:
            logger.debug("%s JSON parse error: %s", self.endpoint_name, response.text, exc_info=True)
            raise RPCTransportError(f"{self.endpoint_name} server returned malformed JSON") from exc
        if not isinstance(result, dict):
            raise RPCTransportError(f"{self.endpoint_name} server returned a non-object JSON body")
        if result.get("error"):
            error = result["error"]
            if not isinstance(error, dict):
                raise RPCError(-1, str(error))
            raise RPCError(error.get("code", -1), error.get("message", "unknown"), error.get("data"))
        return result.get("result")

    def _raise_for_status(self, response: Response) -> None:
        # Rate limits and auth failures come back as plain HTTP errors with a
        # JSON body; logging the body keeps the provider's message visible.
        if not response.ok:
            try:
                err_body = response.json()
            except ValueError:
                err_body = response.text

            logger.error("%s HTTP error %s from %s", self.endpoint_name, response.status_code, response.url)
            logger.error("%s error body: %s", self.endpoint_name, err_body)
            if response.status_code == 429:
                raise RPCTransportError(
                    f"{self.endpoint_name} rate limited the request (429).",
                    status_code=response.status_code,
                )
        response.raise_for_status()


class SolanaRPCClient(JSONRPCClient):
    """Typed JSON-RPC client for the Solana ledger."""

    endpoint_name = "Ledger RPC"

    def __init__(
        self,
        url: str,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(url, timeout=timeout, session=session)
        self.commitment = commitment

    @classmethod
    def from_config(cls, config: SwapConfig) -> "SolanaRPCClient":
        return cls(config.rpc_url, commitment=config.commitment, timeout=config.request_timeout)

    def get_latest_blockhash(self) -> Dict[str, Any]:
        """Return ``{"blockhash": str, "lastValidBlockHeight": int}``."""

        result = self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]

    def get_account_info(self, pubkey: str, commitment: str | None = None) -> Dict[str, Any] | None:
        result = self.call(
            "getAccountInfo",
            [pubkey, {"encoding": "base64", "commitment": commitment or self.commitment}],
        )
        return result.get("value") if isinstance(result, dict) else None

    def get_account_data(self, pubkey: str, commitment: str | None = None) -> bytes | None:
        """Return the decoded data bytes of ``pubkey`` or ``None`` if it does not exist."""

        value = self.get_account_info(pubkey, commitment=commitment)
        if not value:
            return None
        return decode_account_data(value.get("data"))

    def simulate_transaction(
        self,
        raw_tx: bytes,
        accounts: Sequence[str] | None = None,
        sig_verify: bool = False,
    ) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "encoding": "base64",
            "sigVerify": sig_verify,
            "commitment": self.commitment,
        }
        if accounts:
            config["accounts"] = {"encoding": "base64", "addresses": list(accounts)}
        result = self.call("simulateTransaction", [base64.b64encode(raw_tx).decode("ascii"), config])
        return result["value"]

    def send_transaction(
        self,
        raw_tx: bytes,
        skip_preflight: bool = True,
        max_retries: int | None = None,
    ) -> str:
        options: Dict[str, Any] = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": self.commitment,
        }
        if max_retries is not None:
            options["maxRetries"] = max_retries
        return self.call("sendTransaction", [base64.b64encode(raw_tx).decode("ascii"), options])

    def get_signature_statuses(self, signatures: Sequence[str]) -> list[Dict[str, Any] | None]:
        result = self.call(
            "getSignatureStatuses",
            [list(signatures), {"searchTransactionHistory": True}],
        )
        return list(result.get("value") or [])

    def get_transaction(self, signature: str) -> Dict[str, Any] | None:
        return self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def get_block_height(self) -> int:
        return int(self.call("getBlockHeight", [{"commitment": self.commitment}]))


class IndexerRPCClient(JSONRPCClient):
    """Typed JSON-RPC client for the compressed-state indexer.

    Every proof method returns a differently shaped payload; callers should
    pass the unwrapped ``value`` through :mod:`cswap.parsing` rather than
    trusting any single field.
    """

    endpoint_name = "Indexer RPC"

    @classmethod
    def from_config(cls, config: SwapConfig) -> "IndexerRPCClient":
        return cls(config.resolved_indexer_url, timeout=config.request_timeout)

    def get_validity_proof_v2(
        self,
        hashes: Sequence[str] = (),
        new_addresses_with_trees: Sequence[Dict[str, str]] = (),
    ) -> Any:
        return _unwrap_value(
            self.call(
                "getValidityProofV2",
                {"hashes": list(hashes), "newAddressesWithTrees": list(new_addresses_with_trees)},
            )
        )

    def get_validity_proof(
        self,
        hashes: Sequence[str] = (),
        new_addresses_with_trees: Sequence[Dict[str, str]] = (),
    ) -> Any:
        return _unwrap_value(
            self.call(
                "getValidityProof",
                {"hashes": list(hashes), "newAddressesWithTrees": list(new_addresses_with_trees)},
            )
        )

    def get_multiple_compressed_account_proofs(self, hashes: Sequence[str]) -> Any:
        return _unwrap_value(self.call("getMultipleCompressedAccountProofs", list(hashes)))

    def get_compressed_account_proof(self, account_hash: str) -> Any:
        return _unwrap_value(self.call("getCompressedAccountProof", {"hash": account_hash}))

    def get_compressed_account(self, address: str | None = None, account_hash: str | None = None) -> Any:
        if address is None and account_hash is None:
            raise ValueError("Either address or account_hash is required")
        params: Dict[str, Any] = {}
        if address is not None:
            params["address"] = address
        if account_hash is not None:
            params["hash"] = account_hash
        return _unwrap_value(self.call("getCompressedAccount", params))

    def get_compressed_accounts_by_owner(self, owner: str, cursor: str | None = None, limit: int | None = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {"owner": owner}
        if cursor is not None:
            params["cursor"] = cursor
        if limit is not None:
            params["limit"] = limit
        value = _unwrap_value(self.call("getCompressedAccountsByOwner", params))
        return value if isinstance(value, dict) else {"items": value or [], "cursor": None}


def _unwrap_value(result: Any) -> Any:
    if isinstance(result, dict) and "value" in result and "context" in result:
        return result["value"]
    return result


def decode_account_data(data: Any) -> bytes | None:
    """Decode the ``data`` member of an account response (``[b64, "base64"]``)."""

    if data is None:
        return None
    if isinstance(data, (list, tuple)) and data:
        encoded = data[0]
        encoding = data[1] if len(data) > 1 else "base64"
        if encoding != "base64":
            raise RPCTransportError(f"Unsupported account data encoding: {encoding}")
        return base64.b64decode(encoded)
    if isinstance(data, str):
        return base64.b64decode(data)
    raise RPCTransportError(f"Unrecognized account data shape: {type(data).__name__}")
