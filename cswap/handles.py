"""Ciphertext handle extraction from raw, decoded and simulated account state."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .parsing import parse_int
from .rpc_client import SolanaRPCClient, decode_account_data

logger = logging.getLogger(__name__)

HANDLE_SIZE = 16
HANDLE_MAX = (1 << (8 * HANDLE_SIZE)) - 1
# IncoAccount: 8 discriminator + 32 mint + 32 owner, then the amount handle.
TOKEN_ACCOUNT_HANDLE_OFFSET = 72


class HandleResolutionError(RuntimeError):
    """Raised when a handle cannot be located in account state."""

    def __init__(self, message: str, logs: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.logs = list(logs or [])


def encode_handle(handle: int) -> bytes:
    """Return the 16-byte little-endian encoding the programs use for handles."""

    if not 0 <= handle <= HANDLE_MAX:
        raise ValueError(f"Handle out of 128-bit range: {handle}")
    return handle.to_bytes(HANDLE_SIZE, "little")


def extract_handle_from_raw(data: bytes, offset: int = TOKEN_ACCOUNT_HANDLE_OFFSET) -> int:
    """Decode the handle stored at ``offset`` in a fixed-layout account record."""

    end = offset + HANDLE_SIZE
    if len(data) < end:
        raise HandleResolutionError(
            f"Account data is {len(data)} bytes; expected at least {end} to read a handle at offset {offset}"
        )
    handle = 0
    for byte in reversed(data[offset:end]):
        handle = handle * 256 + byte
    return handle


def _handle_from_bytes(value: Any) -> int | None:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, (list, tuple)) and value and all(isinstance(item, int) and 0 <= item <= 255 for item in value):
        raw = bytes(value)
    else:
        return None
    if len(raw) > HANDLE_SIZE:
        return None
    return int.from_bytes(raw, "little")


def _handle_from_bignum(value: Any) -> int | None:
    if isinstance(value, (bool, bytes, bytearray, list, tuple)):
        return None
    if isinstance(value, Mapping) and len(value) != 1:
        return None
    parsed = parse_int(value)
    if parsed is None or not 0 <= parsed <= HANDLE_MAX:
        return None
    return parsed


def _handle_from_nested(value: Any) -> int | None:
    if not isinstance(value, Mapping) or len(value) != 1:
        return None
    (inner,) = value.values()
    for reader in (_handle_from_bytes, _handle_from_bignum, _handle_from_nested):
        handle = reader(inner)
        if handle is not None:
            return handle
    return None


def extract_handle(value: Any) -> int:
    """Return the handle embedded in a decoded account field of unknown shape.

    Tried in order: byte-array representation, big-integer wrapper, then a
    single-keyed nested container such as ``{"0": {"_bn": "..."}}``. A value
    matching none of them points at a decoder mismatch and raises.
    """

    for reader in (_handle_from_bytes, _handle_from_bignum, _handle_from_nested):
        handle = reader(value)
        if handle is not None:
            return handle
    raise HandleResolutionError(f"Unrecognized handle representation: {value!r}")


class HandleResolver:
    """Discover handles before (simulation) and after (confirmed read) submission."""

    def __init__(
        self,
        rpc: SolanaRPCClient,
        commitment: str | None = None,
        offset: int = TOKEN_ACCOUNT_HANDLE_OFFSET,
    ) -> None:
        self.rpc = rpc
        self.commitment = commitment
        self.offset = offset

    def simulate_and_read(
        self,
        instructions: Sequence[Instruction],
        payer: Keypair,
        accounts: Sequence[Pubkey],
    ) -> list[int]:
        """Simulate ``instructions`` and return the post-simulation handles of ``accounts``.

        The transaction is signed against a fresh blockhash but never
        broadcast; it only exists to read handles that will be created when
        the same instructions execute for real.
        """

        if not accounts:
            raise ValueError("At least one account is required to read simulated handles")
        latest = self.rpc.get_latest_blockhash()
        message = MessageV0.try_compile(
            payer.pubkey(), list(instructions), [], Hash.from_string(latest["blockhash"])
        )
        tx = VersionedTransaction(message, [payer])
        addresses = [str(account) for account in accounts]
        result = self.rpc.simulate_transaction(bytes(tx), accounts=addresses)
        logs = result.get("logs") or []
        if result.get("err"):
            logger.error("Handle discovery simulation failed: %s", result["err"])
            raise HandleResolutionError(f"Simulation failed: {result['err']}", logs=logs)

        simulated = result.get("accounts") or []
        if len(simulated) != len(addresses):
            raise HandleResolutionError(
                f"Simulation returned {len(simulated)} accounts for {len(addresses)} requested", logs=logs
            )
        handles: list[int] = []
        for address, account in zip(addresses, simulated):
            if not account:
                raise HandleResolutionError(f"Simulation did not return state for {address}", logs=logs)
            data = decode_account_data(account.get("data"))
            handles.append(extract_handle_from_raw(data or b"", self.offset))
        logger.debug("Simulated handles: %s", dict(zip(addresses, handles)))
        return handles

    def read_confirmed(self, account: Pubkey, commitment: str | None = None) -> int:
        """Return the committed handle stored in ``account``."""

        data = self.rpc.get_account_data(str(account), commitment=commitment or self.commitment)
        if data is None:
            raise HandleResolutionError(f"Account {account} does not exist")
        return extract_handle_from_raw(data, self.offset)
