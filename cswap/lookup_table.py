"""Address lookup table maintenance for swap transactions.

A swap references more accounts than fit in a legacy transaction, so every
static account it needs must already be in the table. The manager caches a
snapshot of the table, extends it with whatever is missing and reloads it
before the swap is assembled.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .assembler import ConfirmationTimeout, OnChainExecutionError, TransactionAssembler
from .packing import SYSTEM_PROGRAM_ID
from .rpc_client import RPCError, RPCTransportError, SolanaRPCClient

logger = logging.getLogger(__name__)

ADDRESS_LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")
LOOKUP_TABLE_META_SIZE = 56
EXTEND_LOOKUP_TABLE_TAG = 2
MAX_ADDRESSES_PER_EXTEND = 20


class LookupTableSyncFailure(RuntimeError):
    """Raised when the table cannot be brought to contain the required addresses."""

    def __init__(self, message: str, missing: Sequence[Pubkey] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


def decode_lookup_table(table_address: Pubkey, data: bytes) -> AddressLookupTableAccount:
    """Decode raw table account data into the addresses it holds."""

    if len(data) < LOOKUP_TABLE_META_SIZE:
        raise LookupTableSyncFailure(f"Lookup table {table_address} data is truncated ({len(data)} bytes)")
    body = data[LOOKUP_TABLE_META_SIZE:]
    if len(body) % 32:
        raise LookupTableSyncFailure(f"Lookup table {table_address} has a partial address entry")
    addresses = [Pubkey(body[offset : offset + 32]) for offset in range(0, len(body), 32)]
    return AddressLookupTableAccount(key=table_address, addresses=addresses)


def extend_lookup_table_instruction(
    table_address: Pubkey,
    authority: Pubkey,
    payer: Pubkey,
    new_addresses: Sequence[Pubkey],
) -> Instruction:
    data = (
        EXTEND_LOOKUP_TABLE_TAG.to_bytes(4, "little")
        + len(new_addresses).to_bytes(8, "little")
        + b"".join(bytes(address) for address in new_addresses)
    )
    accounts = [
        AccountMeta(table_address, False, True),
        AccountMeta(authority, True, False),
        AccountMeta(payer, True, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
    ]
    return Instruction(ADDRESS_LOOKUP_TABLE_PROGRAM_ID, data, accounts)


def _chunks(items: Sequence[Pubkey], size: int) -> Iterable[List[Pubkey]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class LookupTableManager:
    """Keep one lookup table in sync with the accounts swaps reference."""

    def __init__(
        self,
        rpc: SolanaRPCClient,
        table_address: Pubkey,
        authority: Keypair,
        assembler: TransactionAssembler,
        max_addresses_per_extend: int = MAX_ADDRESSES_PER_EXTEND,
    ) -> None:
        if not 1 <= max_addresses_per_extend <= MAX_ADDRESSES_PER_EXTEND:
            raise ValueError(f"max_addresses_per_extend must be within 1..{MAX_ADDRESSES_PER_EXTEND}")
        self.rpc = rpc
        self.table_address = table_address
        self.authority = authority
        self.assembler = assembler
        self.max_addresses_per_extend = max_addresses_per_extend
        self._snapshot: Optional[AddressLookupTableAccount] = None

    def snapshot(self) -> AddressLookupTableAccount:
        if self._snapshot is None:
            data = self.rpc.get_account_data(str(self.table_address))
            if data is None:
                raise LookupTableSyncFailure(f"Lookup table {self.table_address} does not exist")
            self._snapshot = decode_lookup_table(self.table_address, data)
            logger.debug("Loaded lookup table %s with %d addresses", self.table_address, len(self._snapshot.addresses))
        return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = None

    def missing(self, addresses: Iterable[Pubkey]) -> List[Pubkey]:
        """Addresses not yet in the table, deduplicated, in first-seen order."""

        present = set(self.snapshot().addresses)
        result: List[Pubkey] = []
        for address in addresses:
            if address not in present and address not in result:
                result.append(address)
        return result

    def sync(self, addresses: Iterable[Pubkey]) -> AddressLookupTableAccount:
        """Extend the table until it holds every address in ``addresses``."""

        required = list(addresses)
        pending = self.missing(required)
        if not pending:
            return self.snapshot()

        logger.info("Extending lookup table %s with %d addresses", self.table_address, len(pending))
        for chunk in _chunks(pending, self.max_addresses_per_extend):
            self._extend_chunk(chunk)

        self.invalidate()
        still_missing = self.missing(required)
        if still_missing:
            raise LookupTableSyncFailure(
                f"Lookup table {self.table_address} still lacks {len(still_missing)} addresses after extension",
                missing=still_missing,
            )
        return self.snapshot()

    def lookup_targets(self, instructions: Sequence[Instruction], exclude: Iterable[Pubkey] = ()) -> List[Pubkey]:
        """Non-signer, non-program accounts referenced by ``instructions``."""

        program_ids = {ix.program_id for ix in instructions}
        skipped = set(exclude)
        targets: List[Pubkey] = []
        for ix in instructions:
            for meta in ix.accounts:
                key = meta.pubkey
                if meta.is_signer or key in program_ids or key in skipped or key in targets:
                    continue
                targets.append(key)
        return targets

    def _extend_chunk(self, chunk: List[Pubkey]) -> None:
        for attempt in (1, 2):
            ix = extend_lookup_table_instruction(
                self.table_address,
                self.authority.pubkey(),
                self.assembler.payer.pubkey(),
                chunk,
            )
            try:
                self.assembler.send_and_confirm([ix], with_compute_budget=False, extra_signers=[self.authority])
                return
            except (OnChainExecutionError, ConfirmationTimeout, RPCError, RPCTransportError) as exc:
                if attempt == 2:
                    raise LookupTableSyncFailure(
                        f"Extending lookup table {self.table_address} failed twice: {exc}", missing=chunk
                    ) from exc
                logger.warning("Lookup table extension failed, retrying once: %s", exc)
                # The first attempt may have landed despite the error.
                self.invalidate()
                chunk = self.missing(chunk)
                if not chunk:
                    return
