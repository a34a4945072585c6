"""Remaining-accounts packing for compressed-state instructions.

The swap program reads its variable-length account list purely by position:
the light-system prefix first, then the packed trees and queues whose
indices are embedded in the instruction data. ``PackedAccounts`` keeps the
insertion order and deduplicates keys; ``SwapTreeAccounts`` names the roles
the swap instruction expects so ordering mistakes surface here instead of as
an on-chain failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from .config import ProtocolVersion

logger = logging.getLogger(__name__)

LIGHT_SYSTEM_PROGRAM_ID = Pubkey.from_string("SySTEM1eSU2p4BGQfQpimFEWWSC1XDFeun3Nqzz3rT7")
ACCOUNT_COMPRESSION_PROGRAM_ID = Pubkey.from_string("compr6CUsB5m2jS4Y3831ztGSTnDpnKJTKS95d64XVq")
REGISTERED_PROGRAM_PDA = Pubkey.from_string("35hkDgaAKwMCaxRz2ocSZ6NaUrtKkyNqU6c4RV3tYJRh")
ACCOUNT_COMPRESSION_AUTHORITY = Pubkey.from_string("HwXnGK3tPkkVY6P439H2p68AxpeuWXd5PcrAxFpbmfbA")
NOOP_PROGRAM_ID = Pubkey.from_string("noopb9bkMVfRPU8AsbpTUg8AQkHtKwMYZiFUjNRtMmV")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
CPI_AUTHORITY_SEED = b"cpi_authority"


class AccountOrderingDefect(RuntimeError):
    """Raised when packed accounts would not match the program's positional layout."""


def derive_cpi_signer(program_id: Pubkey) -> Pubkey:
    """Return the CPI authority PDA a program signs light-system calls with."""

    return Pubkey.find_program_address([CPI_AUTHORITY_SEED], program_id)[0]


def light_system_account_metas(program_id: Pubkey, protocol_version: ProtocolVersion) -> List[AccountMeta]:
    """Return the light-system account prefix for ``program_id``."""

    cpi_signer = derive_cpi_signer(program_id)
    if protocol_version is ProtocolVersion.V2:
        keys = [
            LIGHT_SYSTEM_PROGRAM_ID,
            cpi_signer,
            REGISTERED_PROGRAM_PDA,
            ACCOUNT_COMPRESSION_AUTHORITY,
            ACCOUNT_COMPRESSION_PROGRAM_ID,
            SYSTEM_PROGRAM_ID,
        ]
    else:
        keys = [
            LIGHT_SYSTEM_PROGRAM_ID,
            cpi_signer,
            REGISTERED_PROGRAM_PDA,
            NOOP_PROGRAM_ID,
            ACCOUNT_COMPRESSION_AUTHORITY,
            ACCOUNT_COMPRESSION_PROGRAM_ID,
            program_id,
            SYSTEM_PROGRAM_ID,
        ]
    return [AccountMeta(key, False, False) for key in keys]


@dataclass(frozen=True)
class PackedAccountMetas:
    """Flattened remaining accounts plus the offsets of each section."""

    metas: List[AccountMeta]
    system_start: int
    packed_start: int


class PackedAccounts:
    """Insertion-ordered, deduplicated table of remaining accounts."""

    def __init__(self) -> None:
        self._pre_accounts: List[AccountMeta] = []
        self._system_accounts: List[AccountMeta] = []
        self._packed: List[AccountMeta] = []
        self._index: Dict[Pubkey, int] = {}

    def __len__(self) -> int:
        return len(self._packed)

    def add_pre_account(self, meta: AccountMeta) -> None:
        self._pre_accounts.append(meta)

    def add_system_accounts(
        self,
        program_id: Pubkey,
        protocol_version: ProtocolVersion = ProtocolVersion.V2,
    ) -> None:
        if self._system_accounts:
            raise AccountOrderingDefect("System accounts were already added to this table")
        self._system_accounts = light_system_account_metas(program_id, protocol_version)

    def insert_or_get(self, pubkey: Pubkey, is_signer: bool = False, is_writable: bool = True) -> int:
        """Return the packed index of ``pubkey``, appending it on first sight."""

        existing = self._index.get(pubkey)
        if existing is not None:
            return existing
        index = len(self._packed)
        self._packed.append(AccountMeta(pubkey, is_signer, is_writable))
        self._index[pubkey] = index
        logger.debug("Packed %s at index %d", pubkey, index)
        return index

    def insert_or_get_read_only(self, pubkey: Pubkey) -> int:
        return self.insert_or_get(pubkey, is_signer=False, is_writable=False)

    def to_account_metas(self) -> PackedAccountMetas:
        system_start = len(self._pre_accounts)
        packed_start = system_start + len(self._system_accounts)
        metas = [*self._pre_accounts, *self._system_accounts, *self._packed]
        return PackedAccountMetas(metas=metas, system_start=system_start, packed_start=packed_start)


class AccountRole(str, Enum):
    """Named positions the swap instruction reads from the packed section."""

    STATE_TREE = "state_tree"
    OUTPUT_QUEUE = "output_queue"
    ADDRESS_TREE = "address_tree"


SWAP_ROLE_ORDER: Tuple[AccountRole, ...] = (
    AccountRole.STATE_TREE,
    AccountRole.OUTPUT_QUEUE,
    AccountRole.ADDRESS_TREE,
)


@dataclass(frozen=True)
class PackedTreeIndices:
    state_tree: int
    output_queue: int
    address_tree: int | None


@dataclass(frozen=True)
class SwapTreeAccounts:
    """Trees and queues the swap instruction references, tagged by role."""

    state_tree: Pubkey
    output_queue: Pubkey
    address_tree: Pubkey | None = None

    def tagged(self) -> List[Tuple[AccountRole, Pubkey]]:
        entries = [
            (AccountRole.STATE_TREE, self.state_tree),
            (AccountRole.OUTPUT_QUEUE, self.output_queue),
        ]
        if self.address_tree is not None:
            entries.append((AccountRole.ADDRESS_TREE, self.address_tree))
        return entries

    def pack(self, packed: PackedAccounts) -> PackedTreeIndices:
        """Insert every role in program order and check the resulting positions."""

        indices: Dict[AccountRole, int] = {}
        for role, pubkey in self.tagged():
            indices[role] = packed.insert_or_get(pubkey)

        ordered = [indices[role] for role in SWAP_ROLE_ORDER if role in indices]
        if len(set(ordered)) != len(ordered):
            raise AccountOrderingDefect(f"Distinct account roles share a packed index: {indices}")
        if ordered != sorted(ordered):
            raise AccountOrderingDefect(
                f"Packed roles out of program order {[role.value for role in SWAP_ROLE_ORDER]}: {indices}"
            )
        return PackedTreeIndices(
            state_tree=indices[AccountRole.STATE_TREE],
            output_queue=indices[AccountRole.OUTPUT_QUEUE],
            address_tree=indices.get(AccountRole.ADDRESS_TREE),
        )
