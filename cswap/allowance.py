"""Allowance PDA derivation for encrypted handles.

An allowance record authorizes one address to decrypt or operate on one
handle. The receiving program derives it from ``handle (16 bytes LE) ||
grantee``; any drift here (byte order, seed order, program id) yields an
unrelated address and the transaction fails with an authorization error, so
this module is the first place to audit on unexplained permission failures.
"""

from __future__ import annotations

from typing import Tuple

from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from .config import DEFAULT_INCO_LIGHTNING_PROGRAM_ID
from .handles import encode_handle

INCO_LIGHTNING_PROGRAM_ID = Pubkey.from_string(DEFAULT_INCO_LIGHTNING_PROGRAM_ID)


def allowance_seeds(handle: int, grantee: Pubkey) -> list[bytes]:
    return [encode_handle(handle), bytes(grantee)]


def derive_allowance_pda(
    handle: int,
    grantee: Pubkey,
    program_id: Pubkey = INCO_LIGHTNING_PROGRAM_ID,
) -> Tuple[Pubkey, int]:
    """Return ``(address, bump)`` of the allowance record for ``handle``/``grantee``."""

    return Pubkey.find_program_address(allowance_seeds(handle, grantee), program_id)


def allowance_account_metas(
    handle: int,
    grantee: Pubkey,
    program_id: Pubkey = INCO_LIGHTNING_PROGRAM_ID,
) -> list[AccountMeta]:
    """Remaining-account pair that creates the allowance alongside an instruction."""

    pda, _ = derive_allowance_pda(handle, grantee, program_id)
    return [
        AccountMeta(pda, False, True),
        AccountMeta(grantee, False, False),
    ]
