from __future__ import annotations

from solders.pubkey import Pubkey

from cswap.allowance import (
    INCO_LIGHTNING_PROGRAM_ID,
    allowance_account_metas,
    allowance_seeds,
    derive_allowance_pda,
)

HANDLE = 0x1F2E3D4C5B6A79881726354453627180


def test_seeds_are_handle_bytes_then_grantee() -> None:
    grantee = Pubkey.new_unique()

    seeds = allowance_seeds(HANDLE, grantee)

    assert seeds == [HANDLE.to_bytes(16, "little"), bytes(grantee)]


def test_derivation_matches_manual_program_address() -> None:
    grantee = Pubkey.new_unique()

    expected = Pubkey.find_program_address([HANDLE.to_bytes(16, "little"), bytes(grantee)], INCO_LIGHTNING_PROGRAM_ID)

    assert derive_allowance_pda(HANDLE, grantee) == expected


def test_derivation_is_sensitive_to_byte_and_seed_order() -> None:
    grantee = Pubkey.new_unique()
    pda, _ = derive_allowance_pda(HANDLE, grantee)

    big_endian, _ = Pubkey.find_program_address([HANDLE.to_bytes(16, "big"), bytes(grantee)], INCO_LIGHTNING_PROGRAM_ID)
    swapped, _ = Pubkey.find_program_address([bytes(grantee), HANDLE.to_bytes(16, "little")], INCO_LIGHTNING_PROGRAM_ID)

    assert pda != big_endian
    assert pda != swapped


def test_account_metas_pair_is_writable_pda_then_readonly_grantee() -> None:
    grantee = Pubkey.new_unique()
    pda, _ = derive_allowance_pda(HANDLE, grantee)

    metas = allowance_account_metas(HANDLE, grantee)

    assert [meta.pubkey for meta in metas] == [pda, grantee]
    assert [meta.is_writable for meta in metas] == [True, False]
    assert not any(meta.is_signer for meta in metas)
