from __future__ import annotations

import pytest
from solders.instruction import AccountMeta
from solders.pubkey import Pubkey

from cswap.config import DEFAULT_SWAP_PROGRAM_ID, ProtocolVersion
from cswap.packing import (
    LIGHT_SYSTEM_PROGRAM_ID,
    NOOP_PROGRAM_ID,
    AccountOrderingDefect,
    PackedAccounts,
    SwapTreeAccounts,
    derive_cpi_signer,
    light_system_account_metas,
)

PROGRAM_ID = Pubkey.from_string(DEFAULT_SWAP_PROGRAM_ID)


def test_insert_or_get_is_idempotent_and_zero_based() -> None:
    packed = PackedAccounts()
    first, second = Pubkey.new_unique(), Pubkey.new_unique()

    assert packed.insert_or_get(first) == 0
    assert packed.insert_or_get(second) == 1
    assert packed.insert_or_get(first) == 0
    assert len(packed) == 2


def test_to_account_metas_orders_sections() -> None:
    packed = PackedAccounts()
    pre = AccountMeta(Pubkey.new_unique(), True, True)
    packed.add_pre_account(pre)
    packed.add_system_accounts(PROGRAM_ID, ProtocolVersion.V2)
    tree = Pubkey.new_unique()
    packed.insert_or_get_read_only(tree)

    result = packed.to_account_metas()

    assert result.system_start == 1
    assert result.packed_start == 7
    assert result.metas[0] == pre
    assert result.metas[1].pubkey == LIGHT_SYSTEM_PROGRAM_ID
    assert result.metas[2].pubkey == derive_cpi_signer(PROGRAM_ID)
    assert result.metas[result.packed_start].pubkey == tree
    assert result.metas[result.packed_start].is_writable is False


def test_v1_system_accounts_include_noop_and_invoking_program() -> None:
    keys = [meta.pubkey for meta in light_system_account_metas(PROGRAM_ID, ProtocolVersion.V1)]

    assert len(keys) == 8
    assert NOOP_PROGRAM_ID in keys
    assert PROGRAM_ID in keys
    assert len(light_system_account_metas(PROGRAM_ID, ProtocolVersion.V2)) == 6


def test_system_accounts_can_only_be_added_once() -> None:
    packed = PackedAccounts()
    packed.add_system_accounts(PROGRAM_ID)

    with pytest.raises(AccountOrderingDefect):
        packed.add_system_accounts(PROGRAM_ID)


def test_swap_tree_accounts_pack_in_role_order() -> None:
    state_tree, queue, address_tree = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    packed = PackedAccounts()

    indices = SwapTreeAccounts(state_tree, queue, address_tree).pack(packed)

    assert (indices.state_tree, indices.output_queue, indices.address_tree) == (0, 1, 2)


def test_swap_tree_accounts_reject_preexisting_out_of_order_entries() -> None:
    state_tree, queue = Pubkey.new_unique(), Pubkey.new_unique()
    packed = PackedAccounts()
    packed.insert_or_get(queue)

    with pytest.raises(AccountOrderingDefect):
        SwapTreeAccounts(state_tree, queue).pack(packed)


def test_swap_tree_accounts_reject_shared_indices() -> None:
    shared = Pubkey.new_unique()

    with pytest.raises(AccountOrderingDefect):
        SwapTreeAccounts(shared, shared).pack(PackedAccounts())
