"""Swap pool record layout and pool-level derivations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from borsh_construct import Bool, CStruct, I64, U8, U16, U128
from Crypto.Hash import keccak
from solders.pubkey import Pubkey

POOL_AUTHORITY_SEED = b"pool_authority"
POOL_ADDRESS_SEED = b"pool"
# Appended to every hashed address input; the top byte is then cleared so
# the digest fits the BN254 scalar field.
ADDRESS_HASH_BUMP = b"\xff"

PUBKEY_LAYOUT = U8[32]

SwapPoolLayout = CStruct(
    "authority" / PUBKEY_LAYOUT,
    "pool_authority" / PUBKEY_LAYOUT,
    "mint_a" / PUBKEY_LAYOUT,
    "mint_b" / PUBKEY_LAYOUT,
    "reserve_a" / U128,
    "reserve_b" / U128,
    "protocol_fee_a" / U128,
    "protocol_fee_b" / U128,
    "fee_bps" / U16,
    "is_paused" / Bool,
    "last_update_ts" / I64,
)


class PoolStateError(RuntimeError):
    """Raised when a pool record cannot be decoded or is unusable."""


def pool_authority_pda(mint_a: Pubkey, mint_b: Pubkey, program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([POOL_AUTHORITY_SEED, bytes(mint_a), bytes(mint_b)], program_id)[0]


def hashv_to_bn254_field_size_be(parts: Sequence[bytes]) -> bytes:
    hasher = keccak.new(digest_bits=256)
    for part in parts:
        hasher.update(bytes(part))
    hasher.update(ADDRESS_HASH_BUMP)
    digest = bytearray(hasher.digest())
    digest[0] = 0
    return bytes(digest)


def derive_address_seed(seeds: Sequence[bytes]) -> bytes:
    return hashv_to_bn254_field_size_be(seeds)


def derive_pool_address(mint_a: Pubkey, mint_b: Pubkey, address_tree: Pubkey, program_id: Pubkey) -> Pubkey:
    """Return the compressed address the program assigns to the ``mint_a``/``mint_b`` pool.

    The seed hashes ``"pool" || mint_a || mint_b``; the address then hashes
    ``seed || address_tree || program_id``. Both steps use the batched
    address-tree scheme, so the result depends on the tree the pool was
    created in.
    """

    seed = derive_address_seed([POOL_ADDRESS_SEED, bytes(mint_a), bytes(mint_b)])
    return Pubkey(hashv_to_bn254_field_size_be([seed, bytes(address_tree), bytes(program_id)]))


@dataclass(frozen=True)
class PoolState:
    """Decoded ``SwapPool`` record; reserve and fee fields are encrypted handles."""

    authority: Pubkey
    pool_authority: Pubkey
    mint_a: Pubkey
    mint_b: Pubkey
    reserve_a: int
    reserve_b: int
    protocol_fee_a: int
    protocol_fee_b: int
    fee_bps: int
    is_paused: bool
    last_update_ts: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "PoolState":
        try:
            parsed = SwapPoolLayout.parse(data)
        except Exception as exc:  # noqa: BLE001 - construct raises its own error hierarchy
            raise PoolStateError(f"Could not decode pool record ({len(data)} bytes): {exc}") from exc
        return cls(
            authority=Pubkey(bytes(parsed.authority)),
            pool_authority=Pubkey(bytes(parsed.pool_authority)),
            mint_a=Pubkey(bytes(parsed.mint_a)),
            mint_b=Pubkey(bytes(parsed.mint_b)),
            reserve_a=parsed.reserve_a,
            reserve_b=parsed.reserve_b,
            protocol_fee_a=parsed.protocol_fee_a,
            protocol_fee_b=parsed.protocol_fee_b,
            fee_bps=parsed.fee_bps,
            is_paused=parsed.is_paused,
            last_update_ts=parsed.last_update_ts,
        )

    def to_bytes(self) -> bytes:
        return SwapPoolLayout.build(
            {
                "authority": list(bytes(self.authority)),
                "pool_authority": list(bytes(self.pool_authority)),
                "mint_a": list(bytes(self.mint_a)),
                "mint_b": list(bytes(self.mint_b)),
                "reserve_a": self.reserve_a,
                "reserve_b": self.reserve_b,
                "protocol_fee_a": self.protocol_fee_a,
                "protocol_fee_b": self.protocol_fee_b,
                "fee_bps": self.fee_bps,
                "is_paused": self.is_paused,
                "last_update_ts": self.last_update_ts,
            }
        )

    def reserve_handles(self, a_to_b: bool) -> tuple[int, int]:
        """Return ``(reserve_in, reserve_out)`` handles for the swap direction."""

        if a_to_b:
            return self.reserve_a, self.reserve_b
        return self.reserve_b, self.reserve_a

    def check_authority(self, program_id: Pubkey) -> None:
        expected = pool_authority_pda(self.mint_a, self.mint_b, program_id)
        if expected != self.pool_authority:
            raise PoolStateError(f"Pool authority {self.pool_authority} does not match derived {expected}")
