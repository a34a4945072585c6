"""Instruction encoders for the confidential swap program."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Optional, Sequence

from borsh_construct import Bool, Bytes, CStruct, Option, U8, U16, U32
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from .packing import PackedAccountMetas, PackedTreeIndices
from .proofs import ValidityProof

U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF

# Input ciphertext encoding understood by the encrypted-operations program.
INPUT_TYPE_CIPHERTEXT = 0

# Named accounts of `swap_exact_in` as (name, is_signer, is_writable), in program order.
SWAP_EXACT_IN_ACCOUNTS = (
    ("fee_payer", True, True),
    ("inco_lightning_program", False, False),
)

CompressedProofLayout = CStruct(
    "a" / U8[32],
    "b" / U8[64],
    "c" / U8[32],
)

PackedStateTreeInfoLayout = CStruct(
    "root_index" / U16,
    "prove_by_index" / Bool,
    "merkle_tree_pubkey_index" / U8,
    "queue_pubkey_index" / U8,
    "leaf_index" / U32,
)

CompressedAccountMetaLayout = CStruct(
    "tree_info" / PackedStateTreeInfoLayout,
    "address" / U8[32],
    "output_state_tree_index" / U8,
)

SwapExactInLayout = CStruct(
    "proof" / Option(CompressedProofLayout),
    "pool_meta" / CompressedAccountMetaLayout,
    "pool_data" / Bytes,
    "amount_in_ciphertext" / Bytes,
    "amount_out_ciphertext" / Bytes,
    "fee_amount_ciphertext" / Bytes,
    "input_type" / U8,
    "a_to_b" / Bool,
)


class InstructionEncodingError(RuntimeError):
    """Raised when instruction arguments do not fit the on-chain encoding."""


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


@dataclass(frozen=True)
class CompressedAccountMeta:
    """Positional metadata the program uses to locate a compressed account."""

    root_index: int
    prove_by_index: bool
    merkle_tree_index: int
    queue_index: int
    leaf_index: int
    address: bytes
    output_state_tree_index: int

    @classmethod
    def for_update(
        cls,
        proof: ValidityProof,
        indices: PackedTreeIndices,
        address: Pubkey | bytes,
        leaf_index: int,
    ) -> "CompressedAccountMeta":
        """Meta for updating an existing account; the new state lands in the output queue."""

        return cls(
            root_index=proof.root_index,
            prove_by_index=proof.prove_by_index,
            merkle_tree_index=indices.state_tree,
            queue_index=indices.output_queue,
            leaf_index=proof.leaf_index if proof.leaf_index is not None else leaf_index,
            address=bytes(address),
            output_state_tree_index=indices.output_queue,
        )

    def to_layout(self) -> dict:
        if not 0 <= self.root_index <= U16_MAX:
            raise InstructionEncodingError(f"root_index {self.root_index} does not fit in u16")
        if not 0 <= self.leaf_index <= U32_MAX:
            raise InstructionEncodingError(f"leaf_index {self.leaf_index} does not fit in u32")
        for name in ("merkle_tree_index", "queue_index", "output_state_tree_index"):
            if not 0 <= getattr(self, name) <= 0xFF:
                raise InstructionEncodingError(f"{name} {getattr(self, name)} does not fit in u8")
        if len(self.address) != 32:
            raise InstructionEncodingError(f"Compressed address must be 32 bytes; got {len(self.address)}")
        return {
            "tree_info": {
                "root_index": self.root_index,
                "prove_by_index": self.prove_by_index,
                "merkle_tree_pubkey_index": self.merkle_tree_index,
                "queue_pubkey_index": self.queue_index,
                "leaf_index": self.leaf_index,
            },
            "address": list(self.address),
            "output_state_tree_index": self.output_state_tree_index,
        }


def encode_validity_proof(proof: ValidityProof) -> Optional[dict]:
    """Return the ``Option<CompressedProof>`` payload; ``None`` under prove-by-index."""

    proof.validate()
    if proof.prove_by_index or proof.proof is None:
        return None
    return {
        "a": list(proof.proof.a),
        "b": list(proof.proof.b),
        "c": list(proof.proof.c),
    }


@dataclass(frozen=True)
class SwapExactInArgs:
    proof: ValidityProof
    pool_meta: CompressedAccountMeta
    pool_data: bytes
    amount_in_ciphertext: bytes
    amount_out_ciphertext: bytes
    fee_amount_ciphertext: bytes
    a_to_b: bool = True
    input_type: int = INPUT_TYPE_CIPHERTEXT


def encode_swap_exact_in(args: SwapExactInArgs) -> bytes:
    payload = SwapExactInLayout.build(
        {
            "proof": encode_validity_proof(args.proof),
            "pool_meta": args.pool_meta.to_layout(),
            "pool_data": args.pool_data,
            "amount_in_ciphertext": args.amount_in_ciphertext,
            "amount_out_ciphertext": args.amount_out_ciphertext,
            "fee_amount_ciphertext": args.fee_amount_ciphertext,
            "input_type": args.input_type,
            "a_to_b": args.a_to_b,
        }
    )
    return sighash("swap_exact_in") + payload


def build_swap_exact_in(
    args: SwapExactInArgs,
    *,
    fee_payer: Pubkey,
    program_id: Pubkey,
    inco_lightning_program: Pubkey,
    remaining: PackedAccountMetas,
    extra_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    """Build ``swap_exact_in`` with the packed remaining accounts (and any allowance pairs) appended."""

    named = {"fee_payer": fee_payer, "inco_lightning_program": inco_lightning_program}
    accounts = [
        *(AccountMeta(named[name], is_signer, is_writable) for name, is_signer, is_writable in SWAP_EXACT_IN_ACCOUNTS),
        *remaining.metas,
        *extra_accounts,
    ]
    return Instruction(program_id, encode_swap_exact_in(args), accounts)
