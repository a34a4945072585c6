"""Programmatic swap workflow for the confidential pool.

``SwapFlow.execute`` walks one swap through a fixed sequence of stages:
quote, proof resolution, account packing, lookup-table sync, assembly,
submission and confirmation. Every stage must complete before the next one
starts and the first failure aborts the flow with a :class:`SwapFlowError`
naming the stage. Nothing past submission is ever retried, because a second
submission could double-spend if the first one lands late.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Protocol, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .allowance import allowance_account_metas, derive_allowance_pda
from .assembler import TransactionAssembler
from .config import ConfigurationError, SwapConfig
from .decrypt import AttestedDecryptClient, BackoffPolicy, BalanceDecryptor
from .handles import HandleResolver
from .instructions import CompressedAccountMeta, SwapExactInArgs, build_swap_exact_in
from .lookup_table import LookupTableManager
from .packing import PackedAccounts, SwapTreeAccounts
from .pool import PoolState, PoolStateError, derive_pool_address
from .proofs import CompressedAccountRef, ProofResolver, ValidityProof, find_compressed_account
from .quote import SwapQuote, quote_exact_in
from .rpc_client import IndexerRPCClient, RPCError, SolanaRPCClient, format_rpc_hint
from .signing import MessageSigner

logger = logging.getLogger(__name__)


class FlowStage(str, Enum):
    PENDING = "pending"
    QUOTE_COMPUTED = "quote_computed"
    PROOF_RESOLVED = "proof_resolved"
    ACCOUNTS_PACKED = "accounts_packed"
    LUT_SYNCED = "lut_synced"
    ASSEMBLED = "assembled"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


STAGE_ORDER = (
    FlowStage.PENDING,
    FlowStage.QUOTE_COMPUTED,
    FlowStage.PROOF_RESOLVED,
    FlowStage.ACCOUNTS_PACKED,
    FlowStage.LUT_SYNCED,
    FlowStage.ASSEMBLED,
    FlowStage.SUBMITTED,
    FlowStage.CONFIRMED,
)


class SwapFlowError(RuntimeError):
    """Raised when a swap stage fails; ``stage`` is the stage that did not complete."""

    def __init__(self, stage: FlowStage, message: str, logs: Sequence[str] | None = None) -> None:
        super().__init__(f"Swap failed at {stage.value}: {message}")
        self.stage = stage
        self.logs = list(logs or [])


class AmountEncryptor(Protocol):
    def encrypt(self, amount: int) -> bytes:
        """Return the ciphertext the encrypted-operations program accepts for ``amount``."""


@dataclass(frozen=True)
class SwapRequest:
    """A single exact-in swap against plaintext reserve estimates."""

    amount_in: int
    reserve_in: int
    reserve_out: int
    a_to_b: bool = True


@dataclass
class SwapResult:
    """Container describing a submitted swap."""

    pool_address: Pubkey
    quote: SwapQuote
    proof: ValidityProof
    stage: FlowStage
    signature: str | None = None
    slot: int | None = None
    lookup_table: Pubkey | None = None
    pool_state: PoolState | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "pool_address": str(self.pool_address),
            "stage": self.stage.value,
            "signature": self.signature,
            "slot": self.slot,
            "amount_in": self.quote.amount_in,
            "fee_amount": self.quote.fee_amount,
            "amount_out": self.quote.amount_out,
            "fee_bps": self.quote.fee_bps,
            "root_index": self.proof.root_index,
            "prove_by_index": self.proof.prove_by_index,
            "lookup_table": str(self.lookup_table) if self.lookup_table else None,
        }


@dataclass(frozen=True)
class SettlementEntry:
    account: Pubkey
    handle_before: int
    handle_after: int
    plaintext: str | None = None

    @property
    def changed(self) -> bool:
        return self.handle_before != self.handle_after


@dataclass(frozen=True)
class AllowanceExecution:
    handle: int
    allowance_pda: Pubkey
    signature: str
    slot: int | None


def resolve_pool_address(config: SwapConfig) -> Pubkey:
    """Return the configured pool address, or derive it from the pool mints and address tree."""

    pool = config.pool
    if pool.pool_address is not None:
        return pool.pool_address
    if pool.mint_a is None or pool.mint_b is None or pool.address_tree is None:
        raise ConfigurationError(
            "Configure pool.pool_address, or pool.mint_a, pool.mint_b and pool.address_tree to derive it"
        )
    address = derive_pool_address(pool.mint_a, pool.mint_b, pool.address_tree, config.programs.swap_program)
    logger.info("Derived pool address %s from mints %s/%s", address, pool.mint_a, pool.mint_b)
    return address


class SwapFlow:
    """Drive one confidential swap from quote to confirmation."""

    def __init__(
        self,
        config: SwapConfig,
        *,
        indexer: IndexerRPCClient,
        assembler: TransactionAssembler,
        encryptor: AmountEncryptor,
        proof_resolver: ProofResolver | None = None,
        lookup_tables: LookupTableManager | None = None,
        handle_resolver: HandleResolver | None = None,
        decryptor: BalanceDecryptor | None = None,
    ) -> None:
        self.config = config
        self.pool_address = resolve_pool_address(config)
        self.indexer = indexer
        self.assembler = assembler
        self.encryptor = encryptor
        self.proof_resolver = proof_resolver or ProofResolver(indexer, config.protocol_version)
        self.lookup_tables = lookup_tables
        self.handle_resolver = handle_resolver or HandleResolver(assembler.rpc, commitment=config.commitment)
        self.decryptor = decryptor
        self._stage = FlowStage.PENDING
        self.history: List[FlowStage] = [FlowStage.PENDING]

    @classmethod
    def from_config(
        cls,
        config: SwapConfig,
        payer: Keypair,
        encryptor: AmountEncryptor,
        *,
        lookup_authority: Keypair | None = None,
    ) -> "SwapFlow":
        rpc = SolanaRPCClient.from_config(config)
        indexer = IndexerRPCClient.from_config(config)
        assembler = TransactionAssembler.from_config(config, rpc, payer)
        lookup_tables = None
        if config.pool.lookup_table is not None:
            lookup_tables = LookupTableManager(rpc, config.pool.lookup_table, lookup_authority or payer, assembler)
        decryptor = None
        if config.decrypt_url:
            decryptor = BalanceDecryptor(
                AttestedDecryptClient(config.decrypt_url, timeout=config.request_timeout),
                MessageSigner.from_keypair(payer),
                BackoffPolicy(
                    base_delay=config.decrypt_base_delay,
                    increment=config.decrypt_delay_increment,
                    max_attempts=config.decrypt_max_attempts,
                ),
            )
        return cls(
            config,
            indexer=indexer,
            assembler=assembler,
            encryptor=encryptor,
            lookup_tables=lookup_tables,
            decryptor=decryptor,
        )

    @property
    def stage(self) -> FlowStage:
        return self._stage

    def _advance(self, stage: FlowStage) -> None:
        current = STAGE_ORDER.index(self._stage) if self._stage in STAGE_ORDER else -1
        if current < 0 or STAGE_ORDER.index(stage) != current + 1:
            raise SwapFlowError(stage, f"cannot enter {stage.value} from {self._stage.value}")
        self._stage = stage
        self.history.append(stage)
        logger.info("Swap stage reached: %s", stage.value)

    @contextmanager
    def _stage_step(self, stage: FlowStage) -> Iterator[None]:
        try:
            yield
        except SwapFlowError:
            self._fail()
            raise
        except (RuntimeError, ValueError, LookupError) as exc:
            self._fail()
            hint = format_rpc_hint(exc) if isinstance(exc, RPCError) else None
            message = f"{exc}\nHint: {hint}" if hint else str(exc)
            raise SwapFlowError(stage, message, logs=getattr(exc, "logs", None)) from exc
        except BaseException:
            self._fail()
            raise
        self._advance(stage)

    def _fail(self) -> None:
        self._stage = FlowStage.FAILED
        self.history.append(FlowStage.FAILED)

    def execute(self, request: SwapRequest) -> SwapResult:
        """Run every stage in order and return the confirmed result."""

        if self._stage is not FlowStage.PENDING:
            raise SwapFlowError(FlowStage.QUOTE_COMPUTED, "a SwapFlow instance runs exactly one swap")

        pool_address = self.pool_address
        programs = self.config.programs

        with self._stage_step(FlowStage.QUOTE_COMPUTED):
            quote = quote_exact_in(
                request.amount_in, request.reserve_in, request.reserve_out, self.config.pool.fee_bps
            )

        with self._stage_step(FlowStage.PROOF_RESOLVED):
            ref = find_compressed_account(self.indexer, programs.swap_program, pool_address)
            pool_state = self._load_pool_state(ref, quote)
            proof = self.proof_resolver.resolve(ref)

        result = SwapResult(pool_address=pool_address, quote=quote, proof=proof, stage=self._stage, pool_state=pool_state)

        with self._stage_step(FlowStage.ACCOUNTS_PACKED):
            instruction = self._build_swap_instruction(request, quote, ref, proof)

        with self._stage_step(FlowStage.LUT_SYNCED):
            tables = []
            if self.lookup_tables is not None:
                targets = self.lookup_tables.lookup_targets([instruction], exclude=[self.assembler.payer.pubkey()])
                tables.append(self.lookup_tables.sync(targets))
                result.lookup_table = self.lookup_tables.table_address

        with self._stage_step(FlowStage.ASSEMBLED):
            tx = self.assembler.assemble([instruction], tables)

        with self._stage_step(FlowStage.SUBMITTED):
            signature = self.assembler.submit(tx)
            result.signature = str(signature)

        with self._stage_step(FlowStage.CONFIRMED):
            confirmed = self.assembler.confirm(signature)
            result.slot = confirmed.slot

        result.stage = self._stage
        return result

    def _load_pool_state(self, ref: CompressedAccountRef, quote: SwapQuote) -> PoolState:
        pool_state = PoolState.from_bytes(ref.data)
        if pool_state.is_paused:
            raise PoolStateError(f"Pool {ref.address} is paused")
        for label, configured, on_chain in (
            ("mint_a", self.config.pool.mint_a, pool_state.mint_a),
            ("mint_b", self.config.pool.mint_b, pool_state.mint_b),
        ):
            if configured is not None and configured != on_chain:
                raise PoolStateError(f"Pool {ref.address} holds {label} {on_chain}, configured {configured}")
        pool_state.check_authority(self.config.programs.swap_program)
        if pool_state.fee_bps != quote.fee_bps:
            logger.warning(
                "Configured fee_bps %d differs from on-chain pool fee %d; quote may be off",
                quote.fee_bps,
                pool_state.fee_bps,
            )
        return pool_state

    def _build_swap_instruction(
        self,
        request: SwapRequest,
        quote: SwapQuote,
        ref: CompressedAccountRef,
        proof: ValidityProof,
    ) -> Instruction:
        programs = self.config.programs
        packed = PackedAccounts()
        packed.add_system_accounts(programs.swap_program, self.config.protocol_version)
        indices = SwapTreeAccounts(
            state_tree=ref.tree,
            output_queue=ref.queue,
            address_tree=self.config.pool.address_tree,
        ).pack(packed)

        args = SwapExactInArgs(
            proof=proof,
            pool_meta=CompressedAccountMeta.for_update(proof, indices, self.pool_address, ref.leaf_index),
            pool_data=ref.data,
            amount_in_ciphertext=self.encryptor.encrypt(quote.amount_in),
            amount_out_ciphertext=self.encryptor.encrypt(quote.amount_out),
            fee_amount_ciphertext=self.encryptor.encrypt(quote.fee_amount),
            a_to_b=request.a_to_b,
        )
        return build_swap_exact_in(
            args,
            fee_payer=self.assembler.payer.pubkey(),
            program_id=programs.swap_program,
            inco_lightning_program=programs.inco_lightning_program,
            remaining=packed.to_account_metas(),
        )

    def snapshot_handles(self, accounts: Sequence[Pubkey]) -> List[int]:
        return [self.handle_resolver.read_confirmed(account) for account in accounts]

    def verify_settlement(
        self,
        accounts: Sequence[Pubkey],
        handles_before: Sequence[int],
        *,
        decrypt: bool = True,
    ) -> List[SettlementEntry]:
        """Re-read token handles after the swap and decrypt them when possible.

        A changed handle is the on-chain evidence that the balance moved;
        decryption is best effort and reports ``DECRYPT_FAILED`` when the
        service has not indexed the new handles yet.
        """

        if len(accounts) != len(handles_before):
            raise ValueError("accounts and handles_before must have the same length")
        handles_after = self.snapshot_handles(accounts)
        plaintexts: List[Optional[str]] = [None] * len(accounts)
        if decrypt and self.decryptor is not None:
            plaintexts = list(self.decryptor.decrypt_many(handles_after))
        entries = [
            SettlementEntry(account=account, handle_before=before, handle_after=after, plaintext=plaintext)
            for account, before, after, plaintext in zip(accounts, handles_before, handles_after, plaintexts)
        ]
        for entry in entries:
            logger.info(
                "Settlement %s: handle %s (%s)",
                entry.account,
                "changed" if entry.changed else "UNCHANGED",
                entry.plaintext if entry.plaintext is not None else "not decrypted",
            )
        return entries


def execute_with_allowance(
    assembler: TransactionAssembler,
    handle_resolver: HandleResolver,
    build_instruction: Callable[[Sequence[AccountMeta]], Instruction],
    account: Pubkey,
    grantee: Pubkey,
    inco_lightning_program: Pubkey,
) -> AllowanceExecution:
    """Execute an instruction that writes a new handle, granting ``grantee`` access to it.

    The allowance account is keyed by the handle the instruction is about to
    create, so the instruction is first simulated without extra accounts to
    learn that handle, then built again with the allowance pair appended.
    """

    candidate = build_instruction([])
    simulated = handle_resolver.simulate_and_read(
        [*assembler.compute_budget_instructions(), candidate], assembler.payer, [account]
    )
    handle = simulated[0]
    allowance_pda, _ = derive_allowance_pda(handle, grantee, inco_lightning_program)
    logger.info("Granting %s access to handle %d via %s", grantee, handle, allowance_pda)

    final = build_instruction(allowance_account_metas(handle, grantee, inco_lightning_program))
    confirmed = assembler.send_and_confirm([final])

    committed = handle_resolver.read_confirmed(account)
    if committed != handle:
        logger.warning(
            "Committed handle %d differs from simulated handle %d; allowance %s may not cover it",
            committed,
            handle,
            allowance_pda,
        )
    return AllowanceExecution(
        handle=handle,
        allowance_pda=allowance_pda,
        signature=str(confirmed.signature),
        slot=confirmed.slot,
    )


def write_receipt(path: Path, result: SwapResult, details: dict[str, Any] | None = None) -> Path:
    """Persist a JSON receipt for the swap flow."""

    path.parent.mkdir(parents=True, exist_ok=True)
    receipt: dict[str, Any] = result.summary()
    receipt.update(details or {})
    path.write_text(json.dumps(receipt, indent=2, default=str))
    return path
