"""Versioned transaction assembly, submission and confirmation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .config import SwapConfig
from .decrypt import BackoffPolicy
from .rpc_client import RPCError, SolanaRPCClient, format_rpc_hint

logger = logging.getLogger(__name__)

DEFAULT_COMPUTE_UNIT_LIMIT = 1_400_000
DEFAULT_COMPUTE_UNIT_PRICE = 100_000

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class OnChainExecutionError(RuntimeError):
    """The transaction landed but failed; ``logs`` are the program logs verbatim."""

    def __init__(self, signature: str, err: Any, logs: Sequence[str] | None = None) -> None:
        self.signature = signature
        self.err = err
        self.logs = list(logs or [])
        message = f"Transaction {signature} failed on chain: {err}"
        hint = format_rpc_hint({"message": str(err), "data": {"logs": self.logs}})
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class ConfirmationTimeout(RuntimeError):
    """The confirmation poll budget ran out before the signature reached the commitment."""

    def __init__(self, signature: str, attempts: int) -> None:
        super().__init__(f"Transaction {signature} not confirmed after {attempts} status polls")
        self.signature = signature
        self.attempts = attempts


@dataclass(frozen=True)
class ConfirmedSignature:
    signature: Signature
    slot: int | None
    confirmation_status: str


@dataclass
class TransactionAssembler:
    """Compile, sign, submit and confirm v0 transactions for a single payer."""

    rpc: SolanaRPCClient
    payer: Keypair
    compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT
    compute_unit_price: int = DEFAULT_COMPUTE_UNIT_PRICE
    skip_preflight: bool = True
    commitment: str = "confirmed"
    confirm_policy: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(base_delay=1.0, increment=0.0, max_attempts=60)
    )

    @classmethod
    def from_config(cls, config: SwapConfig, rpc: SolanaRPCClient, payer: Keypair) -> "TransactionAssembler":
        return cls(
            rpc=rpc,
            payer=payer,
            compute_unit_limit=config.compute_unit_limit,
            compute_unit_price=config.compute_unit_price,
            skip_preflight=config.skip_preflight,
            commitment=config.commitment,
            confirm_policy=BackoffPolicy(
                base_delay=config.confirm_poll_interval,
                increment=0.0,
                max_attempts=config.confirm_max_attempts,
            ),
        )

    def compute_budget_instructions(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(self.compute_unit_price),
        ]

    def assemble(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        *,
        with_compute_budget: bool = True,
        extra_signers: Sequence[Keypair] = (),
    ) -> VersionedTransaction:
        """Compile a signed v0 transaction against the current blockhash."""

        all_instructions = list(instructions)
        if with_compute_budget:
            all_instructions = [*self.compute_budget_instructions(), *all_instructions]
        latest = self.rpc.get_latest_blockhash()
        message = MessageV0.try_compile(
            self.payer.pubkey(),
            all_instructions,
            list(lookup_tables),
            Hash.from_string(latest["blockhash"]),
        )
        signers = [self.payer, *(kp for kp in extra_signers if kp.pubkey() != self.payer.pubkey())]
        tx = VersionedTransaction(message, signers)
        logger.debug(
            "Assembled v0 transaction with %d instructions, %d lookup tables, %d bytes",
            len(all_instructions),
            len(lookup_tables),
            len(bytes(tx)),
        )
        return tx

    def simulate(self, tx: VersionedTransaction, accounts: Sequence[str] | None = None) -> Dict[str, Any]:
        result = self.rpc.simulate_transaction(bytes(tx), accounts=accounts)
        if result.get("err"):
            logger.warning("Simulation reported %s", result["err"])
        return result

    def submit(self, tx: VersionedTransaction, skip_preflight: bool | None = None) -> Signature:
        """Broadcast ``tx`` once; callers never resubmit the same flow."""

        preflight_skipped = self.skip_preflight if skip_preflight is None else skip_preflight
        try:
            raw_signature = self.rpc.send_transaction(bytes(tx), skip_preflight=preflight_skipped)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            logger.error("sendTransaction rejected: %s%s", exc, f" ({hint})" if hint else "")
            raise
        logger.info("Submitted transaction %s", raw_signature)
        return Signature.from_string(raw_signature)

    def confirm(self, signature: Signature | str) -> ConfirmedSignature:
        """Poll signature status until the configured commitment, failure, or budget exhaustion."""

        sig_text = str(signature)
        target_rank = _COMMITMENT_RANK.get(self.commitment, 1)
        attempts = self.confirm_policy.max_attempts
        for attempt in range(1, attempts + 1):
            statuses = self.rpc.get_signature_statuses([sig_text])
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise OnChainExecutionError(sig_text, status["err"], self._fetch_logs(sig_text))
                reached = status.get("confirmationStatus") or ""
                if _COMMITMENT_RANK.get(reached, -1) >= target_rank:
                    logger.info("Transaction %s reached %s at slot %s", sig_text, reached, status.get("slot"))
                    return ConfirmedSignature(
                        signature=Signature.from_string(sig_text),
                        slot=status.get("slot"),
                        confirmation_status=reached,
                    )
            logger.debug("Signature %s not yet %s (poll %d/%d)", sig_text, self.commitment, attempt, attempts)
            if attempt < attempts:
                self.confirm_policy.wait(attempt)
        raise ConfirmationTimeout(sig_text, attempts)

    def send_and_confirm(
        self,
        instructions: Sequence[Instruction],
        lookup_tables: Sequence[AddressLookupTableAccount] = (),
        *,
        with_compute_budget: bool = True,
        extra_signers: Sequence[Keypair] = (),
    ) -> ConfirmedSignature:
        tx = self.assemble(
            instructions,
            lookup_tables,
            with_compute_budget=with_compute_budget,
            extra_signers=extra_signers,
        )
        return self.confirm(self.submit(tx))

    def _fetch_logs(self, signature: str) -> List[str]:
        try:
            tx = self.rpc.get_transaction(signature)
        except RPCError as exc:
            logger.warning("Could not fetch logs for failed transaction %s: %s", signature, exc)
            return []
        logs = ((tx or {}).get("meta") or {}).get("logMessages") or []
        for line in logs:
            logger.error("  %s", line)
        return list(logs)
