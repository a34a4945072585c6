from __future__ import annotations

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from cswap.assembler import (
    ConfirmationTimeout,
    OnChainExecutionError,
    TransactionAssembler,
)
from cswap.config import SwapConfig
from cswap.decrypt import BackoffPolicy
from cswap.rpc_client import RPCError

COMPUTE_BUDGET_PROGRAM = Pubkey.from_string("ComputeBudget111111111111111111111111111111")


class StubRPC:
    def __init__(self, statuses=None, transaction=None, send_error: Exception | None = None) -> None:
        self.statuses = list(statuses or [])
        self.transaction = transaction
        self.send_error = send_error
        self.sent: list[tuple[bytes, bool]] = []
        self.status_polls = 0

    def get_latest_blockhash(self):
        return {"blockhash": str(Hash.default()), "lastValidBlockHeight": 10}

    def send_transaction(self, raw_tx, skip_preflight=True, max_retries=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((raw_tx, skip_preflight))
        return str(Signature.default())

    def get_signature_statuses(self, signatures):
        self.status_polls += 1
        if self.statuses:
            return [self.statuses.pop(0)]
        return [None]

    def get_transaction(self, signature):
        return self.transaction

    def simulate_transaction(self, raw_tx, accounts=None, sig_verify=False):
        return {"err": None, "logs": ["sim"], "accounts": None}


def make_assembler(rpc, max_polls: int = 3) -> tuple[TransactionAssembler, list[float]]:
    delays: list[float] = []
    assembler = TransactionAssembler(
        rpc=rpc,  # type: ignore[arg-type]
        payer=Keypair(),
        confirm_policy=BackoffPolicy(base_delay=0.5, increment=0.0, max_attempts=max_polls, sleep=delays.append),
    )
    return assembler, delays


def sample_instruction() -> Instruction:
    return Instruction(Pubkey.new_unique(), b"\x01", [AccountMeta(Pubkey.new_unique(), False, True)])


def test_compute_budget_instructions_target_compute_budget_program() -> None:
    assembler, _ = make_assembler(StubRPC())

    instructions = assembler.compute_budget_instructions()

    assert [ix.program_id for ix in instructions] == [COMPUTE_BUDGET_PROGRAM, COMPUTE_BUDGET_PROGRAM]
    assert int.from_bytes(instructions[0].data[1:5], "little") == 1_400_000


def test_assemble_produces_signed_v0_transaction_with_budget_prefix() -> None:
    assembler, _ = make_assembler(StubRPC())
    ix = sample_instruction()

    tx = assembler.assemble([ix])

    keys = tx.message.account_keys
    programs = [keys[compiled.program_id_index] for compiled in tx.message.instructions]
    assert programs == [COMPUTE_BUDGET_PROGRAM, COMPUTE_BUDGET_PROGRAM, ix.program_id]
    assert keys[0] == assembler.payer.pubkey()
    assert tx.signatures[0] != Signature.default()


def test_submit_uses_skip_preflight_and_confirms() -> None:
    rpc = StubRPC(statuses=[None, {"slot": 5, "confirmationStatus": "processed", "err": None}, {"slot": 6, "confirmationStatus": "confirmed", "err": None}])
    assembler, delays = make_assembler(rpc, max_polls=5)

    confirmed = assembler.send_and_confirm([sample_instruction()])

    assert rpc.sent[0][1] is True
    assert confirmed.slot == 6
    assert confirmed.confirmation_status == "confirmed"
    assert delays == [0.5, 0.5]


def test_on_chain_failure_carries_logs_verbatim() -> None:
    logs = ["Program log: Instruction: SwapExactIn", "Program log: AnchorError: PoolPaused"]
    rpc = StubRPC(
        statuses=[{"slot": 9, "confirmationStatus": "confirmed", "err": {"InstructionError": [2, {"Custom": 6000}]}}],
        transaction={"meta": {"logMessages": logs}},
    )
    assembler, _ = make_assembler(rpc)

    with pytest.raises(OnChainExecutionError) as excinfo:
        assembler.confirm(Signature.default())

    assert excinfo.value.logs == logs
    assert len(rpc.sent) == 0


def test_confirmation_timeout_never_resubmits() -> None:
    rpc = StubRPC()
    assembler, delays = make_assembler(rpc, max_polls=3)

    with pytest.raises(ConfirmationTimeout) as excinfo:
        assembler.send_and_confirm([sample_instruction()])

    assert excinfo.value.attempts == 3
    assert rpc.status_polls == 3
    assert len(rpc.sent) == 1
    assert delays == [0.5, 0.5]


def test_submit_propagates_rpc_errors() -> None:
    rpc = StubRPC(send_error=RPCError(-32002, "Blockhash not found"))
    assembler, _ = make_assembler(rpc)

    with pytest.raises(RPCError):
        assembler.submit(assembler.assemble([sample_instruction()]))


def test_from_config_threads_transaction_settings() -> None:
    config = SwapConfig(compute_unit_limit=500_000, compute_unit_price=7, skip_preflight=False, confirm_max_attempts=4)

    assembler = TransactionAssembler.from_config(config, StubRPC(), Keypair())  # type: ignore[arg-type]

    assert assembler.compute_unit_limit == 500_000
    assert assembler.compute_unit_price == 7
    assert assembler.skip_preflight is False
    assert assembler.confirm_policy.max_attempts == 4
