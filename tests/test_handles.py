from __future__ import annotations

import base64

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from cswap.handles import (
    HANDLE_MAX,
    HandleResolutionError,
    HandleResolver,
    encode_handle,
    extract_handle,
    extract_handle_from_raw,
)


def token_account_bytes(handle: int) -> bytes:
    return bytes(8) + bytes(32) + bytes(32) + handle.to_bytes(16, "little") + bytes(16)


class BigNumLike:
    def __init__(self, value: int) -> None:
        self.value = value

    def __str__(self) -> str:
        return str(self.value)


class StubRPC:
    def __init__(self, simulation: dict | None = None, account_data: bytes | None = None) -> None:
        self.simulation = simulation or {}
        self.account_data = account_data
        self.simulated: list[tuple[bytes, list[str]]] = []
        self.reads: list[tuple[str, str | None]] = []

    def get_latest_blockhash(self):
        return {"blockhash": str(Hash.default()), "lastValidBlockHeight": 100}

    def simulate_transaction(self, raw_tx, accounts=None, sig_verify=False):
        assert sig_verify is False
        self.simulated.append((raw_tx, list(accounts or [])))
        return self.simulation

    def get_account_data(self, pubkey, commitment=None):
        self.reads.append((pubkey, commitment))
        return self.account_data


def test_extract_handle_from_raw_reads_little_endian_at_offset() -> None:
    handle = 0x0102030405060708090A0B0C0D0E0F10
    assert extract_handle_from_raw(token_account_bytes(handle)) == handle


@pytest.mark.parametrize("handle", [0, 1, HANDLE_MAX])
def test_boundary_handles_round_trip_at_token_offset(handle: int) -> None:
    data = bytes(72) + encode_handle(handle)

    assert HANDLE_MAX == 2**128 - 1
    assert extract_handle_from_raw(data, 72) == handle


def test_extract_handle_from_raw_rejects_short_buffers() -> None:
    with pytest.raises(HandleResolutionError):
        extract_handle_from_raw(bytes(87))


def test_encode_handle_is_little_endian_and_range_checked() -> None:
    assert encode_handle(1) == b"\x01" + bytes(15)
    assert encode_handle(HANDLE_MAX) == b"\xff" * 16
    with pytest.raises(ValueError):
        encode_handle(HANDLE_MAX + 1)
    with pytest.raises(ValueError):
        encode_handle(-1)


@pytest.mark.parametrize(
    "value, expected",
    [
        (bytes([5, 1]), 261),
        ([7, 0, 0], 7),
        ({"_bn": "340282366920938463463374607431768211455"}, HANDLE_MAX),
        (BigNumLike(1234), 1234),
        ({"0": {"_bn": "77"}}, 77),
        ({"0": [9, 0]}, 9),
        (31337, 31337),
        ("8080", 8080),
    ],
)
def test_extract_handle_accepts_every_known_representation(value, expected) -> None:
    assert extract_handle(value) == expected


@pytest.mark.parametrize("value", [{"a": 1, "b": 2}, "not-a-number", None, bytes(17)])
def test_extract_handle_raises_instead_of_returning_zero(value) -> None:
    with pytest.raises(HandleResolutionError):
        extract_handle(value)


def test_simulate_and_read_returns_post_simulation_handles() -> None:
    payer = Keypair()
    account = Pubkey.new_unique()
    encoded = base64.b64encode(token_account_bytes(4242)).decode()
    rpc = StubRPC(simulation={"err": None, "logs": ["ok"], "accounts": [{"data": [encoded, "base64"]}]})
    ix = Instruction(Pubkey.new_unique(), b"\x00", [AccountMeta(account, False, True)])

    handles = HandleResolver(rpc).simulate_and_read([ix], payer, [account])  # type: ignore[arg-type]

    assert handles == [4242]
    assert rpc.simulated[0][1] == [str(account)]


def test_simulate_and_read_surfaces_logs_on_failure() -> None:
    rpc = StubRPC(simulation={"err": {"InstructionError": [0, "Custom"]}, "logs": ["Program failed"], "accounts": None})
    ix = Instruction(Pubkey.new_unique(), b"", [])

    with pytest.raises(HandleResolutionError) as excinfo:
        HandleResolver(rpc).simulate_and_read([ix], Keypair(), [Pubkey.new_unique()])  # type: ignore[arg-type]

    assert excinfo.value.logs == ["Program failed"]


def test_read_confirmed_uses_resolver_commitment() -> None:
    rpc = StubRPC(account_data=token_account_bytes(99))
    account = Pubkey.new_unique()

    resolver = HandleResolver(rpc, commitment="confirmed")  # type: ignore[arg-type]

    assert resolver.read_confirmed(account) == 99
    assert rpc.reads == [(str(account), "confirmed")]


def test_read_confirmed_missing_account_raises() -> None:
    with pytest.raises(HandleResolutionError):
        HandleResolver(StubRPC()).read_confirmed(Pubkey.new_unique())  # type: ignore[arg-type]
