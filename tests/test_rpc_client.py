import base64
import json
from types import SimpleNamespace

import pytest
import requests

from cswap.rpc_client import (
    IndexerRPCClient,
    RPCError,
    RPCTransportError,
    SolanaRPCClient,
    decode_account_data,
    format_rpc_hint,
)


def fake_response(body, status_code: int = 200):
    def _json():
        if isinstance(body, Exception):
            raise body
        return body

    def _raise_for_status():
        if status_code >= 400:
            raise requests.HTTPError(f"{status_code} error")

    return SimpleNamespace(
        ok=status_code < 400,
        status_code=status_code,
        url="https://rpc.example",
        text=str(body),
        json=_json,
        raise_for_status=_raise_for_status,
    )


class StubSession:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.payloads: list[dict] = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.payloads.append(json.loads(data))
        if self.exc is not None:
            raise self.exc
        return self.response


def test_call_returns_result_member():
    session = StubSession(fake_response({"jsonrpc": "2.0", "result": {"value": {"blockhash": "abc"}}}))
    client = SolanaRPCClient("https://rpc.example", session=session)

    assert client.get_latest_blockhash() == {"blockhash": "abc"}
    assert session.payloads[0]["method"] == "getLatestBlockhash"
    assert session.payloads[0]["params"] == [{"commitment": "confirmed"}]


def test_error_objects_raise_rpc_error_with_logs():
    error = {"code": -32002, "message": "Transaction simulation failed", "data": {"logs": ["log 1"]}}
    client = SolanaRPCClient("https://rpc.example", session=StubSession(fake_response({"error": error})))

    with pytest.raises(RPCError) as excinfo:
        client.send_transaction(b"\x00")

    assert excinfo.value.code == -32002
    assert excinfo.value.logs == ["log 1"]


def test_connection_failures_become_transport_errors():
    client = SolanaRPCClient(
        "https://rpc.example", session=StubSession(exc=requests.ConnectionError("refused"))
    )

    with pytest.raises(RPCTransportError) as excinfo:
        client.get_block_height()

    assert "CSWAP_" in str(excinfo.value)


def test_rate_limit_is_reported_with_status():
    client = SolanaRPCClient(
        "https://rpc.example", session=StubSession(fake_response({"error": "slow down"}, status_code=429))
    )

    with pytest.raises(RPCTransportError) as excinfo:
        client.get_block_height()

    assert excinfo.value.status_code == 429


def test_malformed_json_is_a_transport_error():
    client = SolanaRPCClient("https://rpc.example", session=StubSession(fake_response(ValueError("bad"))))

    with pytest.raises(RPCTransportError):
        client.get_block_height()


def test_account_data_is_decoded():
    raw = b"\x01\x02\x03"
    body = {"result": {"context": {"slot": 1}, "value": {"data": [base64.b64encode(raw).decode(), "base64"]}}}
    client = SolanaRPCClient("https://rpc.example", session=StubSession(fake_response(body)))

    assert client.get_account_data("Acct") == raw


def test_missing_account_returns_none():
    body = {"result": {"context": {"slot": 1}, "value": None}}
    client = SolanaRPCClient("https://rpc.example", session=StubSession(fake_response(body)))

    assert client.get_account_data("Acct") is None


def test_indexer_unwraps_context_envelope():
    body = {"result": {"context": {"slot": 3}, "value": {"compressedProof": None, "accounts": []}}}
    session = StubSession(fake_response(body))
    client = IndexerRPCClient("https://indexer.example", session=session)

    assert client.get_validity_proof_v2(["hash"]) == {"compressedProof": None, "accounts": []}
    assert session.payloads[0]["params"] == {"hashes": ["hash"], "newAddressesWithTrees": []}


def test_compressed_account_lookup_requires_a_key():
    client = IndexerRPCClient("https://indexer.example", session=StubSession())

    with pytest.raises(ValueError):
        client.get_compressed_account()


def test_accounts_by_owner_normalizes_list_results():
    body = {"result": [{"hash": "h"}]}
    client = IndexerRPCClient("https://indexer.example", session=StubSession(fake_response(body)))

    assert client.get_compressed_accounts_by_owner("Owner") == {"items": [{"hash": "h"}], "cursor": None}


@pytest.mark.parametrize(
    "error, fragment",
    [
        (RPCError(-32002, "Blockhash not found"), "blockhash expired"),
        ({"code": -32602, "message": "Transaction too large: 1300 > 1232"}, "lookup table"),
        ({"code": 429, "message": "Too Many Requests"}, "rate limiting"),
        (RPCError(-32002, "Transaction simulation failed: custom program error: 0x1770"), "skip_preflight"),
    ],
)
def test_format_rpc_hint(error, fragment):
    assert fragment in format_rpc_hint(error)


def test_format_rpc_hint_unknown_errors():
    assert format_rpc_hint(None) is None
    assert format_rpc_hint({"code": -1, "message": "something else"}) is None


def test_decode_account_data_shapes():
    encoded = base64.b64encode(b"abc").decode()

    assert decode_account_data([encoded, "base64"]) == b"abc"
    assert decode_account_data(encoded) == b"abc"
    assert decode_account_data(None) is None
    with pytest.raises(RPCTransportError):
        decode_account_data(["xyz", "jsonParsed"])
