from __future__ import annotations

import base64
from types import SimpleNamespace

import pytest
import requests
from solders.keypair import Keypair

from cswap.decrypt import (
    DECRYPT_FAILED,
    AttestedDecryptClient,
    BackoffPolicy,
    BalanceDecryptor,
    DecryptNotIndexedError,
    DecryptServiceError,
)
from cswap.signing import MessageSigner, canonical_message, verify_signature


class ScriptedService:
    """Decrypt service double replaying one outcome per call."""

    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[list[str]] = []

    def decrypt(self, handles, signer):
        self.requests.append(list(handles))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_decryptor(outcomes, max_attempts: int = 5):
    sleep = RecordingSleep()
    service = ScriptedService(outcomes)
    policy = BackoffPolicy(base_delay=5.0, increment=3.0, max_attempts=max_attempts, sleep=sleep)
    decryptor = BalanceDecryptor(service, MessageSigner.from_keypair(Keypair()), policy)
    return decryptor, service, sleep


def test_backoff_delays_grow_linearly() -> None:
    policy = BackoffPolicy(base_delay=5.0, increment=3.0, max_attempts=5)

    assert policy.delays() == [8.0, 11.0, 14.0, 17.0, 20.0]


def test_backoff_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(max_attempts=0)


def test_not_indexed_errors_are_retried_until_success() -> None:
    decryptor, service, sleep = make_decryptor(
        [DecryptNotIndexedError("No ciphertext found"), DecryptNotIndexedError("No ciphertext found"), ["1000"]]
    )

    assert decryptor.decrypt_with_retry(123) == "1000"
    assert sleep.delays == [8.0, 11.0, 14.0]
    assert service.requests == [["123"]] * 3


def test_retry_budget_exhaustion_returns_sentinel() -> None:
    decryptor, service, sleep = make_decryptor([DecryptNotIndexedError("No ciphertext")] * 5)

    assert decryptor.decrypt_with_retry(1) == DECRYPT_FAILED
    assert len(service.requests) == 5
    assert sleep.delays == [8.0, 11.0, 14.0, 17.0, 20.0]


def test_terminal_errors_abort_without_retry() -> None:
    decryptor, service, _ = make_decryptor([DecryptServiceError("allowance missing"), ["never"]])

    assert decryptor.decrypt_with_retry(1) == DECRYPT_FAILED
    assert len(service.requests) == 1


def test_decrypt_many_preserves_order_and_fails_together() -> None:
    decryptor, _, _ = make_decryptor([["5", "6"]])
    assert decryptor.decrypt_many([10, 11]) == ["5", "6"]

    failing, _, _ = make_decryptor([DecryptServiceError("boom")])
    assert failing.decrypt_many([10, 11]) == [DECRYPT_FAILED, DECRYPT_FAILED]
    assert failing.decrypt_many([]) == []


class StubSession:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.posts: list[dict] = []

    def post(self, url, json=None, timeout=None):
        self.posts.append(json)
        if self.exc is not None:
            raise self.exc
        return self.response


def fake_response(status_code: int, body) -> SimpleNamespace:
    def _json():
        if body is None:
            raise ValueError("no json")
        return body

    return SimpleNamespace(status_code=status_code, json=_json, text=str(body))


def test_attested_client_signs_request_and_returns_plaintexts() -> None:
    keypair = Keypair()
    signer = MessageSigner.from_keypair(keypair)
    session = StubSession(fake_response(200, {"plaintexts": ["42", None]}))
    client = AttestedDecryptClient("https://decrypt.example", session=session)  # type: ignore[arg-type]

    assert client.decrypt(["7", "8"], signer) == ["42", "0"]

    payload = session.posts[0]
    assert payload["message"]["address"] == str(keypair.pubkey())
    assert payload["message"]["handles"] == ["7", "8"]
    verify_signature(keypair.pubkey(), canonical_message(payload["message"]), base64.b64decode(payload["signature"]))


@pytest.mark.parametrize(
    "response, error_type",
    [
        (fake_response(400, {"error": "No ciphertext for handle"}), DecryptNotIndexedError),
        (fake_response(200, {"error": {"message": "handle not yet indexed"}}), DecryptNotIndexedError),
        (fake_response(403, {"error": "address lacks allowance"}), DecryptServiceError),
        (fake_response(500, None), DecryptServiceError),
        (fake_response(200, {"plaintexts": ["1"]}), DecryptServiceError),
    ],
)
def test_attested_client_classifies_errors(response, error_type) -> None:
    client = AttestedDecryptClient("https://decrypt.example", session=StubSession(response))  # type: ignore[arg-type]

    with pytest.raises(error_type):
        client.decrypt(["1", "2"], MessageSigner.from_keypair(Keypair()))


def test_attested_client_wraps_transport_failures() -> None:
    session = StubSession(exc=requests.ConnectionError("refused"))
    client = AttestedDecryptClient("https://decrypt.example", session=session)  # type: ignore[arg-type]

    with pytest.raises(DecryptServiceError) as excinfo:
        client.decrypt(["1"], MessageSigner.from_keypair(Keypair()))

    assert not isinstance(excinfo.value, DecryptNotIndexedError)
