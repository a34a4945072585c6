"""Ed25519 message signing for attested-decrypt requests.

The decryption service only releases a plaintext to the address holding an
allowance for the handle, and proves the caller controls that address by
asking it to sign the request.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Mapping

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from solders.keypair import Keypair
from solders.pubkey import Pubkey

ED25519_SEED_SIZE = 32


class SigningError(RuntimeError):
    """Raised when a signing key is malformed or a signature does not verify."""


def canonical_message(payload: Mapping[str, Any]) -> bytes:
    """Serialize ``payload`` deterministically so both sides sign the same bytes."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class MessageSigner:
    """Sign request messages on behalf of ``address``."""

    address: Pubkey
    _private_key: Ed25519PrivateKey

    @classmethod
    def from_seed(cls, seed: bytes) -> "MessageSigner":
        if len(seed) != ED25519_SEED_SIZE:
            raise SigningError(f"Ed25519 seed must be {ED25519_SEED_SIZE} bytes; got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        raw_public = private_key.public_key().public_bytes_raw()
        return cls(address=Pubkey(raw_public), _private_key=private_key)

    @classmethod
    def from_keypair(cls, keypair: Keypair) -> "MessageSigner":
        signer = cls.from_seed(bytes(keypair.secret()))
        if signer.address != keypair.pubkey():
            raise SigningError("Keypair seed does not match its public key")
        return signer

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def sign_b64(self, message: bytes) -> str:
        return base64.b64encode(self.sign(message)).decode("ascii")


def verify_signature(address: Pubkey, message: bytes, signature: bytes) -> None:
    """Raise :class:`SigningError` unless ``signature`` is valid for ``address``."""

    public_key = Ed25519PublicKey.from_public_bytes(bytes(address))
    try:
        public_key.verify(signature, message)
    except InvalidSignature as exc:
        raise SigningError(f"Signature does not verify for {address}") from exc
