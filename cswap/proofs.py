"""Validity-proof resolution against the compressed-state indexer.

The indexer exposes several proof endpoints whose responses disagree on
shape, and whose ``rootIndex`` of ``0`` may mean either "root zero" or "not
resolved". ``ProofResolver`` asks the primary batched endpoint first and
walks the fallback endpoints in a fixed order while the answer is still the
sentinel, then merges every reading with a fixed field precedence.

Which fallbacks are still reachable on current indexer versions is unknown,
so the full chain is kept.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from solders.pubkey import Pubkey

from .config import ProtocolVersion
from .parsing import dig, first_parsed, parse_bool, parse_int
from .rpc_client import IndexerRPCClient, RPCError, RPCTransportError

logger = logging.getLogger(__name__)

ROOT_INDEX_SENTINEL = 0

BATCH = "batch"
MULTI = "multi"
PER_ACCOUNT = "per_account"
LEGACY = "legacy"

# Order in which endpoints are queried.
QUERY_ORDER = (BATCH, MULTI, PER_ACCOUNT, LEGACY)
# Order in which parsed fields win when several endpoints answered.
FIELD_PRECEDENCE = (PER_ACCOUNT, BATCH, MULTI, LEGACY)


class ProofUnavailable(RuntimeError):
    """Raised when no endpoint yields a usable proof or prove-by-index flag."""

    def __init__(self, target: str, attempted: Sequence[str]) -> None:
        super().__init__(
            f"No usable validity proof for {target}; queried endpoints: {', '.join(attempted) or 'none'}"
        )
        self.target = target
        self.attempted = list(attempted)


@dataclass(frozen=True)
class CompressedProof:
    """Groth16 proof points as the programs serialize them."""

    a: bytes
    b: bytes
    c: bytes

    def __post_init__(self) -> None:
        if len(self.a) != 32 or len(self.b) != 64 or len(self.c) != 32:
            raise ValueError(
                f"Compressed proof has wrong point sizes a={len(self.a)} b={len(self.b)} c={len(self.c)}"
            )


@dataclass(frozen=True)
class ValidityProof:
    """Authorization for one compressed-state transition.

    Exactly one of ``proof`` or ``prove_by_index`` carries the authorization.
    """

    proof: Optional[CompressedProof]
    root_index: int
    prove_by_index: bool = False
    leaf_index: Optional[int] = None
    sources: tuple[str, ...] = ()

    @property
    def is_usable(self) -> bool:
        return self.prove_by_index or self.proof is not None

    def validate(self) -> "ValidityProof":
        if not self.is_usable:
            raise ProofUnavailable("validity proof", self.sources)
        if self.prove_by_index and self.proof is not None:
            raise ValueError("A prove-by-index validity proof must not carry a compressed proof")
        return self


@dataclass(frozen=True)
class CompressedAccountRef:
    """A record inside a Merkleized state tree, as served by the indexer."""

    hash: str
    address: Optional[str]
    tree: Pubkey
    queue: Pubkey
    leaf_index: int
    data: bytes = b""
    discriminator: bytes = b""

    @classmethod
    def from_indexer(cls, item: Mapping[str, Any]) -> "CompressedAccountRef":
        """Build a reference from any of the compressed-account response shapes."""

        account_hash = item.get("hash")
        if not account_hash:
            raise ValueError("Compressed account response is missing its hash")
        tree = first_parsed(
            (item.get("tree"), dig(item, "merkleContext", "tree"), dig(item, "treeInfo", "tree")),
            _parse_pubkey,
        )
        queue = first_parsed(
            (item.get("queue"), dig(item, "merkleContext", "queue"), dig(item, "treeInfo", "queue")),
            _parse_pubkey,
        )
        if tree is None or queue is None:
            raise ValueError(f"Compressed account {account_hash} is missing its tree or queue")
        leaf_index = parse_int(item.get("leafIndex"))
        data_field = item.get("data")
        if not isinstance(data_field, Mapping):
            data_field = {}
        return cls(
            hash=str(account_hash),
            address=str(item["address"]) if item.get("address") else None,
            tree=tree,
            queue=queue,
            leaf_index=leaf_index if leaf_index is not None else 0,
            data=_decode_bytes(data_field.get("data")) or b"",
            discriminator=_discriminator_bytes(data_field.get("discriminator")),
        )


@dataclass
class EndpointReading:
    """Normalized fields one endpoint produced for the target account."""

    name: str
    proof: Optional[CompressedProof] = None
    root_index: Optional[int] = None
    prove_by_index: Optional[bool] = None
    leaf_index: Optional[int] = None

    @property
    def resolved(self) -> bool:
        has_root = self.root_index is not None and self.root_index != ROOT_INDEX_SENTINEL
        return has_root or self.prove_by_index is True


def _parse_pubkey(value: Any) -> Optional[Pubkey]:
    if isinstance(value, Pubkey):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return Pubkey.from_string(value)
    except (TypeError, ValueError):
        return None


def _decode_bytes(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        try:
            return bytes(value)
        except (TypeError, ValueError):
            return None
    if isinstance(value, str):
        if value.startswith("0x"):
            try:
                return bytes.fromhex(value[2:])
            except ValueError:
                return None
        try:
            return base64.b64decode(value, validate=True)
        except ValueError:
            return None
    return None


def _discriminator_bytes(value: Any) -> bytes:
    decoded = _decode_bytes(value)
    if decoded is not None:
        return decoded
    as_int = parse_int(value)
    if as_int is None or as_int < 0:
        return b""
    return as_int.to_bytes(8, "little")


def parse_compressed_proof(value: Any) -> Optional[CompressedProof]:
    """Return a :class:`CompressedProof` from a response fragment, or ``None``."""

    if not isinstance(value, Mapping):
        return None
    a, b, c = (_decode_bytes(value.get(key)) for key in ("a", "b", "c"))
    if a is None or b is None or c is None:
        return None
    try:
        return CompressedProof(a=a, b=b, c=c)
    except ValueError:
        logger.warning("Ignoring compressed proof with unexpected point sizes")
        return None


def _root_fields(value: Any) -> tuple[Any, Any]:
    """Split a ``rootIndex`` member that may be a scalar or ``{rootIndex, proveByIndex}``."""

    if isinstance(value, Mapping) and "rootIndex" in value:
        return value.get("rootIndex"), value.get("proveByIndex")
    return value, None


def _match_entry(entries: Any, account_hash: Optional[str], position: int = 0) -> Any:
    if isinstance(entries, Mapping):
        return entries
    if not isinstance(entries, Sequence) or isinstance(entries, (str, bytes)) or not entries:
        return None
    if account_hash is not None:
        for entry in entries:
            if isinstance(entry, Mapping) and str(entry.get("hash")) == account_hash:
                return entry
    return entries[position] if position < len(entries) else None


def _reading_from_entry(name: str, entry: Any, proof: Optional[CompressedProof] = None) -> EndpointReading:
    root_raw, prove_raw = _root_fields(dig(entry, "rootIndex"))
    return EndpointReading(
        name=name,
        proof=proof,
        root_index=parse_int(root_raw),
        prove_by_index=first_parsed((prove_raw, dig(entry, "proveByIndex")), parse_bool),
        leaf_index=parse_int(dig(entry, "leafIndex")),
    )


def read_batch_response(value: Any, account_hash: Optional[str], *, address: bool = False) -> EndpointReading:
    proof = parse_compressed_proof(dig(value, "compressedProof"))
    entries = dig(value, "addresses" if address else "accounts")
    entry = _match_entry(entries, None if address else account_hash)
    reading = _reading_from_entry(BATCH, entry, proof)
    if reading.root_index is None or reading.prove_by_index is None:
        root_raw, prove_raw = _root_fields(dig(value, "rootIndices", 0))
        if reading.root_index is None:
            reading.root_index = parse_int(root_raw)
        if reading.prove_by_index is None:
            reading.prove_by_index = parse_bool(prove_raw)
    return reading


def read_legacy_response(value: Any, account_hash: Optional[str], *, address: bool = False) -> EndpointReading:
    proof = parse_compressed_proof(dig(value, "compressedProof"))
    position = 0
    if account_hash is not None and not address:
        leaves = dig(value, "leaves")
        if isinstance(leaves, list) and account_hash in leaves:
            position = leaves.index(account_hash)
    root_raw, prove_raw = _root_fields(dig(value, "rootIndices", position))
    return EndpointReading(
        name=LEGACY,
        proof=proof,
        root_index=parse_int(root_raw),
        prove_by_index=first_parsed((prove_raw, dig(value, "proveByIndex")), parse_bool),
        leaf_index=parse_int(dig(value, "leafIndices", position)),
    )


def read_multi_response(value: Any, account_hash: Optional[str]) -> EndpointReading:
    return _reading_from_entry(MULTI, _match_entry(value, account_hash))


def read_per_account_response(value: Any, account_hash: Optional[str]) -> EndpointReading:
    return _reading_from_entry(PER_ACCOUNT, value if isinstance(value, Mapping) else None)


@dataclass
class _Endpoint:
    name: str
    fetch: Callable[[], EndpointReading]


@dataclass
class ProofResolution:
    """Every reading gathered while resolving one target, in query order."""

    target: str
    readings: Dict[str, EndpointReading] = field(default_factory=dict)

    @property
    def attempted(self) -> List[str]:
        return list(self.readings)


class ProofResolver:
    """Obtain validity proofs through the primary endpoint and its fallbacks."""

    def __init__(
        self,
        indexer: IndexerRPCClient,
        protocol_version: ProtocolVersion = ProtocolVersion.V2,
    ) -> None:
        self.indexer = indexer
        self.protocol_version = protocol_version

    def resolve(self, ref: CompressedAccountRef) -> ValidityProof:
        """Return a validity proof for the existing compressed account ``ref``."""

        account_hash = ref.hash
        proof_input = {"hash": account_hash, "tree": str(ref.tree), "queue": str(ref.queue)}
        endpoints = {
            BATCH: _Endpoint(BATCH, lambda: self._fetch_batch([account_hash], [], account_hash)),
            MULTI: _Endpoint(
                MULTI,
                lambda: read_multi_response(
                    self.indexer.get_multiple_compressed_account_proofs([account_hash]), account_hash
                ),
            ),
            PER_ACCOUNT: _Endpoint(
                PER_ACCOUNT,
                lambda: read_per_account_response(
                    self.indexer.get_compressed_account_proof(account_hash), account_hash
                ),
            ),
            LEGACY: _Endpoint(
                LEGACY,
                lambda: read_legacy_response(self.indexer.get_validity_proof([account_hash], []), account_hash),
            ),
        }
        logger.debug("Resolving validity proof for %s", proof_input)
        resolution = self._walk(account_hash, endpoints)
        return self._merge(resolution, default_leaf_index=ref.leaf_index)

    def resolve_new_address(self, address: Pubkey | str, tree: Pubkey | str) -> ValidityProof:
        """Return a non-inclusion proof for creating ``address`` in ``tree``."""

        target = str(address)
        new_addresses = [{"address": target, "tree": str(tree)}]
        endpoints = {
            BATCH: _Endpoint(BATCH, lambda: self._fetch_batch([], new_addresses, None, address=True)),
            LEGACY: _Endpoint(
                LEGACY,
                lambda: read_legacy_response(
                    self.indexer.get_validity_proof([], new_addresses), None, address=True
                ),
            ),
        }
        resolution = self._walk(target, endpoints)
        proof = self._merge(resolution, default_leaf_index=None)
        if proof.proof is None:
            # New addresses cannot be proven by index.
            raise ProofUnavailable(target, resolution.attempted)
        return proof

    def _fetch_batch(
        self,
        hashes: Sequence[str],
        new_addresses: Sequence[Dict[str, str]],
        account_hash: Optional[str],
        *,
        address: bool = False,
    ) -> EndpointReading:
        if self.protocol_version is ProtocolVersion.V2:
            value = self.indexer.get_validity_proof_v2(hashes, new_addresses)
            return read_batch_response(value, account_hash, address=address)
        value = self.indexer.get_validity_proof(hashes, new_addresses)
        reading = read_legacy_response(value, account_hash, address=address)
        reading.name = BATCH
        return reading

    def _walk(self, target: str, endpoints: Mapping[str, _Endpoint]) -> ProofResolution:
        resolution = ProofResolution(target=target)
        for name in QUERY_ORDER:
            endpoint = endpoints.get(name)
            if endpoint is None:
                continue
            if name == LEGACY and self.protocol_version is ProtocolVersion.V1:
                # V1 already used the legacy endpoint as its primary.
                continue
            try:
                reading = endpoint.fetch()
            except (RPCError, RPCTransportError) as exc:
                logger.warning("Proof endpoint %s failed for %s: %s", name, target, exc)
                continue
            resolution.readings[name] = reading
            logger.debug(
                "Proof endpoint %s for %s: root_index=%s prove_by_index=%s proof=%s",
                name,
                target,
                reading.root_index,
                reading.prove_by_index,
                reading.proof is not None,
            )
            if reading.resolved:
                break
        return resolution

    @staticmethod
    def _merge(resolution: ProofResolution, default_leaf_index: Optional[int]) -> ValidityProof:
        ordered = [resolution.readings[name] for name in FIELD_PRECEDENCE if name in resolution.readings]

        root_index = first_parsed(
            (reading.root_index for reading in ordered),
            lambda value: value if value is not None and value != ROOT_INDEX_SENTINEL else None,
        )
        if root_index is None:
            root_index = ROOT_INDEX_SENTINEL
        prove_by_index = first_parsed((reading.prove_by_index for reading in ordered), parse_bool) or False
        leaf_index = first_parsed((reading.leaf_index for reading in ordered), parse_int)
        if leaf_index is None:
            leaf_index = default_leaf_index
        compressed = next((reading.proof for reading in ordered if reading.proof is not None), None)

        if prove_by_index:
            proof = ValidityProof(
                proof=None,
                root_index=root_index,
                prove_by_index=True,
                leaf_index=leaf_index,
                sources=tuple(resolution.attempted),
            )
        elif compressed is not None:
            proof = ValidityProof(
                proof=compressed,
                root_index=root_index,
                prove_by_index=False,
                leaf_index=leaf_index,
                sources=tuple(resolution.attempted),
            )
        else:
            raise ProofUnavailable(resolution.target, resolution.attempted)

        logger.info(
            "Resolved validity proof for %s: root_index=%d prove_by_index=%s via %s",
            resolution.target,
            proof.root_index,
            proof.prove_by_index,
            ", ".join(resolution.attempted),
        )
        return proof


def find_compressed_account(
    indexer: IndexerRPCClient,
    owner: Pubkey,
    address: Pubkey | str,
    page_limit: int = 20,
) -> CompressedAccountRef:
    """Locate the compressed account at ``address`` owned by ``owner``.

    A direct address lookup is tried first; indexers that lag on address
    indexing are covered by paging through the owner's accounts.
    """

    target = str(address)
    try:
        direct = indexer.get_compressed_account(address=target)
    except (RPCError, RPCTransportError) as exc:
        logger.info("Direct compressed-account lookup failed for %s: %s", target, exc)
        direct = None
    if isinstance(direct, Mapping) and direct.get("hash"):
        return CompressedAccountRef.from_indexer(direct)

    cursor: Optional[str] = None
    for _ in range(page_limit):
        page = indexer.get_compressed_accounts_by_owner(str(owner), cursor=cursor)
        for item in page.get("items") or []:
            if isinstance(item, Mapping) and str(item.get("address")) == target:
                return CompressedAccountRef.from_indexer(item)
        cursor = page.get("cursor")
        if not cursor:
            break
    raise LookupError(f"Compressed account {target} owned by {owner} not found on the indexer")
