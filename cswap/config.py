"""Shared configuration loader for the confidential swap client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml
from solders.pubkey import Pubkey


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".cswap.yaml"

DEFAULT_SWAP_PROGRAM_ID = "4b8jCufu7b4WKXdxFRQHWSks4QdskW62qF7tApSNXuZD"
DEFAULT_INCO_LIGHTNING_PROGRAM_ID = "5sjEbPiqgZrYwR31ahR6Uk9wf5awoX61YGg7jExQSwaj"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"
HELIUS_DEVNET_URL_TEMPLATE = "https://devnet.helius-rpc.com/?api-key={api_key}"


class ProtocolVersion(str, Enum):
    """Compressed-state protocol generation spoken to the indexer and programs."""

    V1 = "v1"
    V2 = "v2"


@dataclass
class ProgramIds:
    """On-chain program identities the client builds instructions against."""

    swap_program: Pubkey = field(default_factory=lambda: Pubkey.from_string(DEFAULT_SWAP_PROGRAM_ID))
    inco_lightning_program: Pubkey = field(
        default_factory=lambda: Pubkey.from_string(DEFAULT_INCO_LIGHTNING_PROGRAM_ID)
    )


@dataclass
class PoolConfig:
    """Addresses that identify one deployed confidential pool."""

    mint_a: Pubkey | None = None
    mint_b: Pubkey | None = None
    pool_address: Pubkey | None = None
    address_tree: Pubkey | None = None
    lookup_table: Pubkey | None = None
    fee_bps: int = 30


@dataclass
class SwapConfig:
    """Configuration container for the ledger, indexer and decryption endpoints."""

    rpc_url: str = DEFAULT_RPC_URL
    indexer_url: str | None = None
    decrypt_url: str | None = None
    commitment: str = "confirmed"
    protocol_version: ProtocolVersion = ProtocolVersion.V2
    compute_unit_limit: int = 1_400_000
    compute_unit_price: int = 100_000
    skip_preflight: bool = True
    request_timeout: float = 30.0
    decrypt_base_delay: float = 5.0
    decrypt_delay_increment: float = 3.0
    decrypt_max_attempts: int = 5
    confirm_poll_interval: float = 1.0
    confirm_max_attempts: int = 60
    programs: ProgramIds = field(default_factory=ProgramIds)
    pool: PoolConfig = field(default_factory=PoolConfig)

    @property
    def resolved_indexer_url(self) -> str:
        return self.indexer_url or self.rpc_url


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _section(file_config: Mapping[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    return None


def _coerce_int(raw: Any, *, name: str, source: str) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc


def _coerce_float(raw: Any, *, name: str, source: str) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} in {source}: {raw}") from exc


def _coerce_pubkey(raw: Any, *, name: str, source: str) -> Pubkey | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, Pubkey):
        return raw
    try:
        return Pubkey.from_string(str(raw))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid {name} pubkey in {source}: {raw}") from exc


def _coerce_protocol_version(raw: Any, *, source: str) -> ProtocolVersion | None:
    if raw is None:
        return None
    if isinstance(raw, ProtocolVersion):
        return raw
    try:
        return ProtocolVersion(str(raw).strip().lower())
    except ValueError as exc:
        raise ConfigurationError(f"Unsupported protocol_version in {source}: {raw}") from exc


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _validate_url(raw: str | None, *, name: str) -> str | None:
    if not raw:
        return None
    parsed = urlparse(raw)
    if not parsed.scheme or not parsed.hostname:
        raise ConfigurationError(f"Invalid {name} URL: {raw}")
    return raw


def _helius_url(env_map: Mapping[str, str]) -> str | None:
    explicit = env_map.get("HELIUS_DEVNET_RPC_URL")
    if explicit:
        return explicit
    api_key = env_map.get("HELIUS_DEVNET_API_KEY")
    if api_key:
        return HELIUS_DEVNET_URL_TEMPLATE.format(api_key=api_key)
    return None


def load_swap_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> SwapConfig:
    """Load client configuration from overrides, environment variables and optional YAML.

    Precedence is ``overrides`` > ``CSWAP_*`` environment variables > the
    ``rpc``/``programs``/``pool``/``retry`` sections of the YAML file >
    built-in defaults. ``HELIUS_DEVNET_RPC_URL``/``HELIUS_DEVNET_API_KEY`` sit
    between the YAML ``rpc.url`` and the default ledger endpoint.
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None
    path = Path(config_path).expanduser() if config_path is not None else DEFAULT_CONFIG_PATH

    file_config = _load_config_file(path, required=explicit_path)
    rpc_section = _section(file_config, "rpc", path)
    program_section = _section(file_config, "programs", path)
    pool_section = _section(file_config, "pool", path)
    retry_section = _section(file_config, "retry", path)
    tx_section = _section(file_config, "transaction", path)

    override_map = dict(overrides or {})
    defaults = SwapConfig()

    rpc_url = _validate_url(
        _first_value(
            override_map.get("rpc_url"),
            env_map.get("CSWAP_RPC_URL"),
            rpc_section.get("url"),
            _helius_url(env_map),
            defaults.rpc_url,
        ),
        name="rpc",
    )
    indexer_url = _validate_url(
        _first_value(
            override_map.get("indexer_url"),
            env_map.get("CSWAP_INDEXER_URL"),
            rpc_section.get("indexer_url"),
        ),
        name="indexer",
    )
    decrypt_url = _validate_url(
        _first_value(
            override_map.get("decrypt_url"),
            env_map.get("CSWAP_DECRYPT_URL"),
            rpc_section.get("decrypt_url"),
        ),
        name="decrypt",
    )

    protocol_version = _first_value(
        _coerce_protocol_version(override_map.get("protocol_version"), source="overrides"),
        _coerce_protocol_version(env_map.get("CSWAP_PROTOCOL_VERSION"), source="environment"),
        _coerce_protocol_version(rpc_section.get("protocol_version"), source=str(path)),
        defaults.protocol_version,
    )

    skip_preflight = _first_value(
        _coerce_bool(override_map.get("skip_preflight")),
        _coerce_bool(env_map.get("CSWAP_SKIP_PREFLIGHT")),
        _coerce_bool(tx_section.get("skip_preflight")),
        defaults.skip_preflight,
    )

    def _int_setting(key: str, env_key: str, section: Mapping[str, Any], default: int) -> int:
        return _first_value(
            _coerce_int(override_map.get(key), name=key, source="overrides"),
            _coerce_int(env_map.get(env_key), name=key, source="environment"),
            _coerce_int(section.get(key), name=key, source=str(path)),
            default,
        )

    def _float_setting(key: str, env_key: str, section: Mapping[str, Any], default: float) -> float:
        return _first_value(
            _coerce_float(override_map.get(key), name=key, source="overrides"),
            _coerce_float(env_map.get(env_key), name=key, source="environment"),
            _coerce_float(section.get(key), name=key, source=str(path)),
            default,
        )

    def _pubkey_setting(key: str, env_key: str, section: Mapping[str, Any]) -> Pubkey | None:
        return _first_value(
            _coerce_pubkey(override_map.get(key), name=key, source="overrides"),
            _coerce_pubkey(env_map.get(env_key), name=key, source="environment"),
            _coerce_pubkey(section.get(key), name=key, source=str(path)),
        )

    programs = ProgramIds(
        swap_program=_first_value(
            _pubkey_setting("swap_program", "CSWAP_SWAP_PROGRAM", program_section),
            defaults.programs.swap_program,
        ),
        inco_lightning_program=_first_value(
            _pubkey_setting("inco_lightning_program", "CSWAP_INCO_LIGHTNING_PROGRAM", program_section),
            defaults.programs.inco_lightning_program,
        ),
    )

    fee_bps = _int_setting("fee_bps", "CSWAP_FEE_BPS", pool_section, defaults.pool.fee_bps)
    if not 0 <= fee_bps < 10_000:
        raise ConfigurationError(f"fee_bps must be within [0, 10000): {fee_bps}")

    pool = PoolConfig(
        mint_a=_pubkey_setting("mint_a", "CSWAP_MINT_A", pool_section),
        mint_b=_pubkey_setting("mint_b", "CSWAP_MINT_B", pool_section),
        pool_address=_pubkey_setting("pool_address", "CSWAP_POOL_ADDRESS", pool_section),
        address_tree=_pubkey_setting("address_tree", "CSWAP_ADDRESS_TREE", pool_section),
        lookup_table=_pubkey_setting("lookup_table", "CSWAP_LOOKUP_TABLE", pool_section),
        fee_bps=fee_bps,
    )

    decrypt_max_attempts = _int_setting(
        "decrypt_max_attempts", "CSWAP_DECRYPT_MAX_ATTEMPTS", retry_section, defaults.decrypt_max_attempts
    )
    if decrypt_max_attempts < 1:
        raise ConfigurationError("decrypt_max_attempts must be at least 1")

    return SwapConfig(
        rpc_url=rpc_url,
        indexer_url=indexer_url,
        decrypt_url=decrypt_url,
        commitment=_first_value(
            override_map.get("commitment"),
            env_map.get("CSWAP_COMMITMENT"),
            rpc_section.get("commitment"),
            defaults.commitment,
        ),
        protocol_version=protocol_version,
        compute_unit_limit=_int_setting(
            "compute_unit_limit", "CSWAP_COMPUTE_UNIT_LIMIT", tx_section, defaults.compute_unit_limit
        ),
        compute_unit_price=_int_setting(
            "compute_unit_price", "CSWAP_COMPUTE_UNIT_PRICE", tx_section, defaults.compute_unit_price
        ),
        skip_preflight=bool(skip_preflight),
        request_timeout=_float_setting(
            "request_timeout", "CSWAP_REQUEST_TIMEOUT", rpc_section, defaults.request_timeout
        ),
        decrypt_base_delay=_float_setting(
            "decrypt_base_delay", "CSWAP_DECRYPT_BASE_DELAY", retry_section, defaults.decrypt_base_delay
        ),
        decrypt_delay_increment=_float_setting(
            "decrypt_delay_increment",
            "CSWAP_DECRYPT_DELAY_INCREMENT",
            retry_section,
            defaults.decrypt_delay_increment,
        ),
        decrypt_max_attempts=decrypt_max_attempts,
        confirm_poll_interval=_float_setting(
            "confirm_poll_interval", "CSWAP_CONFIRM_POLL_INTERVAL", retry_section, defaults.confirm_poll_interval
        ),
        confirm_max_attempts=_int_setting(
            "confirm_max_attempts", "CSWAP_CONFIRM_MAX_ATTEMPTS", retry_section, defaults.confirm_max_attempts
        ),
        programs=programs,
        pool=pool,
    )
