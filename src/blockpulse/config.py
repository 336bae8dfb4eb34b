from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .domain.errors import InvalidInputError, UnknownNetworkError

ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

FLOW_MAINNET_RPC = "https://mainnet.evm.nodes.onflow.org"
FLOW_TESTNET_RPC = "https://testnet.evm.nodes.onflow.org"


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace_var(match: re.Match) -> str:
            key = match.group(1)
            return os.environ.get(key, "")

        return ENV_PATTERN.sub(replace_var, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text()) or {}
    if not isinstance(data, dict):
        raise InvalidInputError(f"{path}: top level must be a mapping")
    return _expand_env(data)


@dataclass(frozen=True)
class NetworkSettings:
    name: str
    rpc_url: str
    chain_id: Optional[int] = None
    db_path: Optional[str] = None
    index_dir: Optional[str] = None
    timeout_s: float = 20.0
    max_attempts: int = 3
    retry_delay_s: float = 0.5
    max_connections: int = 64


@dataclass(frozen=True)
class IngestSettings:
    tx_concurrency: int = 16
    tick_timeout_s: float = 30.0
    poll_interval_s: float = 1.0
    with_receipts: bool = False


@dataclass(frozen=True)
class ScannerSettings:
    batch_size: int = 20
    max_blocks: int = 1000
    max_results: int = 25
    batch_delay_s: float = 0.25


@dataclass(frozen=True)
class CacheSettings:
    backend: str = "memory"             # memory | redis | none
    redis_url: str = "redis://localhost:6379/0"
    max_entries: int = 10_000
    deep_threshold: int = 12
    long_ttl_s: float = 3_600
    short_ttl_s: float = 60


@dataclass(frozen=True)
class AnalyticsSettings:
    target_points: int = 15
    max_rpc_blocks: int = 1000
    blocks_per_second: float = 1.0
    probe_ttl_s: float = 10.0
    report_ttl_s: float = 30.0


def default_networks() -> Dict[str, NetworkSettings]:
    return {
        "mainnet": NetworkSettings(
            "mainnet", os.environ.get("FLOW_EVM_RPC_URL") or FLOW_MAINNET_RPC, 747,
            db_path="data/mainnet.sqlite", index_dir="data/export/mainnet",
        ),
        "testnet": NetworkSettings(
            "testnet", os.environ.get("FLOW_EVM_TESTNET_RPC_URL") or FLOW_TESTNET_RPC, 545,
            db_path="data/testnet.sqlite", index_dir="data/export/testnet",
        ),
    }


@dataclass(frozen=True)
class Settings:
    networks: Dict[str, NetworkSettings] = field(default_factory=default_networks)
    default_network: str = "mainnet"
    ingest: IngestSettings = IngestSettings()
    scanner: ScannerSettings = ScannerSettings()
    cache: CacheSettings = CacheSettings()
    analytics: AnalyticsSettings = AnalyticsSettings()
    log_level: str = "INFO"

    def network(self, name: Optional[str] = None) -> NetworkSettings:
        key = name or self.default_network
        try:
            return self.networks[key]
        except KeyError:
            raise UnknownNetworkError(f"unknown network {key!r}; configured: {', '.join(self.networks)}") from None


def _coerce(default: Any, value: Any, where: str) -> Any:
    if value is None or isinstance(default, str) or default is None:
        return value
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{where}: cannot use {value!r}") from None
    return value


def _merge(base: Any, data: Optional[Dict[str, Any]], where: str) -> Any:
    if not data:
        return base
    if not isinstance(data, dict):
        raise InvalidInputError(f"{where}: expected a mapping")
    known = {f.name for f in fields(base)}
    unknown = set(data) - known
    if unknown:
        raise InvalidInputError(f"{where}: unknown keys {sorted(unknown)}")
    changes = {k: _coerce(getattr(base, k), v, f"{where}.{k}") for k, v in data.items() if v not in (None, "")}
    return replace(base, **changes)


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    s = Settings()
    networks = dict(s.networks)
    for name, raw in (data.get("networks") or {}).items():
        base = networks.get(name) or NetworkSettings(name, "")
        net = _merge(base, {**(raw or {}), "name": name}, f"networks.{name}")
        if not net.rpc_url:
            raise InvalidInputError(f"networks.{name}: rpc_url is required")
        networks[name] = net
    unknown = set(data) - {"networks", "default_network", "ingest", "scanner", "cache", "analytics", "log_level"}
    if unknown:
        raise InvalidInputError(f"unknown config sections {sorted(unknown)}")
    s = Settings(
        networks=networks,
        default_network=data.get("default_network") or s.default_network,
        ingest=_merge(s.ingest, data.get("ingest"), "ingest"),
        scanner=_merge(s.scanner, data.get("scanner"), "scanner"),
        cache=_merge(s.cache, data.get("cache"), "cache"),
        analytics=_merge(s.analytics, data.get("analytics"), "analytics"),
        log_level=str(data.get("log_level") or s.log_level).upper(),
    )
    if s.cache.backend not in ("memory", "redis", "none"):
        raise InvalidInputError(f"cache.backend must be memory, redis or none, got {s.cache.backend!r}")
    s.network()
    return s


def load_settings(path: Optional[str] = None, *, env_file: Optional[str] = None) -> Settings:
    """
    Settings from a YAML file (path, or $BLOCKPULSE_CONFIG), with ${VAR}
    expansion after loading .env. Without a file: Flow EVM mainnet/testnet.
    """
    load_dotenv(env_file)
    path = path or os.environ.get("BLOCKPULSE_CONFIG")
    return settings_from_dict(load_yaml(path) if path else {})
