"""Configuration loader for the coordinator and the oracle.

Rules:
- Fail closed when config is missing or invalid.
- All relative paths in runtime.yaml are resolved relative to runtime.yaml's directory.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from oracle_core.chain.coordinator import CoordinatorSettings
from oracle_core.errors import ContractViolationError, PolicyViolationError
from oracle_core.oracle.worker import OracleSettings
from oracle_core.utils import normalize_address

CONFIG_DIR = Path(__file__).resolve().parent

_STORAGE_DRIVERS = {"memory", "sqlite"}
_SOURCES = {"secure", "hmac_drbg"}


@dataclass(frozen=True)
class ServiceConfig:
    host: str
    port: int
    auth_max_skew_seconds: int


@dataclass(frozen=True)
class StorageConfig:
    driver: str  # memory|sqlite
    sqlite_path: Path


@dataclass(frozen=True)
class OracleConfig:
    enabled: bool
    key_path: Path
    submit_url: str | None  # None -> submit to the in-process coordinator
    source: str  # secure|hmac_drbg
    value_min: int
    value_max: int
    settings: OracleSettings


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    poll_interval_seconds: float
    redrive_pending_on_start: bool


@dataclass(frozen=True)
class RuntimeConfig:
    service: ServiceConfig
    coordinator: CoordinatorSettings
    storage: StorageConfig
    oracle: OracleConfig
    scheduler: SchedulerConfig
    config_dir: Path


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise PolicyViolationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise PolicyViolationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def load_logging_config(path: Path) -> dict[str, Any]:
    return _load_yaml(path)


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    service_raw = raw.get("service", {})
    coordinator_raw = raw.get("coordinator", {})
    storage_raw = raw.get("storage", {})
    oracle_raw = raw.get("oracle", {})
    scheduler_raw = raw.get("scheduler", {})

    service = ServiceConfig(
        host=str(service_raw.get("host", "127.0.0.1")),
        port=int(service_raw.get("port", 8545)),
        auth_max_skew_seconds=int(service_raw.get("auth_max_skew_seconds", 300)),
    )

    owner_raw = coordinator_raw.get("owner")
    if not owner_raw:
        raise PolicyViolationError(f"coordinator.owner is required in {runtime_config_path}")
    try:
        owner = normalize_address(str(owner_raw))
    except ContractViolationError as e:
        raise PolicyViolationError(f"coordinator.owner is not a valid address: {owner_raw}") from e
    coordinator = CoordinatorSettings(owner=owner, open_subscriptions=bool(coordinator_raw.get("open_subscriptions", False)))

    driver = str(storage_raw.get("driver", "sqlite"))
    if driver not in _STORAGE_DRIVERS:
        raise PolicyViolationError(f"Unsupported storage.driver: {driver}")
    sqlite_path = _resolve_path(cfg_dir, str(storage_raw.get("sqlite", {}).get("path", "../state/coordinator.sqlite")))
    storage = StorageConfig(driver=driver, sqlite_path=sqlite_path)

    source = str(oracle_raw.get("source", "secure"))
    if source not in _SOURCES:
        raise PolicyViolationError(f"Unsupported oracle.source: {source}")
    value_range = oracle_raw.get("value_range", {})
    submit_url = oracle_raw.get("submit_url")
    oracle = OracleConfig(
        enabled=bool(oracle_raw.get("enabled", False)),
        key_path=_resolve_path(cfg_dir, str(oracle_raw.get("key_path", "../state/oracle_secp256k1.key"))),
        submit_url=str(submit_url) if submit_url else None,
        source=source,
        value_min=int(value_range.get("min", 0)),
        value_max=int(value_range.get("max", (1 << 256) - 1)),
        settings=OracleSettings(
            workers=int(oracle_raw.get("workers", 4)),
            submit_max_attempts=int(oracle_raw.get("submit_max_attempts", 5)),
            submit_timeout_seconds=float(oracle_raw.get("submit_timeout_seconds", 10.0)),
            source_timeout_seconds=float(oracle_raw.get("source_timeout_seconds", 5.0)),
            source_max_attempts=int(oracle_raw.get("source_max_attempts", 3)),
            backoff_base_seconds=float(oracle_raw.get("backoff_base_seconds", 0.5)),
            backoff_max_seconds=float(oracle_raw.get("backoff_max_seconds", 30.0)),
            completed_task_ttl_seconds=float(oracle_raw.get("completed_task_ttl_seconds", 600.0)),
            max_completed_tasks=int(oracle_raw.get("max_completed_tasks", 10000)),
        ),
    )
    if oracle.settings.workers < 1 or oracle.settings.submit_max_attempts < 1 or oracle.settings.source_max_attempts < 1:
        raise PolicyViolationError("oracle.workers, oracle.submit_max_attempts and oracle.source_max_attempts must be >= 1")
    if oracle.settings.completed_task_ttl_seconds < 0 or oracle.settings.max_completed_tasks < 0:
        raise PolicyViolationError("oracle.completed_task_ttl_seconds and oracle.max_completed_tasks must be >= 0")

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_raw.get("enabled", False)),
        poll_interval_seconds=float(scheduler_raw.get("poll_interval_seconds", 1.0)),
        redrive_pending_on_start=bool(scheduler_raw.get("redrive_pending_on_start", True)),
    )

    return RuntimeConfig(
        service=service,
        coordinator=coordinator,
        storage=storage,
        oracle=oracle,
        scheduler=scheduler,
        config_dir=cfg_dir,
    )


def default_config_paths() -> tuple[Path, Path]:
    # Default to the files shipped next to this module.
    return CONFIG_DIR / "runtime.yaml", CONFIG_DIR / "logging.yaml"
