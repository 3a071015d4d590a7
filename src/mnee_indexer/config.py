"""
MNEE Commerce indexer configuration.

All settings come from environment variables (``MNEE_*`` plus the conventional
``DATABASE_URL``). Defaults target a local Hardhat node and a local PostgreSQL
database, which is how the commerce contracts are developed.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, replace
from typing import Any, Mapping

from mnee_indexer.exceptions import ConfigurationError

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CHAIN_ID = 31337
DEFAULT_DATABASE_URL = "postgresql://postgres@localhost:5432/mnee_commerce"
DEFAULT_DEPLOYMENT_FILE = os.path.join("..", "contract-addresses.json")
# Address Hardhat assigns to the commerce contract on a fresh node
DEFAULT_FALLBACK_ADDRESS = "0xe7f1725E7734CE288F8367e1Bb143E90bb3F0512"
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_RESET_THRESHOLD = 50
DEFAULT_MAX_BLOCK_RANGE = 10_000
DEFAULT_TOKEN_DECIMALS = 18
DEFAULT_RPC_TIMEOUT = 10.0


def _read(env: Mapping[str, str], name: str, default: str | None = None) -> str | None:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _read(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be an integer, got {raw!r}",
            details={"env_var": name},
        ) from exc
    if value < minimum:
        raise ConfigurationError(
            f"{name} must be >= {minimum}, got {value}",
            details={"env_var": name},
        )
    return value


def _read_fallback(env: Mapping[str, str]) -> str | None:
    raw = _read(env, "MNEE_FALLBACK_ADDRESS", DEFAULT_FALLBACK_ADDRESS)
    if raw.lower() in ("none", "off", "disabled"):
        return None
    return raw


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _read(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            details={"env_var": name},
        ) from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive", details={"env_var": name})
    return value


@dataclass(frozen=True)
class IndexerSettings:
    """Runtime settings for the indexer process."""

    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    database_url: str = DEFAULT_DATABASE_URL
    deployment_file: str = DEFAULT_DEPLOYMENT_FILE
    fallback_address: str | None = DEFAULT_FALLBACK_ADDRESS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    reset_threshold: int = DEFAULT_RESET_THRESHOLD
    max_block_range: int = DEFAULT_MAX_BLOCK_RANGE
    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    metrics_port: int | None = None
    log_level: str = "INFO"
    log_file: str | None = None
    environment: str = "development"
    db_pool_min: int = 1
    db_pool_max: int = 5

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> IndexerSettings:
        """Build settings from the process environment (or an explicit mapping)."""
        env = os.environ if env is None else env

        metrics_port = _read(env, "MNEE_METRICS_PORT")
        settings = cls(
            rpc_url=_read(env, "MNEE_RPC_URL", DEFAULT_RPC_URL),
            chain_id=_read_int(env, "MNEE_CHAIN_ID", DEFAULT_CHAIN_ID, minimum=1),
            database_url=_read(env, "DATABASE_URL", DEFAULT_DATABASE_URL),
            deployment_file=_read(env, "MNEE_DEPLOYMENT_FILE", DEFAULT_DEPLOYMENT_FILE),
            fallback_address=_read_fallback(env),
            poll_interval=_read_float(env, "MNEE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            reset_threshold=_read_int(env, "MNEE_RESET_THRESHOLD", DEFAULT_RESET_THRESHOLD),
            max_block_range=_read_int(env, "MNEE_MAX_BLOCK_RANGE", DEFAULT_MAX_BLOCK_RANGE, minimum=1),
            token_decimals=_read_int(env, "MNEE_TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS),
            rpc_timeout=_read_float(env, "MNEE_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
            metrics_port=_read_int(env, "MNEE_METRICS_PORT", 0, minimum=1) if metrics_port else None,
            log_level=(_read(env, "MNEE_LOG_LEVEL", "INFO") or "INFO").upper(),
            log_file=_read(env, "MNEE_LOG_FILE"),
            environment=_read(env, "MNEE_ENVIRONMENT", "development"),
            db_pool_min=_read_int(env, "MNEE_DB_POOL_MIN", 1, minimum=1),
            db_pool_max=_read_int(env, "MNEE_DB_POOL_MAX", 5, minimum=1),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject combinations that cannot work at runtime."""
        if "://" not in self.rpc_url:
            raise ConfigurationError(
                "rpc_url must include scheme and host, e.g. http://127.0.0.1:8545",
                details={"rpc_url": self.rpc_url},
            )
        if self.log_level not in logging.getLevelNamesMapping():
            raise ConfigurationError(f"Unknown log level {self.log_level!r}")
        if self.db_pool_min > self.db_pool_max:
            raise ConfigurationError(
                "MNEE_DB_POOL_MIN cannot exceed MNEE_DB_POOL_MAX",
                details={"min": self.db_pool_min, "max": self.db_pool_max},
            )

    def with_overrides(self, **overrides: Any) -> IndexerSettings:
        """Return a copy with non-None overrides applied (used for CLI flags)."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        if not applied:
            return self
        updated = replace(self, **applied)
        updated.validate()
        return updated

    def to_dict(self) -> dict[str, Any]:
        """Settings as a dict with the database password masked."""
        data = asdict(self)
        data["database_url"] = _mask_dsn(self.database_url)
        return data


def _mask_dsn(dsn: str) -> str:
    scheme, sep, rest = dsn.partition("://")
    if not sep or "@" not in rest:
        return dsn
    credentials, _, host = rest.rpartition("@")
    user, has_password, _ = credentials.partition(":")
    if not has_password:
        return dsn
    return f"{scheme}://{user}:***@{host}"
