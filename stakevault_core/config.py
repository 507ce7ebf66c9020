"""
TOML-based configuration for the StakeVault server.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from stakevault_core.config import load_config
    cfg = load_config("stakevault.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stakevault_core.addresses import DEFAULT_PROGRAM_ID
from stakevault_core.precision import (
    DEFAULT_APY_BPS,
    DEFAULT_REWARD_DECIMALS,
    DEFAULT_STAKE_DECIMALS,
)

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class ProgramConfig:
    """Staking program settings.

    ``reward_apy_bps`` is the yearly yield in basis points (1000 = 10 %).
    The decimals are used when the server creates its own mints on first
    run.  With ``strict_claim`` a claim with nothing accrued is rejected
    instead of returning zero.
    """
    program_id: str = DEFAULT_PROGRAM_ID
    reward_apy_bps: int = DEFAULT_APY_BPS
    stake_decimals: int = DEFAULT_STAKE_DECIMALS
    reward_decimals: int = DEFAULT_REWARD_DECIMALS
    strict_claim: bool = False


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/stakevault.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class StakeVaultConfig:
    """Top-level configuration container."""
    program: ProgramConfig = field(default_factory=ProgramConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> StakeVaultConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        STAKEVAULT_PROGRAM_ID    -> program.program_id
        STAKEVAULT_APY_BPS       -> program.reward_apy_bps
        STAKEVAULT_STRICT_CLAIM  -> program.strict_claim
        STAKEVAULT_API_HOST      -> api.host
        STAKEVAULT_API_PORT      -> api.port
        STAKEVAULT_API_KEY       -> api.api_key
        STAKEVAULT_CORS_ORIGINS  -> api.cors_origins   (comma-separated)
        STAKEVAULT_DB_PATH       -> storage.path (and enables storage)
        STAKEVAULT_LOG_LEVEL     -> logging.level
        STAKEVAULT_LOG_FMT       -> logging.format
    """
    cfg = StakeVaultConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("program", cfg.program),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("STAKEVAULT_PROGRAM_ID"):
        cfg.program.program_id = v
    if v := os.environ.get("STAKEVAULT_APY_BPS"):
        cfg.program.reward_apy_bps = int(v)
    if v := os.environ.get("STAKEVAULT_STRICT_CLAIM"):
        cfg.program.strict_claim = _env_bool(v)
    if v := os.environ.get("STAKEVAULT_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("STAKEVAULT_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("STAKEVAULT_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("STAKEVAULT_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("STAKEVAULT_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True
    if v := os.environ.get("STAKEVAULT_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("STAKEVAULT_LOG_FMT"):
        cfg.logging.format = v

    return cfg
