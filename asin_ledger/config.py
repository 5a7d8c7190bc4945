"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``ASIN_LEDGER_*`` prefix, plus ``KEEPA_API_KEY``

Entry point: ``load_config(config_path=None) -> AppConfig``

The ingestion runner, the orchestrator, and every CLI command receive an
``AppConfig`` instance — never raw dicts or individual env var lookups
scattered through the codebase.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/asin_ledger.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class MarketApiConfig(BaseModel):
    """Third-party market-data vendor (Keepa product endpoint) settings.

    ``epoch_offset_minutes`` is the vendor's time-series epoch: a vendor
    timestamp ``t`` (minutes) maps to Unix time ``(t + offset) * 60`` seconds.
    It is vendor-versioned, so it lives here rather than in code.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.keepa.com"
    api_key: Optional[str] = None
    domain: int = 2
    batch_size: int = 10
    stats_days: int = 90
    offers: int = 20
    timeout_s: float = 30.0
    epoch_offset_minutes: int = 21_564_000

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError(f"batch_size must be in [1, 100], got {v}.")
        return v


class RateLimitConfig(BaseModel):
    """Retry, backoff, and quota-throttling parameters for the vendor client."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_fraction: float = 0.25
    throttle_threshold: int = 10
    max_throttle_wait_s: float = 60.0

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_attempts must be >= 1, got {v}.")
        return v

    @field_validator("jitter_fraction")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"jitter_fraction must be in [0.0, 1.0], got {v}.")
        return v


class IngestionConfig(BaseModel):
    """Batch ingestion cycle parameters."""

    model_config = ConfigDict(frozen=True)

    marketplace_id: int = 1
    fan_out: int = 2
    inter_batch_delay_s: float = 0.5
    cache_ttl_minutes: int = 60
    our_seller_id: Optional[str] = None
    sales_window_days: int = 30
    first_party_dir: Optional[str] = None

    @field_validator("fan_out")
    @classmethod
    def validate_fan_out(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"fan_out must be >= 1, got {v}.")
        return v


class QualityConfig(BaseModel):
    """Thresholds used by the data-quality rules."""

    model_config = ConfigDict(frozen=True)

    required_fields: list[str] = ["title"]
    stale_max_age_hours: float = 72.0
    volatility_threshold: float = 0.5


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/asin_ledger.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    It is constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    market_api: MarketApiConfig = MarketApiConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    ingestion: IngestionConfig = IngestionConfig()
    quality: QualityConfig = QualityConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    dotenv_path = root / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config explicitly."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    # Also merge local.toml if present (gitignored local overrides)
    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply ASIN_LEDGER_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply ASIN_LEDGER_* env vars (and the vendor key) to the raw config dict.

    Supported overrides:
      ASIN_LEDGER_DB_PATH    → raw["database"]["db_path"]
      ASIN_LEDGER_LOG_LEVEL  → raw["logging"]["level"]
      ASIN_LEDGER_FAN_OUT    → raw["ingestion"]["fan_out"]
      ASIN_LEDGER_DEBUG      → raw["debug"]
      KEEPA_API_KEY          → raw["market_api"]["api_key"]
    """
    if db_path := os.environ.get("ASIN_LEDGER_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("ASIN_LEDGER_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if fan_out := os.environ.get("ASIN_LEDGER_FAN_OUT"):
        raw.setdefault("ingestion", {})["fan_out"] = int(fan_out)

    if debug := os.environ.get("ASIN_LEDGER_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    if api_key := os.environ.get("KEEPA_API_KEY"):
        raw.setdefault("market_api", {})["api_key"] = api_key

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        market_api=MarketApiConfig(**raw.get("market_api", {})),
        rate_limit=RateLimitConfig(**raw.get("rate_limit", {})),
        ingestion=IngestionConfig(**raw.get("ingestion", {})),
        quality=QualityConfig(**raw.get("quality", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
