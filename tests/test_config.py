"""Tests for configuration loading, layering and validation."""

from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from asin_ledger.config import (
    AppConfig,
    IngestionConfig,
    LoggingConfig,
    MarketApiConfig,
    RateLimitConfig,
    load_config,
)
from asin_ledger.utils.logging import _JsonFormatter

_ENV_VARS = (
    "ASIN_LEDGER_DB_PATH",
    "ASIN_LEDGER_LOG_LEVEL",
    "ASIN_LEDGER_FAN_OUT",
    "ASIN_LEDGER_DEBUG",
    "KEEPA_API_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(path, text: str):
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_repository_default_config_loads(self):
        config = load_config()
        assert config.market_api.domain == 2
        assert config.ingestion.cache_ttl_minutes == 60
        assert config.market_api.api_key is None

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_local_toml_overrides(self, tmp_path):
        cfg = _write(tmp_path / "default.toml", "[ingestion]\nfan_out = 2\ncache_ttl_minutes = 30\n")
        _write(tmp_path / "local.toml", "[ingestion]\nfan_out = 4\n")
        config = load_config(cfg)
        assert config.ingestion.fan_out == 4
        assert config.ingestion.cache_ttl_minutes == 30

    def test_env_overrides(self, tmp_path, monkeypatch):
        cfg = _write(tmp_path / "default.toml", "[database]\ndb_path = 'a.db'\n")
        monkeypatch.setenv("ASIN_LEDGER_DB_PATH", "b.db")
        monkeypatch.setenv("ASIN_LEDGER_FAN_OUT", "3")
        monkeypatch.setenv("ASIN_LEDGER_DEBUG", "true")
        monkeypatch.setenv("KEEPA_API_KEY", "secret")
        config = load_config(cfg)
        assert config.database.db_path == "b.db"
        assert config.ingestion.fan_out == 3
        assert config.debug is True
        assert config.market_api.api_key == "secret"

    def test_invalid_value_rejected(self, tmp_path):
        cfg = _write(tmp_path / "default.toml", "[market_api]\nbatch_size = 0\n")
        with pytest.raises(ValidationError):
            load_config(cfg)


class TestValidators:
    def test_defaults_are_valid(self):
        assert AppConfig().rate_limit.max_attempts == 3

    def test_batch_size_range(self):
        with pytest.raises(ValidationError):
            MarketApiConfig(batch_size=101)

    def test_attempts_and_jitter(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(max_attempts=0)
        with pytest.raises(ValidationError):
            RateLimitConfig(jitter_fraction=1.5)

    def test_fan_out_positive(self):
        with pytest.raises(ValidationError):
            IngestionConfig(fan_out=0)

    def test_log_level_normalized(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="LOUD")

    def test_config_is_frozen(self):
        with pytest.raises(ValidationError):
            AppConfig().debug = True


class TestJsonFormatter:
    def test_extra_fields_at_top_level(self):
        record = logging.LogRecord(
            "asin_ledger.test", logging.INFO, __file__, 1, "Persisted %s", ("B000000001",), None
        )
        record.asin = "B000000001"
        record.job_id = 7
        payload = json.loads(_JsonFormatter().format(record))
        assert payload["msg"] == "Persisted B000000001"
        assert payload["level"] == "INFO"
        assert payload["asin"] == "B000000001"
        assert payload["job_id"] == 7
        assert "args" not in payload
