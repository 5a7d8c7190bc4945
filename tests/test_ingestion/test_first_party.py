"""Tests for the first-party data source implementations."""

from __future__ import annotations

import json
import os
from datetime import timedelta, timezone

import pytest

from asin_ledger.ingestion.first_party import JsonFileFirstPartySource, StaticFirstPartySource


class TestStaticFirstPartySource:
    def test_lookup_is_case_insensitive(self, sp_api_payload):
        source = StaticFirstPartySource({"b000000001": sp_api_payload})
        assert source.get("B000000001", 1).payload is sp_api_payload
        assert source.get("b000000001", 1).payload is sp_api_payload

    def test_unknown_identifier_returns_none(self):
        assert StaticFirstPartySource().get("B000000001", 1) is None

    def test_capture_time_is_optional(self, sp_api_payload, fixed_now):
        assert StaticFirstPartySource({"B000000001": sp_api_payload}).get("B000000001", 1).captured_at is None
        source = StaticFirstPartySource({"B000000001": sp_api_payload}, captured_at=fixed_now)
        assert source.get("B000000001", 1).captured_at == fixed_now


class TestJsonFileFirstPartySource:
    def test_reads_file_per_identifier(self, tmp_path, sp_api_payload):
        (tmp_path / "B000000001.json").write_text(json.dumps(sp_api_payload), encoding="utf-8")
        source = JsonFileFirstPartySource(tmp_path)
        assert source.get("b000000001", 1).payload == sp_api_payload

    def test_capture_time_defaults_to_file_mtime(self, tmp_path, sp_api_payload, fixed_now):
        path = tmp_path / "B000000001.json"
        path.write_text(json.dumps(sp_api_payload), encoding="utf-8")
        exported = fixed_now - timedelta(days=1)
        os.utime(path, (exported.timestamp(), exported.timestamp()))

        record = JsonFileFirstPartySource(tmp_path).get("B000000001", 1)
        assert record.captured_at == exported
        assert record.captured_at.tzinfo == timezone.utc

    def test_embedded_capture_time_wins_and_is_stripped(self, tmp_path, sp_api_payload):
        body = {**sp_api_payload, "captured_at": "2024-05-31T08:30:00Z"}
        (tmp_path / "B000000001.json").write_text(json.dumps(body), encoding="utf-8")

        record = JsonFileFirstPartySource(tmp_path).get("B000000001", 1)
        assert record.captured_at.isoformat() == "2024-05-31T08:30:00+00:00"
        assert record.payload == sp_api_payload

    def test_bad_embedded_capture_time_raises(self, tmp_path, sp_api_payload):
        body = {**sp_api_payload, "captured_at": "yesterday"}
        (tmp_path / "B000000001.json").write_text(json.dumps(body), encoding="utf-8")
        with pytest.raises(ValueError):
            JsonFileFirstPartySource(tmp_path).get("B000000001", 1)

    def test_missing_file_returns_none(self, tmp_path):
        assert JsonFileFirstPartySource(tmp_path).get("B000000001", 1) is None

    def test_non_object_raises(self, tmp_path):
        (tmp_path / "B000000001.json").write_text("[1, 2, 3]", encoding="utf-8")
        with pytest.raises(ValueError, match="JSON object"):
            JsonFileFirstPartySource(tmp_path).get("B000000001", 1)

    def test_malformed_json_raises(self, tmp_path):
        (tmp_path / "B000000001.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError):
            JsonFileFirstPartySource(tmp_path).get("B000000001", 1)
