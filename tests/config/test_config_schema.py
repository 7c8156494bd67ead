"""Brief: Tests for relaydns.config.config_schema.validate_config.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import logging

import pytest

from relaydns.config.config_schema import get_default_schema_path, validate_config


def test_default_schema_ships_with_package() -> None:
    assert get_default_schema_path().is_file()


def test_full_valid_config_passes() -> None:
    cfg = {
        "listen": {"host": "0.0.0.0", "port": 53},
        "upstream": {"host": "127.0.0.1", "port": 55, "source_ip": None},
        "exchange": {"strategy": "message", "attempts": 5, "timeout_ms": 1100},
        "cache": {"max_entries": 0, "case_insensitive_keys": False},
        "logging": {"level": "info", "stderr": True, "file": None, "syslog": False},
    }
    validate_config(cfg)


def test_unknown_strategy_is_fatal() -> None:
    with pytest.raises(ValueError, match="exchange/strategy"):
        validate_config({"exchange": {"strategy": "carrier-pigeon"}})


def test_unknown_keys_policy(caplog) -> None:
    cfg = {"upstreams": []}
    caplog.set_level(logging.WARNING, logger="relaydns.config.config_schema")
    validate_config(cfg, unknown_keys="warn")
    assert any("upstreams" in r.getMessage() for r in caplog.records)

    validate_config(cfg, unknown_keys="ignore")
    with pytest.raises(ValueError, match="Invalid configuration"):
        validate_config(cfg, unknown_keys="error")


def test_bad_unknown_keys_policy() -> None:
    with pytest.raises(ValueError, match="unknown_keys policy"):
        validate_config({}, unknown_keys="shrug")


def test_syslog_address_pair_is_accepted() -> None:
    validate_config({"logging": {"syslog": {"address": ["127.0.0.1", 514]}}})
