"""Brief: Unit tests for relaydns.config.config_parser helpers.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

from typing import Any, Dict

import pytest

from relaydns.config import config_parser as cp


def test_defaults_match_reference_forwarder() -> None:
    """Brief: Empty config yields listen :53 and upstream 127.0.0.1:55.

    Inputs:
      - None.

    Outputs:
      - None; asserts default ProxySettings values.
    """

    s = cp.build_settings({})
    assert (s.listen_host, s.listen_port) == ("0.0.0.0", 53)
    assert (s.upstream_host, s.upstream_port) == ("127.0.0.1", 55)
    assert s.strategy == "message"
    assert s.attempts == 5
    assert s.timeout_ms == 1100
    assert s.timeout == pytest.approx(1.1)
    assert s.cache_max_entries == 0
    assert s.case_insensitive_keys is False


def test_file_values_and_cli_overrides_layer() -> None:
    cfg: Dict[str, Any] = {
        "upstream": {"host": "9.9.9.9", "port": 53},
        "exchange": {"attempts": 3},
        "cache": {"max_entries": 100, "case_insensitive_keys": True},
    }
    overrides = {
        "upstream": {"host": None, "port": 5353},
        "exchange": {"strategy": "shared_socket", "attempts": None, "timeout_ms": 500},
        "logging": {"level": None},
    }
    s = cp.build_settings(cfg, overrides)
    assert s.upstream_host == "9.9.9.9"
    assert s.upstream_port == 5353
    assert s.strategy == "shared_socket"
    assert s.attempts == 3
    assert s.timeout_ms == 500
    assert s.cache_max_entries == 100
    assert s.case_insensitive_keys is True
    assert s.logging["level"] == "info"


def test_build_settings_does_not_mutate_defaults() -> None:
    cp.build_settings({"listen": {"port": 5300}})
    assert cp.DEFAULT_CONFIG["listen"]["port"] == 53


@pytest.mark.parametrize("bad", ["dns.example", "300.1.1.1", ""])
def test_upstream_host_must_be_ip(bad: str) -> None:
    with pytest.raises(ValueError, match="not an IP"):
        cp.build_settings({"upstream": {"host": bad}})


def test_parse_ip_canonicalizes_ipv6() -> None:
    assert cp.parse_ip("::0001") == "::1"


def test_invalid_strategy_and_attempts() -> None:
    with pytest.raises(ValueError, match="strategy"):
        cp.build_settings({}, {"exchange": {"strategy": "tcp"}})
    with pytest.raises(ValueError, match="attempts"):
        cp.build_settings({}, {"exchange": {"attempts": 0}})


def test_parse_config_file_reads_yaml(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "listen: {host: 127.0.0.1, port: 5353}\n"
        "upstream: {host: 1.1.1.1, port: 53}\n"
        "exchange: {strategy: shared_socket, attempts: 2, timeout_ms: 250}\n"
    )
    cfg = cp.parse_config_file(str(path))
    s = cp.build_settings(cfg)
    assert s.listen_port == 5353
    assert s.upstream_host == "1.1.1.1"
    assert s.attempts == 2


def test_parse_config_file_non_mapping_root_raises(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="must be a mapping"):
        cp.parse_config_file(str(path))


def test_parse_config_file_schema_error(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("exchange: {attempts: zero}\n")
    with pytest.raises(ValueError, match="exchange/attempts"):
        cp.parse_config_file(str(path))


def test_load_config_missing_file_returns_empty(tmp_path) -> None:
    assert cp.load_config(str(tmp_path / "nope.yaml")) == {}
    assert cp.load_config(None) == {}


def test_empty_file_is_empty_config(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert cp.load_config(str(path)) == {}
