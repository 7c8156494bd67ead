"""Configuration parsing and normalization helpers for relaydns.

Brief:
  This module holds the configuration helpers used by the CLI entrypoint:
    - reading the YAML config file
    - JSON Schema validation (via config_schema.validate_config)
    - layering CLI overrides over the file
    - building the immutable ProxySettings used to wire the proxy

Inputs:
  - YAML config paths, parsed mappings and CLI override mappings

Outputs:
  - Validated config dicts and ProxySettings instances
"""

from __future__ import annotations

import copy
import ipaddress
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from .config_schema import validate_config

# Defaults of the original forwarder: listen on :53, forward to 127.0.0.1:55.
DEFAULT_CONFIG: Dict[str, Any] = {
    "listen": {"host": "0.0.0.0", "port": 53},
    "upstream": {"host": "127.0.0.1", "port": 55, "source_ip": None},
    "exchange": {"strategy": "message", "attempts": 5, "timeout_ms": 1100},
    "cache": {"max_entries": 0, "case_insensitive_keys": False},
    "logging": {"level": "info", "stderr": True, "file": None, "syslog": False},
}

STRATEGIES = ("message", "shared_socket")


@dataclass(frozen=True)
class ProxySettings:
    """Startup-time settings; never changed while the proxy runs."""

    listen_host: str = "0.0.0.0"
    listen_port: int = 53
    upstream_host: str = "127.0.0.1"
    upstream_port: int = 55
    upstream_source_ip: Optional[str] = None
    strategy: str = "message"
    attempts: int = 5
    timeout_ms: int = 1100
    cache_max_entries: int = 0
    case_insensitive_keys: bool = False
    logging: Dict[str, Any] = field(default_factory=dict)

    @property
    def timeout(self) -> float:
        """Per-attempt timeout in seconds."""
        return self.timeout_ms / 1000.0


def parse_ip(value: Any) -> str:
    """Brief: Validate an IP literal and return its canonical text form.

    Inputs:
      - value: candidate address (str).

    Outputs:
      - str: canonical IP text.

    Raises:
      - ValueError("not an IP") when value is not an IPv4/IPv6 literal.

    Example:
      >>> parse_ip("127.0.0.1")
      '127.0.0.1'
    """
    try:
        return str(ipaddress.ip_address(str(value).strip()))
    except ValueError:
        raise ValueError(f"not an IP: {value!r}") from None


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (overlay or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_config_file(config_path: str, *, unknown_keys: str = "warn") -> Dict[str, Any]:
    """Brief: Read and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - unknown_keys: policy passed through to validate_config.

    Outputs:
      - dict: Parsed configuration mapping (an empty file yields {}).

    Raises:
      - ValueError: root is not a mapping, or schema validation fails.
      - OSError: the file cannot be read.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    validate_config(cfg, config_path=config_path, unknown_keys=unknown_keys)
    return cfg


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    """Brief: Parse config_path when it exists, otherwise return {}.

    Inputs:
      - config_path: optional path; a missing file means "use defaults".

    Outputs:
      - dict: validated configuration mapping.
    """
    if not config_path or not os.path.exists(config_path):
        return {}
    return parse_config_file(config_path)


def build_settings(
    cfg: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ProxySettings:
    """Brief: Layer defaults, file config and CLI overrides into ProxySettings.

    Inputs:
      - cfg: validated config mapping (may be empty).
      - overrides: nested mapping with the same shape as the config file;
        None values are ignored so unset CLI flags do not clobber the file.

    Outputs:
      - ProxySettings

    Raises:
      - ValueError for a non-IP upstream/listen host, an unknown strategy, or
        non-positive attempts/timeout.

    Example:
      >>> build_settings({"upstream": {"host": "9.9.9.9"}}).upstream_host
      '9.9.9.9'
    """
    clean: Dict[str, Any] = {}
    for section, values in (overrides or {}).items():
        if isinstance(values, dict):
            kept = {k: v for k, v in values.items() if v is not None}
            if kept:
                clean[section] = kept
        elif values is not None:
            clean[section] = values

    merged = _deep_merge(_deep_merge(DEFAULT_CONFIG, cfg or {}), clean)
    listen = merged["listen"]
    upstream = merged["upstream"]
    exchange = merged["exchange"]
    cache = merged["cache"]

    strategy = str(exchange["strategy"]).lower()
    if strategy not in STRATEGIES:
        raise ValueError(f"exchange.strategy must be one of {STRATEGIES}, got {strategy!r}")
    attempts = int(exchange["attempts"])
    timeout_ms = int(exchange["timeout_ms"])
    if attempts < 1:
        raise ValueError("exchange.attempts must be >= 1")
    if timeout_ms < 1:
        raise ValueError("exchange.timeout_ms must be >= 1")

    source_ip = upstream.get("source_ip")
    return ProxySettings(
        listen_host=parse_ip(listen["host"]),
        listen_port=int(listen["port"]),
        upstream_host=parse_ip(upstream["host"]),
        upstream_port=int(upstream["port"]),
        upstream_source_ip=parse_ip(source_ip) if source_ip else None,
        strategy=strategy,
        attempts=attempts,
        timeout_ms=timeout_ms,
        cache_max_entries=max(0, int(cache.get("max_entries") or 0)),
        case_insensitive_keys=bool(cache.get("case_insensitive_keys", False)),
        logging=dict(merged.get("logging") or {}),
    )
