from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Any, Dict, List, Optional, Tuple

from .cache import CacheStore
from .config.config_parser import ProxySettings, build_settings, load_config
from .config.logging_config import init_logging
from .exchange import MessageExchange, SharedSocketExchange
from .resolver import ResolutionCoordinator
from .servers.udp_server import DNSServer
from .transports.udp import UDPError, UDPTransport

logger = logging.getLogger("relaydns.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaydns", description="Caching DNS forwarding proxy"
    )
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--listen-host", help="Address to listen on (IP literal)")
    parser.add_argument("--listen-port", type=int, help="UDP port to listen on")
    parser.add_argument("--upstream-host", help="Upstream resolver IP")
    parser.add_argument("--upstream-port", type=int, help="Upstream resolver port")
    parser.add_argument(
        "--strategy",
        choices=["message", "shared_socket"],
        help="Upstream exchange strategy",
    )
    parser.add_argument("--attempts", type=int, help="Upstream attempts per query")
    parser.add_argument("--timeout-ms", type=int, help="Per-attempt timeout (ms)")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warn", "error", "crit"],
        help="Override logging.level",
    )
    return parser


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Brief: Map parsed CLI flags onto the config file's nested shape.

    Inputs:
      - args: argparse Namespace from _build_parser().

    Outputs:
      - dict: nested overrides; unset flags are None and ignored later.
    """
    return {
        "listen": {"host": args.listen_host, "port": args.listen_port},
        "upstream": {"host": args.upstream_host, "port": args.upstream_port},
        "exchange": {
            "strategy": args.strategy,
            "attempts": args.attempts,
            "timeout_ms": args.timeout_ms,
        },
        "logging": {"level": args.log_level},
    }


def build_coordinator(
    settings: ProxySettings,
) -> Tuple[ResolutionCoordinator, Optional[UDPTransport]]:
    """Brief: Wire cache, exchange engine and coordinator from settings.

    Inputs:
      - settings: ProxySettings.

    Outputs:
      - (coordinator, shared_transport): shared_transport is the long-lived
        upstream socket for the shared_socket strategy (caller closes it),
        otherwise None.

    Raises:
      - UDPError when the shared upstream socket cannot be created.
    """
    cache = CacheStore(max_entries=settings.cache_max_entries)
    shared: Optional[UDPTransport] = None
    if settings.strategy == "shared_socket":
        shared = UDPTransport(
            settings.upstream_host,
            settings.upstream_port,
            source_ip=settings.upstream_source_ip,
        )
        engine: Any = SharedSocketExchange(
            shared, attempts=settings.attempts, timeout=settings.timeout
        )
    else:
        source_ip = settings.upstream_source_ip
        engine = MessageExchange(
            settings.upstream_host,
            settings.upstream_port,
            attempts=settings.attempts,
            timeout=settings.timeout,
            transport_factory=lambda h, p: UDPTransport(h, p, source_ip=source_ip),
        )
    coordinator = ResolutionCoordinator(
        cache, engine, case_insensitive_keys=settings.case_insensitive_keys
    )
    return coordinator, shared


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the relaydns proxy.

    Parses flags and the YAML config, initializes logging, binds the UDP
    listener and serves until SIGINT/SIGTERM.

    Inputs:
      - argv: argument list (defaults to sys.argv[1:]).
    Outputs:
      - int: process exit code; 1 for startup failures (bad config, cannot
        bind the listener, cannot open the upstream socket), 0 on clean
        shutdown, 2 when stopped by SIGTERM/SIGINT.

    Example use:
        relaydns --config config.yaml --listen-port 5353 --upstream-host 9.9.9.9 --upstream-port 53
    """
    args = _build_parser().parse_args(argv)

    try:
        settings = build_settings(load_config(args.config), overrides_from_args(args))
    except (OSError, ValueError) as e:
        init_logging({"level": "info"})
        logger.error("Invalid configuration: %s", e)
        return 1

    init_logging(settings.logging)

    try:
        coordinator, shared_transport = build_coordinator(settings)
    except UDPError as e:
        logger.error(
            "Cannot open upstream socket to %s:%d: %s",
            settings.upstream_host,
            settings.upstream_port,
            e,
        )
        return 1

    try:
        server = DNSServer(settings.listen_host, settings.listen_port, coordinator)
    except OSError as e:
        logger.error(
            "Cannot bind UDP listener on %s:%d: %s",
            settings.listen_host,
            settings.listen_port,
            e,
        )
        if shared_transport is not None:
            shared_transport.close()
        return 1

    shutdown_event = threading.Event()
    exit_code = 0

    def _request_shutdown(reason: str, code: int) -> None:
        nonlocal exit_code
        if shutdown_event.is_set():
            return
        exit_code = code
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)
        shutdown_event.set()

    try:
        signal.signal(signal.SIGTERM, lambda _s, _f: _request_shutdown("SIGTERM", 2))
        signal.signal(signal.SIGINT, lambda _s, _f: _request_shutdown("SIGINT", 2))
    except ValueError:
        # signal.signal only works from the main thread (tests run main() elsewhere).
        logger.warning("Could not install signal handlers outside the main thread")

    logger.info(
        "Upstream: %s:%d (strategy=%s, attempts=%d, timeout=%dms)",
        settings.upstream_host,
        settings.upstream_port,
        settings.strategy,
        settings.attempts,
        settings.timeout_ms,
    )
    host, port = server.address
    logger.info("Starting UDP listener on %s:%d", host, port)

    # serve_forever() runs on its own thread; shutdown() must be called from a
    # different thread than the one serving.
    udp_thread = threading.Thread(
        target=server.serve_forever, name="relaydns-udp", daemon=True
    )
    udp_thread.start()

    try:
        while not shutdown_event.is_set() and udp_thread.is_alive():
            shutdown_event.wait(1.0)
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    finally:
        server.stop()
        udp_thread.join(timeout=5.0)
        if shared_transport is not None:
            shared_transport.close()
        logger.info(
            "Stopped (hits=%d misses=%d exchanges=%d cached=%d)",
            coordinator.hits,
            coordinator.misses,
            coordinator.exchanges,
            len(coordinator.cache),
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
