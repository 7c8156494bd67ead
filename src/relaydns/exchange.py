"""Upstream exchange engines: one bounded, timeout-guarded round trip per call.

Brief:
  Two strategies share the same retry policy:

    - MessageExchange opens a fresh UDPTransport for every exchange, so the
      only datagrams it can see are replies to its own query.
    - SharedSocketExchange multiplexes every exchange over one long-lived
      transport. Each attempt goes out with a freshly allocated transaction
      ID; one reader at a time routes incoming datagrams to the attempt
      waiting for that ID, and a datagram no live attempt waits for is
      discarded as stale.

  Per-attempt timeouts consume one attempt and the next attempt is sent
  immediately. A transport error aborts the whole exchange. Only success
  (wire bytes) or ExchangeError leaves this module.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Optional

from dnslib import DNSRecord

from .message import DNS_HEADER_LEN, read_id, set_response_id
from .transports.udp import TransportTimeout, UDPError, UDPTransport

logger = logging.getLogger("relaydns.exchange")

DEFAULT_ATTEMPTS = 5
DEFAULT_TIMEOUT = 1.1

# How long a waiter on a shared socket blocks on its own Future before
# checking whether the socket still has a reader.
_HANDOFF_POLL = 0.05


class ExchangeError(Exception):
    """
    Brief: Upstream exchange failed (transport error or attempts exhausted).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class ExchangeExhausted(ExchangeError):
    """Every attempt timed out without a correlated response."""

    def __init__(self, attempts: int, timeout: float) -> None:
        super().__init__(
            f"no upstream response after {attempts} attempts ({timeout:.3f}s each)"
        )
        self.attempts = attempts
        self.timeout = timeout


class IDAllocator:
    """Thread-safe source of 16-bit transaction IDs, incrementing and wrapping.

    Example use:
        >>> ids = IDAllocator(start=0xFFFF)
        >>> ids.next(), ids.next()
        (65535, 0)
    """

    def __init__(self, start: int = 0) -> None:
        self._counter = itertools.count(int(start))
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            return next(self._counter) & 0xFFFF


class _BaseExchange:
    """Attempt loop shared by both strategies.

    Subclasses implement ``_prepare`` (what to send for one attempt, and
    which ID the reply must carry) and provide the transport.
    """

    def __init__(
        self,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.attempts = max(1, int(attempts))
        self.timeout = float(timeout)
        if self.timeout <= 0:
            raise ValueError("per-attempt timeout must be positive")

    def exchange(self, query: DNSRecord) -> bytes:
        raise NotImplementedError

    def _prepare(self, wire: bytes) -> tuple[bytes, int]:
        raise NotImplementedError

    def _release(self, expect_id: int) -> None:
        """Called once per attempt after it succeeds, times out or fails."""
        return None

    def _run(self, transport, query: DNSRecord) -> bytes:
        """Brief: Drive the attempt loop over ``transport`` for one query.

        Inputs:
          - transport: object with send(bytes) and receive_with_deadline(float).
          - query: DNSRecord to forward.

        Outputs:
          - bytes: upstream response carrying the query's original ID.

        Raises:
          - ExchangeExhausted after ``attempts`` timeouts.
          - ExchangeError on a transport error (not retried).
        """
        orig_id = query.header.id
        wire = query.pack()
        for attempt in range(1, self.attempts + 1):
            out, expect_id = self._prepare(wire)
            deadline = time.monotonic() + self.timeout
            try:
                transport.send(out)
                reply = self._await_reply(transport, expect_id, deadline, orig_id)
            except TransportTimeout:
                logger.warning(
                    "id=0x%04x upstream attempt %d/%d timed out after %.3fs",
                    orig_id,
                    attempt,
                    self.attempts,
                    self.timeout,
                )
                continue
            except UDPError as e:
                logger.error(
                    "id=0x%04x upstream transport error on attempt %d: %s",
                    orig_id,
                    attempt,
                    e,
                )
                raise ExchangeError(str(e)) from e
            finally:
                self._release(expect_id)
            return set_response_id(reply, orig_id)

        logger.error(
            "id=0x%04x upstream exchange failed after %d attempts",
            orig_id,
            self.attempts,
        )
        raise ExchangeExhausted(self.attempts, self.timeout)

    def _await_reply(self, transport, expect_id: int, deadline: float, orig_id: int) -> bytes:
        # Mismatched datagrams are dropped without touching the attempt count;
        # the deadline stays fixed so the loop still ends at the timeout.
        while True:
            data = transport.receive_with_deadline(deadline)
            if len(data) < DNS_HEADER_LEN:
                logger.debug(
                    "id=0x%04x discarding short upstream datagram (%d bytes)",
                    orig_id,
                    len(data),
                )
                continue
            got = read_id(data)
            if got != expect_id:
                logger.debug(
                    "id=0x%04x discarding stale upstream response id=0x%04x (want 0x%04x)",
                    orig_id,
                    got,
                    expect_id,
                )
                continue
            return data


class MessageExchange(_BaseExchange):
    """Exchange over a fresh transport per call.

    Inputs:
      - host, port: upstream resolver.
      - attempts: attempt budget (default 5).
      - timeout: per-attempt timeout in seconds (default 1.1).
      - transport_factory: optional callable(host, port) -> transport; tests
        pass fakes here. Defaults to UDPTransport.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        transport_factory: Optional[Callable[[str, int], object]] = None,
    ) -> None:
        super().__init__(attempts=attempts, timeout=timeout)
        self.host = host
        self.port = int(port)
        self._factory = transport_factory or UDPTransport

    def _prepare(self, wire: bytes) -> tuple[bytes, int]:
        return wire, read_id(wire)

    def exchange(self, query: DNSRecord) -> bytes:
        try:
            transport = self._factory(self.host, self.port)
        except UDPError as e:
            logger.error(
                "id=0x%04x cannot open upstream transport to %s:%d: %s",
                query.header.id,
                self.host,
                self.port,
                e,
            )
            raise ExchangeError(str(e)) from e
        try:
            return self._run(transport, query)
        finally:
            transport.close()


class SharedSocketExchange(_BaseExchange):
    """Exchange multiplexed over one long-lived transport.

    Inputs:
      - transport: shared object with send(bytes) and
        receive_with_deadline(float); owned by the caller.
      - attempts, timeout: as for MessageExchange.
      - ids: optional IDAllocator; one is created when omitted.

    Notes:
      Every attempt overwrites the outgoing ID with ``ids.next()`` and
      registers a Future under that ID before sending. At most one waiting
      attempt reads the socket at a time; it hands each datagram to the
      Future registered for its ID and keeps reading until its own reply
      arrives or its deadline passes, then another waiter takes over. A
      datagram is discarded as stale only when no live attempt is waiting
      for its ID, e.g. a late reply to attempt N while attempt N+1 waits.
    """

    def __init__(
        self,
        transport,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: float = DEFAULT_TIMEOUT,
        ids: Optional[IDAllocator] = None,
    ) -> None:
        super().__init__(attempts=attempts, timeout=timeout)
        self.transport = transport
        self.ids = ids or IDAllocator()
        self._waiters: Dict[int, Future] = {}
        self._waiters_lock = threading.Lock()
        self._reader = threading.Lock()

    def _prepare(self, wire: bytes) -> tuple[bytes, int]:
        with self._waiters_lock:
            attempt_id = self.ids.next()
            while attempt_id in self._waiters:
                attempt_id = self.ids.next()
            self._waiters[attempt_id] = Future()
        return set_response_id(wire, attempt_id), attempt_id

    def _release(self, expect_id: int) -> None:
        with self._waiters_lock:
            self._waiters.pop(expect_id, None)

    def _await_reply(self, transport, expect_id: int, deadline: float, orig_id: int) -> bytes:
        with self._waiters_lock:
            waiter = self._waiters[expect_id]
        while not waiter.done():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportTimeout(f"no reply for upstream id=0x{expect_id:04x}")
            if self._reader.acquire(blocking=False):
                try:
                    self._read_until(transport, waiter, deadline, orig_id)
                finally:
                    self._reader.release()
                continue
            try:
                return waiter.result(timeout=min(remaining, _HANDOFF_POLL))
            except FutureTimeout:
                # The current reader may have left; loop and try to take over.
                continue
        return waiter.result()

    def _read_until(self, transport, waiter: Future, deadline: float, orig_id: int) -> None:
        while not waiter.done():
            try:
                data = transport.receive_with_deadline(deadline)
            except UDPError as e:
                self._fail_waiters(e)
                raise
            self._route(data, orig_id)

    def _route(self, data: bytes, orig_id: int) -> None:
        if len(data) < DNS_HEADER_LEN:
            logger.debug(
                "id=0x%04x discarding short upstream datagram (%d bytes)",
                orig_id,
                len(data),
            )
            return
        got = read_id(data)
        with self._waiters_lock:
            waiter = self._waiters.get(got)
        if waiter is None or waiter.done():
            logger.debug(
                "id=0x%04x discarding stale upstream response id=0x%04x (no attempt waiting)",
                orig_id,
                got,
            )
            return
        waiter.set_result(data)

    def _fail_waiters(self, exc: BaseException) -> None:
        # A broken shared socket fails every exchange using it, not only the reader's.
        with self._waiters_lock:
            waiters = list(self._waiters.values())
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(exc)

    def exchange(self, query: DNSRecord) -> bytes:
        return self._run(self.transport, query)
