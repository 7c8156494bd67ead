"""Resolution coordinator: cache lookup, single-flight upstream fetch, ID rewrite."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from dnslib import DNSRecord

from .cache import CacheStore
from .exchange import ExchangeError
from .message import ResolutionKey, parse_query, resolution_key, set_response_id
from .singleflight import SingleFlight

logger = logging.getLogger("relaydns.resolver")


class ResolutionError(Exception):
    """
    Brief: A query could not be resolved (upstream exchange failed).

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class ResolutionCoordinator:
    """Resolve one query to one response, from cache or via one upstream exchange.

    Brief:
      Concurrent identical queries (same ResolutionKey) share a single
      upstream exchange through a SingleFlight group; distinct keys proceed
      in parallel. The first response stored for a key wins and every later
      caller receives those same bytes with its own transaction ID.

    Inputs:
      - cache: CacheStore shared by all handler threads.
      - engine: object exposing exchange(DNSRecord) -> bytes and raising
        ExchangeError on failure (MessageExchange or SharedSocketExchange).
      - flights: optional SingleFlight; one is created when omitted.
      - case_insensitive_keys: lowercase qnames when keying the cache.

    Outputs:
      - ResolutionCoordinator instance

    Example use:
        >>> coordinator = ResolutionCoordinator(CacheStore(), engine)  # doctest: +SKIP
        >>> reply = coordinator.resolve(DNSRecord.question("example.com"))  # doctest: +SKIP
    """

    def __init__(
        self,
        cache: CacheStore,
        engine,
        *,
        flights: Optional[SingleFlight] = None,
        case_insensitive_keys: bool = False,
    ) -> None:
        self.cache = cache
        self.engine = engine
        self.flights = flights or SingleFlight()
        self.case_insensitive_keys = bool(case_insensitive_keys)
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.exchanges = 0

    def key_for(self, query: DNSRecord) -> ResolutionKey:
        return resolution_key(query, case_insensitive=self.case_insensitive_keys)

    def resolve_bytes(self, data: bytes) -> bytes:
        """Brief: Resolve a wire-format query and return the wire response.

        Inputs:
          - data: raw query datagram.

        Outputs:
          - bytes: response whose ID equals the query's ID.

        Raises:
          - MalformedQueryError: the datagram is not a usable query.
          - ResolutionError: upstream exchange failed and nothing is cached.
        """
        return self.resolve_wire(parse_query(data))

    def resolve(self, query: DNSRecord) -> DNSRecord:
        """Resolve a parsed query; returns a parsed DNSRecord response."""
        return DNSRecord.parse(self.resolve_wire(query))

    def resolve_wire(self, query: DNSRecord) -> bytes:
        """Resolve a parsed query; returns the wire response with its ID."""
        key = self.key_for(query)
        req_id = query.header.id

        entry = self.cache.get(key)
        if entry is not None:
            self._count("hits")
            logger.debug("id=0x%04x cache hit for %s", req_id, key)
        else:
            self._count("misses")
            entry, shared = self.flights.do(key, lambda: self._fetch(key, query))
            if shared:
                logger.info(
                    "id=0x%04x concurrent duplicate query for %s served by in-flight exchange",
                    req_id,
                    key,
                )

        # Entries are immutable bytes; set_response_id always returns a copy.
        return set_response_id(entry, req_id)

    def _fetch(self, key: ResolutionKey, query: DNSRecord) -> bytes:
        """Brief: Leader path: run the upstream exchange and populate the cache.

        Inputs:
          - key: ResolutionKey for query.
          - query: DNSRecord as received from the client.

        Outputs:
          - bytes: entry now cached for key (may be another writer's entry).

        Raises:
          - ResolutionError when the exchange fails and no entry has appeared.
        """
        req_id = query.header.id

        # A previous leader may have finished between our miss and this flight.
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        logger.info("id=0x%04x new uncached query %s, forwarding upstream", req_id, key)
        self._count("exchanges")
        try:
            wire = self.engine.exchange(query)
        except ExchangeError as e:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(
                    "id=0x%04x exchange failed but %s was cached concurrently", req_id, key
                )
                return cached
            logger.error("id=0x%04x resolution of %s failed: %s", req_id, key, e)
            raise ResolutionError(f"cannot resolve {key}: {e}") from e

        stored = self.cache.put_if_absent(key, wire)
        if stored is wire:
            logger.info("id=0x%04x cache populated for %s (%d bytes)", req_id, key, len(wire))
        else:
            logger.info(
                "id=0x%04x %s already cached by a concurrent exchange; adopting it",
                req_id,
                key,
            )
        return stored

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + 1)
