from __future__ import annotations

import threading
from typing import MutableMapping, Optional

from cachetools import LRUCache

from .message import ResolutionKey

""" Response cache keyed by ResolutionKey. """


class CacheStore:
    """
    Thread-safe in-memory store of upstream responses.

    Inputs:
        max_entries: 0 (default) keeps every entry for the process lifetime;
            a positive value bounds the store with least-recently-used
            eviction.
    Outputs:
        CacheStore instance

    Notes:
        All mapping operations are synchronized with an RLock. Entries are
        immutable wire bytes; callers patch the transaction ID on a copy
        (see relaydns.message.set_response_id) and never write back.
        With max_entries=0 the store grows without bound, one entry per
        distinct key seen.

    Example use:
        >>> from relaydns.cache import CacheStore
        >>> from relaydns.message import ResolutionKey
        >>> cache = CacheStore()
        >>> key = ResolutionKey("example.com.", "A", "IN")
        >>> cache.put(key, b"dns-response-data")
        >>> cache.get(key)
        b'dns-response-data'
    """

    def __init__(self, max_entries: int = 0) -> None:
        """
        Initializes the CacheStore.

        Inputs:
            max_entries: non-negative int; 0 means unbounded.
        Outputs:
            None

        Example use:
            >>> CacheStore()._store
            {}
        """
        self.max_entries = max(0, int(max_entries or 0))
        self._store: MutableMapping[ResolutionKey, bytes]
        if self.max_entries:
            self._store = LRUCache(maxsize=self.max_entries)
        else:
            self._store = {}
        self._lock = threading.RLock()

    def get(self, key: ResolutionKey) -> Optional[bytes]:
        """
        Retrieves an entry from the cache.

        Inputs:
            key: The key to retrieve.

        Outputs:
            The cached wire bytes, or None if the key is not present.
        """
        with self._lock:
            return self._store.get(key)

    def put(self, key: ResolutionKey, entry: bytes) -> None:
        """
        Stores an entry, replacing any existing value for key.

        Inputs:
            key: The key to store the value under.
            entry: Wire-format response bytes.
        Outputs:
            None
        """
        with self._lock:
            self._store[key] = bytes(entry)

    def put_if_absent(self, key: ResolutionKey, entry: bytes) -> bytes:
        """Brief: Store entry only when key has no value yet.

        Inputs:
          - key: ResolutionKey.
          - entry: Wire-format response bytes.

        Outputs:
          - bytes: the entry now held for key. This is the existing value when
            another writer got there first, otherwise ``entry`` itself.

        Example use:
            >>> cache = CacheStore()
            >>> k = ResolutionKey("a.", "A", "IN")
            >>> cache.put_if_absent(k, b"first")
            b'first'
            >>> cache.put_if_absent(k, b"second")
            b'first'
        """
        with self._lock:
            existing = self._store.get(key)
            if existing is not None:
                return existing
            stored = bytes(entry)
            self._store[key] = stored
            return stored

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store
