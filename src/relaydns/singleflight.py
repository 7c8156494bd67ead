from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Dict, Hashable, Tuple, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Collapse concurrent calls for the same key into one execution.

    Brief:
      The first caller for a key becomes the leader and runs ``fn``. Callers
      arriving while the leader is still running wait on the leader's Future
      and receive the same result, or the same exception. The key is
      forgotten as soon as the leader finishes, so a later call runs ``fn``
      again.

    Example use:
        >>> sf = SingleFlight()
        >>> sf.do("k", lambda: 42)
        (42, False)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[Hashable, Future] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> Tuple[T, bool]:
        """Brief: Run fn once per key among concurrent callers.

        Inputs:
          - key: hashable identifier shared by duplicate callers.
          - fn: zero-argument callable executed by the leader only.

        Outputs:
          - (result, shared): shared is True for callers that joined an
            in-flight call instead of running fn themselves.
        """
        with self._lock:
            fut = self._calls.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._calls[key] = fut

        if not leader:
            return fut.result(), True

        try:
            result = fn()
        except BaseException as exc:
            fut.set_exception(exc)
            raise
        else:
            fut.set_result(result)
            return result, False
        finally:
            with self._lock:
                self._calls.pop(key, None)
