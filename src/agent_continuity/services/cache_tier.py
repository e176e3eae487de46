from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple

from agent_continuity.services.best_effort import best_effort

Loader = Callable[[str], Optional[Tuple[Any, int]]]


def now_ms() -> int:
    return int(time.time() * 1000)


class CacheTier:
    """Hot in-process map in front of an optional durable store.

    ``loader(key)`` returns ``(value, stored_at_ms)`` or ``None``; it is
    wrapped so a store failure reads as a miss.  Durable writes stay with
    the owner of the tier.  With ``ttl_ms`` set, entries older than the
    window are misses in both tiers.
    """

    def __init__(
        self,
        name: str,
        loader: Optional[Loader] = None,
        ttl_ms: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._name = name
        self._loader = loader
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._hot: Dict[str, Tuple[Any, int]] = {}

    @property
    def name(self) -> str:
        return self._name

    def get(self, key: str) -> Optional[Any]:
        hot = self._hot.get(key)
        if hot is not None and self._fresh(hot[1]):
            return hot[0]
        if self._loader is None:
            return None
        loaded = best_effort(f"{self._name} cache read", lambda: self._loader(key), None)
        if loaded is None:
            return None
        value, stored_at_ms = loaded
        if value is None or not self._fresh(stored_at_ms):
            return None
        self._hot[key] = (value, stored_at_ms)
        return value

    def put(self, key: str, value: Any, stored_at_ms: Optional[int] = None) -> None:
        stamp = self._clock() if stored_at_ms is None else int(stored_at_ms)
        self._hot[key] = (value, stamp)

    def _fresh(self, stored_at_ms: int) -> bool:
        if self._ttl_ms is None:
            return True
        return self._clock() - stored_at_ms < self._ttl_ms
