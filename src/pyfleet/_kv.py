"""Key-value store interface and the in-memory implementation.

The history store only needs a small subset of Redis: strings with TTL,
lists with prepend/trim/index, a conditional list set and key scans. List
indices follow Redis semantics (inclusive ``stop``, negative counts from
the end).
"""

from __future__ import annotations

import dataclasses
import fnmatch
import time
from collections.abc import Callable
from typing import Protocol


class KeyValueStore(Protocol):
    """Structural store interface used by :class:`~pyfleet.state.store.HistoryStore`.

    Implementations raise :class:`~pyfleet.exceptions.StoreError` on
    transport failures.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        only_if_absent: bool = False,
    ) -> bool: ...

    async def list_prepend(self, key: str, value: str, *, max_len: int | None = None) -> int: ...

    async def list_trim(self, key: str, start: int, stop: int) -> None: ...

    async def list_range(self, key: str, start: int, stop: int) -> list[str]: ...

    async def list_index(self, key: str, index: int) -> str | None: ...

    async def list_set_if(self, key: str, index: int, expected: str, value: str) -> bool: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def persist(self, key: str) -> bool: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def close(self) -> None: ...


def _redis_slice(items: list[str], start: int, stop: int) -> tuple[int, int]:
    """Translate Redis ``start``/``stop`` into a Python half-open range."""
    n = len(items)
    if start < 0:
        start += n
    if stop < 0:
        stop += n
    start = max(start, 0)
    stop = min(stop, n - 1)
    if start > stop:
        return 0, 0
    return start, stop + 1


@dataclasses.dataclass
class _Entry:
    value: str | list[str]
    expires_at: float | None = None


class MemoryKeyValueStore:
    """Process-local store with TTL support.

    Used when no Redis endpoint is configured and by the test suite. All
    operations are atomic with respect to the event loop (no awaits inside
    a mutation).

    Parameters
    ----------
    clock
        Monotonic seconds; injectable so tests can expire keys.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, _Entry] = {}

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._data[key]
            return None
        return entry

    def _list(self, key: str) -> list[str] | None:
        entry = self._live(key)
        if entry is None:
            return None
        if not isinstance(entry.value, list):
            raise TypeError(f"WRONGTYPE key {key!r} holds a string")
        return entry.value

    def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, ``None`` without expiry or key."""
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return None
        return entry.expires_at - self._clock()

    async def get(self, key: str) -> str | None:
        entry = self._live(key)
        if entry is None:
            return None
        if isinstance(entry.value, list):
            raise TypeError(f"WRONGTYPE key {key!r} holds a list")
        return entry.value

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl_seconds: int | None = None,
        only_if_absent: bool = False,
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = _Entry(value=value, expires_at=expires_at)
        return True

    async def list_prepend(self, key: str, value: str, *, max_len: int | None = None) -> int:
        items = self._list(key)
        if items is None:
            items = []
            self._data[key] = _Entry(value=items)
        items.insert(0, value)
        if max_len is not None and len(items) > max_len:
            del items[max_len:]
        return len(items)

    async def list_trim(self, key: str, start: int, stop: int) -> None:
        items = self._list(key)
        if items is None:
            return
        lo, hi = _redis_slice(items, start, stop)
        kept = items[lo:hi]
        if not kept:
            del self._data[key]
            return
        items[:] = kept

    async def list_range(self, key: str, start: int, stop: int) -> list[str]:
        items = self._list(key)
        if not items:
            return []
        lo, hi = _redis_slice(items, start, stop)
        return list(items[lo:hi])

    async def list_index(self, key: str, index: int) -> str | None:
        items = self._list(key)
        if not items:
            return None
        if index < 0:
            index += len(items)
        if 0 <= index < len(items):
            return items[index]
        return None

    async def list_set_if(self, key: str, index: int, expected: str, value: str) -> bool:
        items = self._list(key)
        if not items or not 0 <= index < len(items) or items[index] != expected:
            return False
        items[index] = value
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + seconds
        return True

    async def persist(self, key: str) -> bool:
        entry = self._live(key)
        if entry is None or entry.expires_at is None:
            return False
        entry.expires_at = None
        return True

    async def keys(self, pattern: str) -> list[str]:
        return sorted(k for k in list(self._data) if self._live(k) is not None and fnmatch.fnmatchcase(k, pattern))

    async def close(self) -> None:
        """Nothing to release."""
