from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .logging import get_logger

if TYPE_CHECKING:
    from .connection.events import MessageKey

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Least recently used cache with an optional per-entry time to live.

    Reads always refresh recency. They only restart the entry's time to live
    when ``update_age_on_get`` is set; otherwise an entry expires ``ttl_s``
    after it was last written, however often it is read.
    """

    def __init__(
        self,
        *,
        max_size: int,
        ttl_s: float | None = None,
        update_age_on_get: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._ttl_s = ttl_s
        self._update_age_on_get = update_age_on_get
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[call-overload]
        return entry is not None and not self._expired(entry[0])

    def _expired(self, stored_at: float) -> bool:
        if self._ttl_s is None:
            return False
        return self._clock() - stored_at >= self._ttl_s

    def get(self, key: K, default: V | None = None) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return default
        stored_at, value = entry
        if self._expired(stored_at):
            del self._entries[key]
            self.misses += 1
            return default
        if self._update_age_on_get:
            self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()


GROUP_METADATA_TTL_S = 6 * 60 * 60


class GroupMetadataCache:
    """Group metadata with a fixed time to live; reads never extend it."""

    def __init__(
        self,
        *,
        max_size: int = 500,
        ttl_s: float = GROUP_METADATA_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: LRUCache[str, dict[str, Any]] = LRUCache(
            max_size=max_size,
            ttl_s=ttl_s,
            update_age_on_get=False,
            clock=clock,
        )

    def get(self, jid: str) -> dict[str, Any] | None:
        metadata = self._cache.get(jid)
        logger.debug(
            "cache.group_metadata.lookup", jid=jid, hit=metadata is not None
        )
        return metadata

    def set(self, jid: str, metadata: dict[str, Any]) -> None:
        self._cache.set(jid, metadata)
        participants = metadata.get("participants")
        logger.debug(
            "cache.group_metadata.stored",
            jid=jid,
            subject=metadata.get("subject"),
            members=len(participants) if isinstance(participants, list) else None,
        )

    def evict(self, jid: str) -> None:
        self._cache.delete(jid)


def message_store_key(key: MessageKey) -> str | None:
    if not key.remote_jid or not key.id:
        return None
    return f"{key.remote_jid}:{key.id}"


class MessageStore:
    """Recently seen message contents, looked up by the backend on resend."""

    def __init__(
        self,
        *,
        max_size: int = 1000,
        ttl_s: float = 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: LRUCache[str, dict[str, Any]] = LRUCache(
            max_size=max_size,
            ttl_s=ttl_s,
            update_age_on_get=True,
            clock=clock,
        )

    def store(self, key: MessageKey, message: dict[str, Any] | None) -> bool:
        store_key = message_store_key(key)
        if store_key is None or not message:
            return False
        self._cache.set(store_key, message)
        return True

    async def get(self, key: MessageKey) -> dict[str, Any] | None:
        store_key = message_store_key(key)
        if store_key is None:
            return None
        return self._cache.get(store_key)

    def delete(self, key: MessageKey) -> bool:
        store_key = message_store_key(key)
        if store_key is None:
            return False
        return self._cache.delete(store_key)


class RetryCounterCache:
    """Per-message retry counts, in the shape the backend's cache store expects.

    The backend calls ``get``, ``set``, ``add`` (increment and return the new
    count), ``delete`` and ``flush_all``.
    """

    def __init__(
        self,
        *,
        max_size: int = 1000,
        ttl_s: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: LRUCache[str, int] = LRUCache(
            max_size=max_size,
            ttl_s=ttl_s,
            update_age_on_get=True,
            clock=clock,
        )

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> int | None:
        return self._cache.get(key)

    def set(self, key: str, value: int) -> None:
        self._cache.set(key, value)

    def add(self, key: str) -> int:
        count = (self._cache.get(key) or 0) + 1
        self._cache.set(key, count)
        logger.debug("cache.retry_counter.add", key=key, count=count)
        return count

    def delete(self, key: str) -> bool:
        return self._cache.delete(key)

    def flush_all(self) -> None:
        size = len(self._cache)
        self._cache.clear()
        logger.debug("cache.retry_counter.flushed", entries=size)
