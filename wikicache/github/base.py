"""
Base class for cache-aware GitHub services.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from wikicache.github.keys import dedup_key
from wikicache.services.cache import MISSING, CacheTier, TieredCacheStore
from wikicache.services.client import GitHubClient
from wikicache.services.deduplicator import RequestDeduplicator

T = TypeVar("T")


class BaseGitHubService(ABC):
    """
    Abstract base class for all cache-aware services.

    All services should:
    - Build cache keys with ``wikicache.github.keys``
    - Go through ``_cached`` for reads so hits, misses and in-flight
      requests are handled the same way everywhere
    - Return plain dicts/lists so cached and fresh values have the same shape
    - Invalidate the tiers they write to
    """

    def __init__(
        self,
        client: GitHubClient,
        cache: TieredCacheStore,
        deduplicator: RequestDeduplicator,
        debug: bool = False,
    ):
        self.client = client
        self.cache = cache
        self.deduplicator = deduplicator
        self._debug = debug

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this service."""
        ...

    def tier(self, name: str) -> CacheTier:
        return self.cache.tier(name)

    async def _cached(
        self,
        tier_name: str,
        key: str,
        producer: Callable[[], Awaitable[T]],
        operation: str,
        cache_none: bool = True,
    ) -> T:
        """
        Read-through cache lookup.

        1. Serve a fresh entry from ``tier_name`` if there is one.
        2. Otherwise join (or start) the single in-flight fetch for this key.
        3. Inside the fetch, check the tier again: a fetch that finished
           while this one was being scheduled may already have filled it.
        4. Run ``producer`` and store its (normalized) result.

        A result is not stored if the tier was invalidated while the fetch
        was running, or if its key names a username that has been renamed;
        callers still receive it. ``cache_none=False`` leaves
        ``None`` results uncached.
        """
        tier = self.tier(tier_name)
        cached = tier.get(key, MISSING)
        if cached is not MISSING:
            return cached

        generation = tier.generation

        async def load() -> T:
            entry = tier.peek(key)
            if entry is not None:
                self._log(f"{operation}: filled by concurrent request")
                return entry.data

            value = await producer()
            if value is None and not cache_none:
                return value
            if tier.generation != generation:
                self._log(f"{operation}: invalidated during fetch, not caching {key}")
                return value
            if self.cache.is_superseded_key(tier_name, key):
                self._log(f"{operation}: {key} names a renamed user, not caching")
                return value
            tier.set(key, value)
            return value

        # Generation in the in-flight key: callers arriving after an
        # invalidation start a new fetch instead of joining the stale one.
        return await self.deduplicator.dedupe(
            f"{dedup_key(operation, key)}@{generation}", load
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[{self.service_id}] {message}")


def normalize_user(data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Subset of a GitHub user object that callers rely on."""
    if not data:
        return None
    return {
        "id": data.get("id"),
        "login": data.get("login"),
        "name": data.get("name"),
        "avatar_url": data.get("avatar_url"),
        "html_url": data.get("html_url"),
        "type": data.get("type"),
    }
