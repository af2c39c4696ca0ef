"""
TieredCacheStore - Per-resource-class caches with TTL, LRU and durability.

Features:
- One CacheTier per resource class, each with its own TTL and size bound
- Lazy TTL expiry on read, plus bulk cleanup for the janitor
- LRU eviction of the least recently accessed 20% when a tier is full
- Optional durable snapshot, rewritten on every mutation
- User-id index so a username change supersedes entries under the old name

All operations are synchronous: under a single event loop no two cache
operations interleave, so there is no read-modify-write race on a key.
"""

import fnmatch
import json
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

from loguru import logger

from wikicache.services.errors import ConfigurationError, StorageError
from wikicache.services.storage import DurableStore, MemoryStore, storage_key

T = TypeVar("T")

EVICTION_FRACTION = 0.2
_GLOB_CHARS = re.compile(r"[*?\[]")
_SEGMENT_SPLIT = re.compile(r"[/:]")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class Tiers:
    """Names of the built-in tiers."""

    USER_PROFILE = "user-profile"
    COLLABORATORS = "repo-collaborators"
    REPOSITORY = "repository"
    CUSTOM_AVATAR = "custom-avatar"
    AVATAR_REGISTRY = "avatar-registry"
    PERMISSIONS = "permissions"
    FORK_STATUS = "fork-status"
    DONATOR_STATUS = "donator-status"
    BUILD_INDEX = "build-share-index"
    BUILDS = "builds"
    FILE_CONTENT = "file-content"
    COMMIT_LIST = "commit-list"
    PULL_REQUESTS = "pull-requests"
    BRANCHES = "branches"
    AUTHENTICATED_USER = "authenticated-user"


@dataclass(frozen=True)
class TierConfig:
    """
    Policy for one tier.

    ttl=None means entries never expire (immutable content, or cached
    until an explicit bust). max_entries=None means unbounded.
    """

    name: str
    ttl: timedelta | None
    max_entries: int | None = None
    persistent: bool = False
    per_key_storage: bool = False
    tenant_scoped: bool = False
    username_segment: int | None = None  # position of the username in the key
    storage_name: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Tier name must not be empty")
        if self.ttl is not None and self.ttl <= timedelta(0):
            raise ConfigurationError(f"Tier '{self.name}' TTL must be positive")
        if self.max_entries is not None and self.max_entries <= 0:
            raise ConfigurationError(f"Tier '{self.name}' max_entries must be positive")
        if self.per_key_storage and not self.persistent:
            raise ConfigurationError(
                f"Tier '{self.name}' uses per-key storage but is not persistent"
            )
        if self.username_segment is not None and self.username_segment < 0:
            raise ConfigurationError(
                f"Tier '{self.name}' username_segment must not be negative"
            )

    @property
    def durable_name(self) -> str:
        return self.storage_name or self.name.replace("-", "_")

    @property
    def username_keyed(self) -> bool:
        return self.username_segment is not None

    def username_of(self, key: str) -> str | None:
        """The username a key was built from, for username-keyed tiers."""
        if self.username_segment is None:
            return None
        segments = key_segments(key)
        if len(segments) <= self.username_segment:
            return None
        return segments[self.username_segment].lower()


DEFAULT_TIERS: tuple[TierConfig, ...] = (
    TierConfig(
        Tiers.USER_PROFILE,
        ttl=timedelta(hours=24),
        max_entries=200,
        persistent=True,
        tenant_scoped=True,
        username_segment=0,  # <user>
        storage_name="github_users",
    ),
    TierConfig(
        Tiers.COLLABORATORS,
        ttl=timedelta(hours=24),
        max_entries=50,
        persistent=True,
        storage_name="github_collaborators",
    ),
    TierConfig(
        Tiers.REPOSITORY,
        ttl=timedelta(hours=6),
        max_entries=10,
        persistent=True,
        storage_name="github_repositories",
    ),
    TierConfig(
        Tiers.CUSTOM_AVATAR,
        ttl=timedelta(hours=24),
        persistent=True,
        per_key_storage=True,
        storage_name="custom_avatar_data",
    ),
    TierConfig(
        Tiers.AVATAR_REGISTRY,
        ttl=timedelta(minutes=1),
        persistent=True,
        storage_name="custom_avatar_registry",
    ),
    TierConfig(
        Tiers.PERMISSIONS,
        ttl=timedelta(minutes=10),
        tenant_scoped=True,
        username_segment=2,  # <owner>/<repo>/<user>
    ),
    TierConfig(
        Tiers.FORK_STATUS,
        ttl=timedelta(minutes=30),
        username_segment=3,  # <owner>/<repo>/fork/<user>
    ),
    TierConfig(
        Tiers.DONATOR_STATUS,
        ttl=None,
        username_segment=3,  # <owner>/<repo>/donator/<user>[/id/<id>]
    ),
    TierConfig(Tiers.BUILD_INDEX, ttl=None),
    TierConfig(Tiers.BUILDS, ttl=None),
    TierConfig(Tiers.FILE_CONTENT, ttl=timedelta(minutes=10), max_entries=500),
    TierConfig(Tiers.COMMIT_LIST, ttl=timedelta(minutes=10), max_entries=200),
    TierConfig(
        Tiers.PULL_REQUESTS,
        ttl=timedelta(minutes=10),
        tenant_scoped=True,
        username_segment=3,  # <owner>/<repo>/user/<user>/...
    ),
    TierConfig(Tiers.BRANCHES, ttl=timedelta(minutes=10)),
    TierConfig(
        Tiers.AUTHENTICATED_USER, ttl=timedelta(minutes=5), tenant_scoped=True
    ),
)


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    data: T
    timestamp: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def is_expired(self, ttl: timedelta | None, now: datetime) -> bool:
        """Expired once age reaches the TTL."""
        return ttl is not None and self.age(now) >= ttl

    def to_dict(self, key: str) -> dict[str, Any]:
        return {"key": key, "value": self.data, "timestamp": self.timestamp.isoformat()}


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int | None = None

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


def key_segments(key: str) -> list[str]:
    return _SEGMENT_SPLIT.split(key)


class CacheTier:
    """
    One named cache partition.

    Entries are kept in an OrderedDict whose order is last-access order,
    least recent first. Durable snapshots are written in that order so a
    reload preserves LRU state.

    Usage:
        tier = CacheTier(TierConfig("repos", ttl=timedelta(hours=6), max_entries=10))
        tier.set("acme/wiki", data)
        data = tier.get("acme/wiki")
    """

    def __init__(
        self,
        config: TierConfig,
        store: DurableStore | None = None,
        durable_key: str | None = None,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        if config.persistent and store is None:
            raise ConfigurationError(f"Persistent tier '{config.name}' needs a durable store")
        self.config = config
        self._store = store if config.persistent else None
        self._durable_key = durable_key or storage_key("cache", config.durable_name)
        self._clock = clock
        self._debug = debug
        self._memory: OrderedDict[str, CacheEntry[Any]] = OrderedDict()
        self._stats = CacheStats()
        self._generation = 0

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def generation(self) -> int:
        """Bumped by every explicit invalidation (delete, invalidate, clear)."""
        return self._generation

    # Reads

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` if absent or expired."""
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:80]}")
            return default

        if entry.is_expired(self.config.ttl, self._clock()):
            self._stats.misses += 1
            self._stats.expirations += 1
            self._log(f"EXPIRED: {key[:80]}")
            self._remove(key)
            return default

        self._memory.move_to_end(key)
        self._stats.hits += 1
        self._log(f"HIT: {key[:80]}")
        return entry.data

    def peek(self, key: str) -> CacheEntry[Any] | None:
        """Fresh entry for ``key`` without touching LRU order or stats."""
        entry = self._memory.get(key)
        if entry is None or entry.is_expired(self.config.ttl, self._clock()):
            return None
        return entry

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def __len__(self) -> int:
        return len(self._memory)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._memory))

    def keys(self) -> list[str]:
        return list(self._memory)

    # Writes

    def set(self, key: str, value: Any) -> None:
        if not key:
            raise ConfigurationError(f"Empty cache key for tier '{self.name}'")

        max_entries = self.config.max_entries
        if (
            max_entries is not None
            and key not in self._memory
            and len(self._memory) >= max_entries
        ):
            self._evict_lru()

        self._memory[key] = CacheEntry(data=value, timestamp=self._clock())
        self._memory.move_to_end(key)
        self._log(f"SET: {key[:80]}")
        self._persist(changed=[key])

    def delete(self, key: str) -> bool:
        self._generation += 1
        if key not in self._memory:
            return False
        self._remove(key)
        self._log(f"DELETE: {key[:80]}")
        return True

    def invalidate(self, pattern: str) -> int:
        """
        Remove the entry named ``pattern``, or every entry matching it when it
        contains glob characters (``*``, ``?``, ``[``).
        """
        if not _GLOB_CHARS.search(pattern):
            return int(self.delete(pattern))
        return self.invalidate_where(lambda key: fnmatch.fnmatchcase(key, pattern))

    def invalidate_where(self, predicate: Callable[[str], bool]) -> int:
        self._generation += 1
        doomed = [key for key in self._memory if predicate(key)]
        for key in doomed:
            del self._memory[key]
        if doomed:
            self._log(f"INVALIDATE: {len(doomed)} entries")
            self._persist(removed=doomed)
        return len(doomed)

    def clear(self) -> None:
        """Drop every entry, including the durable copy."""
        count = len(self._memory)
        keys = list(self._memory)
        self._generation += 1
        self._memory.clear()
        if self._store is not None:
            try:
                if self.config.per_key_storage:
                    for key in keys:
                        self._store.remove(self._entry_key(key))
                self._store.remove(self._durable_key)
            except StorageError as e:
                logger.error(f"[Cache:{self.name}] Failed to clear durable copy: {e}")
        self._log(f"CLEAR: {count} entries removed")

    def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired = [
            key
            for key, entry in self._memory.items()
            if entry.is_expired(self.config.ttl, now)
        ]
        for key in expired:
            del self._memory[key]
        if expired:
            self._stats.expirations += len(expired)
            self._log(f"CLEANUP: {len(expired)} expired entries removed")
            self._persist(removed=expired)
        return len(expired)

    def _remove(self, key: str) -> None:
        del self._memory[key]
        self._persist(removed=[key])

    def _evict_lru(self) -> None:
        """Evict the least recently accessed 20% of max_entries (at least one)."""
        count = max(1, int(self.config.max_entries * EVICTION_FRACTION))
        victims = list(self._memory)[:count]
        for key in victims:
            del self._memory[key]
        self._stats.evictions += len(victims)
        logger.debug(
            f"[Cache:{self.name}] LRU eviction: removed {len(victims)} entries, "
            f"{len(self._memory)} remaining"
        )
        self._persist(removed=victims)

    # Durable snapshot

    def load(self) -> int:
        """Load the durable snapshot into memory and prune expired entries."""
        if self._store is None:
            return 0

        records: list[dict[str, Any]] = []
        try:
            if self.config.per_key_storage:
                prefix = f"{self._durable_key}:"
                for durable in self._store.keys(prefix):
                    raw = self._store.get(durable)
                    if raw:
                        records.append(json.loads(raw))
                records.sort(key=lambda r: r.get("timestamp", ""))
            else:
                raw = self._store.get(self._durable_key)
                if raw:
                    records = json.loads(raw)
        except (StorageError, ValueError) as e:
            logger.error(f"[Cache:{self.name}] Failed to load durable snapshot: {e}")
            return 0

        for record in records:
            try:
                entry = CacheEntry(
                    data=record["value"],
                    timestamp=datetime.fromisoformat(record["timestamp"]),
                )
                self._memory[record["key"]] = entry
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[Cache:{self.name}] Skipping malformed record: {e}")

        logger.debug(f"[Cache:{self.name}] Loaded {len(self._memory)} entries from durable store")
        self.cleanup_expired()
        return len(self._memory)

    def _entry_key(self, key: str) -> str:
        return f"{self._durable_key}:{key}"

    def _persist(
        self,
        changed: Iterable[str] = (),
        removed: Iterable[str] = (),
    ) -> None:
        if self._store is None:
            return
        try:
            if self.config.per_key_storage:
                for key in removed:
                    self._store.remove(self._entry_key(key))
                for key in changed:
                    payload = json.dumps(self._memory[key].to_dict(key))
                    self._store.set(self._entry_key(key), payload)
            else:
                snapshot = [entry.to_dict(key) for key, entry in self._memory.items()]
                self._store.set(self._durable_key, json.dumps(snapshot))
        except (StorageError, TypeError, ValueError) as e:
            # Memory stays authoritative; only durability is lost.
            logger.error(f"[Cache:{self.name}] Failed to save durable snapshot: {e}")

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self.config.max_entries
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Cache:{self.name}] {message}")


class UserIndex:
    """
    GitHub user id -> current username.

    Usernames change; ids do not. When an id shows up under a new name the
    old name is recorded as superseded so entries keyed by it can be dropped.
    """

    def __init__(self):
        self._names: dict[int, str] = {}
        self._superseded: dict[str, int] = {}

    def update(self, user_id: int, username: str) -> str | None:
        """Record ``username`` for ``user_id``; return the previous name if it changed."""
        name = username.lower()
        previous = self._names.get(user_id)
        self._names[user_id] = name
        self._superseded.pop(name, None)
        if previous is not None and previous != name:
            self._superseded[previous] = user_id
            return previous
        return None

    def username_for(self, user_id: int) -> str | None:
        return self._names.get(user_id)

    def is_superseded(self, username: str) -> bool:
        return username.lower() in self._superseded

    def to_dict(self) -> dict[str, Any]:
        return {
            "names": {str(k): v for k, v in self._names.items()},
            "superseded": dict(self._superseded),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserIndex":
        index = cls()
        index._names = {int(k): v for k, v in data.get("names", {}).items()}
        index._superseded = {k: int(v) for k, v in data.get("superseded", {}).items()}
        return index


class TieredCacheStore:
    """
    All cache tiers for one client (one browser session, or one tenant when
    running server-side).

    Usage:
        store = TieredCacheStore(tenant="alice")
        store.init()
        store.tier(Tiers.PERMISSIONS).set("acme/wiki/alice", "write")
        ...
        store.teardown()
    """

    def __init__(
        self,
        tiers: Iterable[TierConfig] = DEFAULT_TIERS,
        store: DurableStore | None = None,
        namespace: str = "cache",
        tenant: str | None = None,
        server_mode: bool = False,
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._configs: dict[str, TierConfig] = {}
        for config in tiers:
            if config.name in self._configs:
                raise ConfigurationError(f"Duplicate tier name '{config.name}'")
            self._configs[config.name] = config

        if server_mode and tenant is None:
            scoped = [c.name for c in self._configs.values() if c.tenant_scoped]
            if scoped:
                raise ConfigurationError(
                    f"Server mode requires a tenant key for user-scoped tiers: {scoped}"
                )

        self.store = store if store is not None else MemoryStore()
        self.namespace = namespace
        self.tenant = tenant
        self.server_mode = server_mode
        self._clock = clock
        self._debug = debug
        self._tiers: dict[str, CacheTier] = {}
        self.users = UserIndex()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self) -> None:
        """Create tiers and load persistent snapshots. Safe to call twice."""
        if self._initialized:
            return
        loaded = 0
        for name, config in self._configs.items():
            tier = CacheTier(
                config,
                store=self.store,
                durable_key=storage_key(self.namespace, config.durable_name, self.tenant),
                clock=self._clock,
                debug=self._debug,
            )
            loaded += tier.load()
            self._tiers[name] = tier
        self._load_user_index()
        self._initialized = True
        logger.info(
            f"Cache store initialized: {len(self._tiers)} tiers, {loaded} durable entries"
            + (f" (tenant {self.tenant})" if self.tenant else "")
        )

    def teardown(self) -> None:
        """Drop in-memory state. Durable snapshots are left for the next init."""
        self._tiers.clear()
        self.users = UserIndex()
        self._initialized = False
        logger.info("Cache store torn down")

    def tier(self, name: str) -> CacheTier:
        if not self._initialized:
            raise ConfigurationError("Cache store not initialized. Call init() first.")
        try:
            return self._tiers[name]
        except KeyError:
            raise ConfigurationError(f"Unknown cache tier '{name}'") from None

    def __getitem__(self, name: str) -> CacheTier:
        return self.tier(name)

    def tiers(self) -> list[CacheTier]:
        return list(self._tiers.values())

    # Username changes

    def update_user_mapping(self, user_id: int, username: str) -> int:
        """
        Track ``user_id`` -> ``username``. On a rename, invalidate every entry
        in username-keyed tiers that names the old username. Returns the
        number of entries invalidated.
        """
        if self.users.username_for(user_id) == username.lower():
            return 0
        previous = self.users.update(user_id, username)
        self._save_user_index()
        if previous is None:
            return 0
        removed = self.invalidate_user(previous)
        logger.info(
            f"Username change detected for user {user_id}: {previous} -> {username.lower()} "
            f"({removed} entries superseded)"
        )
        return removed

    def invalidate_user(self, username: str) -> int:
        name = username.lower()
        removed = 0
        for tier in self._tiers.values():
            config = tier.config
            if config.username_keyed:
                removed += tier.invalidate_where(
                    lambda key, config=config: config.username_of(key) == name
                )
        return removed

    def is_superseded_key(self, tier_name: str, key: str) -> bool:
        """True if ``key`` names a username that has since been renamed."""
        config = self._configs.get(tier_name)
        if config is None:
            return False
        name = config.username_of(key)
        return name is not None and self.users.is_superseded(name)

    def _user_index_key(self) -> str:
        return storage_key(self.namespace, "user_index", self.tenant)

    def _load_user_index(self) -> None:
        try:
            raw = self.store.get(self._user_index_key())
            if raw:
                self.users = UserIndex.from_dict(json.loads(raw))
        except (StorageError, ValueError, TypeError) as e:
            logger.error(f"Failed to load user index: {e}")

    def _save_user_index(self) -> None:
        try:
            self.store.set(self._user_index_key(), json.dumps(self.users.to_dict()))
        except StorageError as e:
            logger.error(f"Failed to save user index: {e}")

    # Bulk operations

    def invalidate_all(self) -> None:
        for tier in self._tiers.values():
            tier.clear()
        logger.info("Invalidated all cache tiers")

    def cleanup_expired(self) -> dict[str, int]:
        removed = {name: tier.cleanup_expired() for name, tier in self._tiers.items()}
        return {name: count for name, count in removed.items() if count}

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: tier.get_stats().to_dict() for name, tier in self._tiers.items()}
