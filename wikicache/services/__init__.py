"""
Service layer infrastructure - caching and request coordination for GitHub.

Provides:
- RetryPolicy: Backoff retry with rate-limit observers
- RequestDeduplicator: Prevents duplicate concurrent requests
- TieredCacheStore: Per-resource-class caches with TTL, LRU and durability
- GitHubClient: httpx client routed through the retry policy
- CacheJanitor: Scheduled cleanup of expired entries
"""

from wikicache.services.errors import (
    ServiceError,
    ConfigurationError,
    CacheKeyError,
    StorageError,
    StorageQuotaError,
    NetworkError,
    RequestTimeoutError,
    GitHubAPIError,
    RateLimitError,
    NotFoundError,
    ConflictError,
    PermissionDeniedError,
    AuthenticationError,
    ServerError,
    describe_error,
)
from wikicache.services.retry import (
    RetryConfig,
    RetryEvent,
    RetryEventKind,
    RetryObserver,
    LoggingRetryObserver,
    RecordingRetryObserver,
    CompositeRetryObserver,
    RetryPolicy,
)
from wikicache.services.deduplicator import RequestDeduplicator
from wikicache.services.storage import DurableStore, MemoryStore, SqlStore
from wikicache.services.cache import (
    DEFAULT_TIERS,
    CacheTier,
    TierConfig,
    Tiers,
    TieredCacheStore,
)
from wikicache.services.client import GitHubClient, GitHubResponse
from wikicache.services.janitor import CacheJanitor

__all__ = [
    # Errors
    "ServiceError",
    "ConfigurationError",
    "CacheKeyError",
    "StorageError",
    "StorageQuotaError",
    "NetworkError",
    "RequestTimeoutError",
    "GitHubAPIError",
    "RateLimitError",
    "NotFoundError",
    "ConflictError",
    "PermissionDeniedError",
    "AuthenticationError",
    "ServerError",
    "describe_error",
    # Retry
    "RetryConfig",
    "RetryEvent",
    "RetryEventKind",
    "RetryObserver",
    "LoggingRetryObserver",
    "RecordingRetryObserver",
    "CompositeRetryObserver",
    "RetryPolicy",
    # Deduplicator
    "RequestDeduplicator",
    # Storage
    "DurableStore",
    "MemoryStore",
    "SqlStore",
    # Cache
    "DEFAULT_TIERS",
    "CacheTier",
    "TierConfig",
    "Tiers",
    "TieredCacheStore",
    # Client
    "GitHubClient",
    "GitHubResponse",
    # Janitor
    "CacheJanitor",
]
