"""
WikiCache - one cache, de-duplicator and client per user (or tenant).

Nothing here is process-global: a server handling several users builds
one WikiCache per authenticated user, keyed by ``tenant``, so
user-scoped tiers and the authenticated client are never shared.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

import httpx
from loguru import logger

from wikicache.github import (
    AvatarService,
    BuildService,
    ContentService,
    DonatorService,
    ForkService,
    PermissionService,
    PullRequestService,
    RepositoryService,
    UserService,
)
from wikicache.services.cache import DEFAULT_TIERS, TierConfig, TieredCacheStore
from wikicache.services.client import GitHubClient
from wikicache.services.deduplicator import RequestDeduplicator
from wikicache.services.janitor import CacheJanitor
from wikicache.services.retry import RetryObserver, RetryPolicy
from wikicache.services.storage import DurableStore, MemoryStore, SqlStore
from wikicache.settings import Settings, get_settings


class WikiCache:
    """
    Facade over the caching and request-coordination layer.

    Usage:
        async with WikiCache(tenant="alice", token=alice_token) as wiki:
            page = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
            level = await wiki.permissions.get_user_permission("acme", "wiki", "alice")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        tenant: str | None = None,
        store: DurableStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        observer: RetryObserver | None = None,
        clock: Callable[[], datetime] | None = None,
        tiers: Iterable[TierConfig] = DEFAULT_TIERS,
        token: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        enable_janitor: bool = False,
    ):
        self.settings = settings or get_settings()
        debug = self.settings.cache_debug

        self._owns_store = store is None
        if store is None:
            if self.settings.cache_database_url:
                store = SqlStore(self.settings.cache_database_url)
            else:
                store = MemoryStore()
        self.store = store

        self.cache = TieredCacheStore(
            tiers=tiers,
            store=store,
            namespace=self.settings.cache_namespace,
            tenant=tenant,
            server_mode=self.settings.server_mode,
            clock=clock or datetime.now,
            debug=debug,
        )
        self.deduplicator = RequestDeduplicator(debug=debug)
        self.retry_policy = RetryPolicy(
            self.settings.retry_config(), observer=observer, sleep=sleep
        )
        self.client = GitHubClient(
            self.settings,
            retry_policy=self.retry_policy,
            transport=transport,
            token=token,
        )
        self.janitor = (
            CacheJanitor(self.cache, self.settings.cache_cleanup_interval_minutes)
            if enable_janitor
            else None
        )

        args = (self.client, self.cache, self.deduplicator)
        self.content = ContentService(*args, debug=debug)
        self.users = UserService(*args, debug=debug)
        self.repos = RepositoryService(*args, debug=debug)
        self.permissions = PermissionService(*args, debug=debug)
        self.forks = ForkService(*args, debug=debug)
        self.pulls = PullRequestService(*args, debug=debug)
        self.donators = DonatorService(*args, debug=debug)
        self.avatars = AvatarService(*args, endpoint=self.settings.avatar_api_url, debug=debug)
        self.builds = BuildService(*args, debug=debug)

    @property
    def tenant(self) -> str | None:
        return self.cache.tenant

    async def init(self) -> None:
        """Load durable snapshots and start the janitor (if enabled)."""
        self.cache.init()
        if self.janitor is not None and not self.janitor.is_running():
            self.janitor.start()

    async def teardown(self) -> None:
        """Cancel in-flight fetches, close the client, stop the janitor."""
        cancelled = self.deduplicator.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} in-flight requests")
        await self.client.close()
        if self.janitor is not None:
            self.janitor.stop()
        self.cache.teardown()
        if self._owns_store and isinstance(self.store, SqlStore):
            self.store.close()

    async def __aenter__(self) -> "WikiCache":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.teardown()

    def get_health_status(self) -> dict[str, Any]:
        """Snapshot of cache, de-duplication and API usage."""
        return {
            "initialized": self.cache.initialized,
            "tenant": self.tenant,
            "authenticated": self.client.is_authenticated,
            "api_calls": self.client.api_calls,
            "deduplicator": self.deduplicator.get_stats().to_dict(),
            "cache": self.cache.get_stats(),
            "janitor_running": self.janitor.is_running() if self.janitor else False,
        }
