"""
GitHub user profiles.
"""

import asyncio
from typing import Any, Iterable

from loguru import logger

from wikicache.github.base import BaseGitHubService, normalize_user
from wikicache.github.keys import user_key
from wikicache.services.cache import Tiers

AUTHENTICATED_USER_KEY = "me"


class UserService(BaseGitHubService):
    """Profiles are cached for 24h and survive restarts."""

    @property
    def service_id(self) -> str:
        return "users"

    async def get_user_profile(self, username: str) -> dict[str, Any] | None:
        """Public profile for ``username``, or None if there is no such user."""
        key = user_key(username)

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get_or_none(f"/users/{key}")
            return normalize_user(response.data) if response else None

        profile = await self._cached(
            Tiers.USER_PROFILE, key, fetch, "get_user_profile", cache_none=False
        )
        self._track(profile)
        return profile

    async def get_user_id(self, username: str) -> int | None:
        profile = await self.get_user_profile(username)
        return profile["id"] if profile else None

    async def prefetch_users(self, usernames: Iterable[str]) -> dict[str, dict[str, Any]]:
        """
        Warm the profile cache for many users at once.

        Failures are logged and skipped; the returned mapping only holds
        the profiles that were loaded.
        """
        names = list(dict.fromkeys(user_key(name) for name in usernames))
        if not names:
            return {}

        results = await asyncio.gather(
            *(self.get_user_profile(name) for name in names), return_exceptions=True
        )

        profiles: dict[str, dict[str, Any]] = {}
        failed = 0
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                failed += 1
                logger.warning(f"Failed to prefetch profile for {name}: {result}")
            elif result is not None:
                profiles[name] = result

        logger.info(f"Prefetched {len(profiles)}/{len(names)} user profiles ({failed} failed)")
        return profiles

    async def get_authenticated_user(self) -> dict[str, Any] | None:
        """The user the client is authenticated as, or None when anonymous."""
        if not self.client.is_authenticated:
            return None

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get("/user")
            return normalize_user(response.data)

        user = await self._cached(
            Tiers.AUTHENTICATED_USER, AUTHENTICATED_USER_KEY, fetch, "get_authenticated_user"
        )
        self._track(user)
        return user

    def invalidate_user_profile(self, username: str) -> bool:
        return self.tier(Tiers.USER_PROFILE).delete(user_key(username))

    def _track(self, profile: dict[str, Any] | None) -> None:
        if profile and profile.get("id") is not None and profile.get("login"):
            self.cache.update_user_mapping(profile["id"], profile["login"])
