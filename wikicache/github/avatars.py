"""
Custom profile pictures.

Custom avatars live outside GitHub, behind the endpoint configured as
``AVATAR_API_URL``:

- ``GET ?userId=<id>`` -> ``{"profilePicture": {...} | null}``
- ``GET ?all=true`` -> ``{"profilePictures": {<userId>: {...}}}``
"""

from datetime import datetime, timezone
from typing import Any

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import avatar_key
from wikicache.services.cache import Tiers
from wikicache.services.errors import ConfigurationError

REGISTRY_KEY = "all"


class AvatarService(BaseGitHubService):
    """
    Per-user avatar records are cached for 24h, one durable entry each; the
    full registry for one minute.
    """

    def __init__(self, *args: Any, endpoint: str = "", **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.endpoint = endpoint

    @property
    def service_id(self) -> str:
        return "avatars"

    def is_configured(self) -> bool:
        return bool(self.endpoint)

    def _require_endpoint(self) -> str:
        if not self.endpoint:
            raise ConfigurationError("AVATAR_API_URL is not configured", self.service_id)
        return self.endpoint

    async def get_custom_avatar_data(self, user_id: int) -> dict[str, Any] | None:
        """Avatar record (``customAvatarUrl``, ``uploadDate``...) or None if unset."""
        endpoint = self._require_endpoint()

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get_external(endpoint, params={"userId": user_id})
            return (response.data or {}).get("profilePicture") or None

        return await self._cached(
            Tiers.CUSTOM_AVATAR, avatar_key(user_id), fetch, "get_custom_avatar_data"
        )

    async def get_custom_avatar(self, user_id: int) -> str | None:
        data = await self.get_custom_avatar_data(user_id)
        return data.get("customAvatarUrl") if data else None

    async def get_custom_avatar_or_fallback(self, user_id: int | None, default: str) -> str:
        """
        Custom avatar URL, or ``default`` (usually the GitHub avatar) when the
        user has none or custom avatars are not configured. Errors reaching
        the avatar endpoint propagate.
        """
        if not user_id or not self.is_configured():
            return default
        return await self.get_custom_avatar(user_id) or default

    async def load_custom_avatar_registry(self) -> dict[str, Any]:
        """Every custom avatar, keyed by user id."""
        endpoint = self._require_endpoint()

        async def fetch() -> dict[str, Any]:
            response = await self.client.get_external(endpoint, params={"all": "true"})
            return (response.data or {}).get("profilePictures") or {}

        return await self._cached(
            Tiers.AVATAR_REGISTRY, REGISTRY_KEY, fetch, "load_custom_avatar_registry"
        )

    def invalidate_custom_avatar(self, user_id: int) -> None:
        self.tier(Tiers.CUSTOM_AVATAR).delete(avatar_key(user_id))
        self.tier(Tiers.AVATAR_REGISTRY).delete(REGISTRY_KEY)

    def prime_custom_avatar(
        self, user_id: int, avatar_url: str, upload_date: str | None = None
    ) -> dict[str, Any]:
        """Record a just-uploaded avatar so the next read needs no fetch."""
        data = {
            "customAvatarUrl": avatar_url,
            "uploadDate": upload_date or datetime.now(timezone.utc).isoformat(),
            "userId": user_id,
        }
        self.invalidate_custom_avatar(user_id)
        self.tier(Tiers.CUSTOM_AVATAR).set(avatar_key(user_id), data)
        return data
