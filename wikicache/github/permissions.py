"""
Repository permission levels.

GitHub reports admin, maintain, write, triage, read or none; these are
folded into the four levels the wiki distinguishes.
"""

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import permission_key
from wikicache.services.cache import Tiers
from wikicache.services.errors import NotFoundError, PermissionDeniedError

ADMIN = "admin"
WRITE = "write"
READ = "read"
NONE = "none"

_LEVELS = {
    "admin": ADMIN,
    "maintain": WRITE,
    "write": WRITE,
    "push": WRITE,
    "triage": READ,
    "read": READ,
    "pull": READ,
    "none": NONE,
}


class PermissionService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "permissions"

    async def get_user_permission(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> str:
        """
        Permission level of ``username`` on ``owner/repo``.

        Passing ``user_id`` lets the cache notice a rename: entries stored
        under the user's previous name are dropped before the lookup.

        Returns:
            "admin", "write", "read" or "none"
        """
        if user_id is not None:
            self.cache.update_user_mapping(user_id, username)

        key = permission_key(owner, repo, username)

        async def fetch() -> str:
            try:
                response = await self.client.get(
                    f"/repos/{owner}/{repo}/collaborators/{username}/permission"
                )
            except NotFoundError:
                self._log(f"{username} has no access to {owner}/{repo}")
                return NONE
            except PermissionDeniedError:
                # Only collaborators with push access may read permission levels.
                return await self._probe_repository(owner, repo, username)
            permission = (response.data or {}).get("permission", NONE)
            return _LEVELS.get(permission, READ)

        return await self._cached(Tiers.PERMISSIONS, key, fetch, "get_user_permission")

    async def _probe_repository(self, owner: str, repo: str, username: str) -> str:
        """
        Fallback when the level cannot be read: a visible (or merely
        forbidden) repository means read, a missing one means none. Other
        failures propagate.
        """
        try:
            await self.client.get(f"/repos/{owner}/{repo}")
        except NotFoundError:
            return NONE
        except PermissionDeniedError:
            self._log(f"Repository probe for {username} denied; assuming read")
            return READ
        return READ

    async def has_write_access(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> bool:
        permission = await self.get_user_permission(owner, repo, username, user_id)
        return permission in (WRITE, ADMIN)

    async def has_admin_access(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> bool:
        permission = await self.get_user_permission(owner, repo, username, user_id)
        return permission == ADMIN

    def invalidate_permission(self, owner: str, repo: str, username: str) -> bool:
        return self.tier(Tiers.PERMISSIONS).delete(permission_key(owner, repo, username))
