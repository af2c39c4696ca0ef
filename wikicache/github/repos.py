"""
Repository metadata, collaborators and branches.
"""

from typing import Any

from wikicache.github.base import BaseGitHubService, normalize_user
from wikicache.github.keys import repo_key
from wikicache.services.cache import Tiers


def normalize_repository(data: dict[str, Any]) -> dict[str, Any]:
    parent = data.get("parent") or {}
    return {
        "id": data.get("id"),
        "name": data.get("name"),
        "full_name": data.get("full_name"),
        "owner": (data.get("owner") or {}).get("login"),
        "description": data.get("description"),
        "default_branch": data.get("default_branch", "main"),
        "private": data.get("private", False),
        "fork": data.get("fork", False),
        "parent": parent.get("full_name"),
        "html_url": data.get("html_url"),
        "clone_url": data.get("clone_url"),
    }


class RepositoryService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "repos"

    async def get_repository(self, owner: str, repo: str) -> dict[str, Any] | None:
        """Repository metadata, or None if it does not exist or is not visible."""
        key = repo_key(owner, repo)

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get_or_none(f"/repos/{owner}/{repo}")
            return normalize_repository(response.data) if response else None

        return await self._cached(
            Tiers.REPOSITORY, key, fetch, "get_repository", cache_none=False
        )

    async def get_collaborators(self, owner: str, repo: str) -> list[dict[str, Any]]:
        """
        Collaborators with their role. Needs push access to the repository;
        a PermissionDeniedError is propagated, never turned into an empty list.
        """
        key = repo_key(owner, repo)

        async def fetch() -> list[dict[str, Any]]:
            collaborators: list[dict[str, Any]] = []
            page = 1
            while True:
                response = await self.client.get(
                    f"/repos/{owner}/{repo}/collaborators",
                    params={"per_page": 100, "page": page},
                )
                for item in response.data or []:
                    user = normalize_user(item)
                    user["role_name"] = item.get("role_name")
                    collaborators.append(user)
                if not response.link_next:
                    return collaborators
                page += 1

        return await self._cached(Tiers.COLLABORATORS, key, fetch, "get_collaborators")

    async def list_branches(self, owner: str, repo: str) -> list[dict[str, Any]]:
        key = repo_key(owner, repo)

        async def fetch() -> list[dict[str, Any]]:
            branches: list[dict[str, Any]] = []
            page = 1
            while True:
                response = await self.client.get(
                    f"/repos/{owner}/{repo}/branches",
                    params={"per_page": 100, "page": page},
                )
                branches.extend(
                    {
                        "name": b.get("name"),
                        "sha": (b.get("commit") or {}).get("sha"),
                        "protected": b.get("protected", False),
                    }
                    for b in response.data or []
                )
                if not response.link_next:
                    return branches
                page += 1

        return await self._cached(Tiers.BRANCHES, key, fetch, "list_branches")

    def invalidate_repository(self, owner: str, repo: str) -> bool:
        return self.tier(Tiers.REPOSITORY).delete(repo_key(owner, repo))

    def invalidate_collaborators(self, owner: str, repo: str) -> bool:
        return self.tier(Tiers.COLLABORATORS).delete(repo_key(owner, repo))

    def invalidate_branches(self, owner: str, repo: str) -> bool:
        return self.tier(Tiers.BRANCHES).delete(repo_key(owner, repo))
