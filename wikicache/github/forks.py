"""
User forks of the wiki repository.
"""

from typing import Any

from loguru import logger

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import fork_key, repo_key
from wikicache.services.cache import Tiers
from wikicache.services.errors import ConflictError


def normalize_fork(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "owner": (data.get("owner") or {}).get("login"),
        "repo": data.get("name"),
        "full_name": data.get("full_name"),
        "default_branch": data.get("default_branch", "main"),
        "html_url": data.get("html_url"),
        "clone_url": data.get("clone_url"),
    }


def is_fork_of(data: dict[str, Any], owner: str, repo: str) -> bool:
    parent = data.get("parent") or {}
    if not data.get("fork") or not parent:
        return False
    parent_owner = (parent.get("owner") or {}).get("login", "")
    return (
        parent_owner.lower() == owner.lower()
        and parent.get("name", "").lower() == repo.lower()
    )


class ForkService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "forks"

    async def get_user_fork(self, owner: str, repo: str, username: str) -> dict[str, Any] | None:
        """
        ``username``'s fork of ``owner/repo``.

        None if the user has no repository of that name, or has one that is
        not a fork of upstream. Both answers are cached for 30 minutes;
        ``create_fork`` overwrites them.
        """
        key = fork_key(owner, repo, username)

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get_or_none(f"/repos/{username}/{repo}")
            if response is None:
                self._log(f"No fork found for {username}")
                return None
            if not is_fork_of(response.data, owner, repo):
                logger.info(
                    f"{username}/{repo} exists but is not a fork of {owner}/{repo}"
                )
                return None
            return normalize_fork(response.data)

        return await self._cached(Tiers.FORK_STATUS, key, fetch, "get_user_fork")

    async def create_fork(self, owner: str, repo: str) -> dict[str, Any]:
        """Fork ``owner/repo`` for the authenticated user and cache the result."""
        response = await self.client.post(f"/repos/{owner}/{repo}/forks")
        fork = normalize_fork(response.data)
        logger.info(f"Fork created: {fork['full_name']}")

        if fork["owner"]:
            self.tier(Tiers.FORK_STATUS).set(fork_key(owner, repo, fork["owner"]), fork)
        return fork

    async def sync_fork(
        self, fork_owner: str, fork_repo: str, branch: str | None = None
    ) -> dict[str, Any]:
        """
        Merge upstream into the fork's branch (default branch if not given).
        A 409 means there is nothing to merge.
        """
        if branch is None:
            response = await self.client.get(f"/repos/{fork_owner}/{fork_repo}")
            branch = response.data.get("default_branch", "main")

        try:
            response = await self.client.post(
                f"/repos/{fork_owner}/{fork_repo}/merge-upstream",
                json_data={"branch": branch},
                idempotent=True,
            )
        except ConflictError:
            logger.info(f"Fork {fork_owner}/{fork_repo} is already up to date")
            return {
                "merged": False,
                "already_up_to_date": True,
                "base_branch": branch,
                "message": "Fork is already up to date",
            }

        # The fork's branch moved; cached file revisions of it are stale.
        prefix = f"{repo_key(fork_owner, fork_repo)}/"
        for tier in (Tiers.FILE_CONTENT, Tiers.COMMIT_LIST):
            self.tier(tier).invalidate_where(lambda key: key.startswith(prefix))

        data = response.data or {}
        logger.info(f"Fork {fork_owner}/{fork_repo} synced ({data.get('merge_type')})")
        return {
            "merged": True,
            "already_up_to_date": False,
            "merge_type": data.get("merge_type"),
            "base_branch": data.get("base_branch", branch),
            "message": data.get("message"),
        }
