"""
Edit requests (pull requests) per user.

GitHub cannot list pull requests by author, so a user's PRs are paged by
over-fetching the repository's full list and filtering client-side.
"""

import asyncio
from typing import Any

from loguru import logger

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import (
    repo_key,
    user_pull_requests_key,
    user_pull_requests_pattern,
)
from wikicache.services.cache import Tiers
from wikicache.services.errors import NotFoundError

REMOTE_PAGE_SIZE = 100  # GitHub's maximum


def user_id_label(user_id: int | None) -> str | None:
    return f"user-id:{user_id}" if user_id is not None else None


def _label_names(pr: dict[str, Any]) -> list[str]:
    return [
        label if isinstance(label, str) else (label or {}).get("name", "")
        for label in pr.get("labels") or []
    ]


def is_pr_for_user(pr: dict[str, Any], username: str, user_id: int | None = None) -> bool:
    """
    True if ``pr`` was opened by ``username``, or was opened on their behalf
    (anonymous edit linked with a ``user-id:<id>`` label).
    """
    login = ((pr.get("user") or {}).get("login") or "").lower()
    if login and login == username.lower():
        return True
    label = user_id_label(user_id)
    return label is not None and label in _label_names(pr)


def normalize_pull_request(data: dict[str, Any]) -> dict[str, Any]:
    user = data.get("user") or {}
    head = data.get("head") or {}
    base = data.get("base") or {}
    return {
        "number": data.get("number"),
        "title": data.get("title"),
        "body": data.get("body"),
        "state": data.get("state"),
        "html_url": data.get("html_url"),
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
        "merged_at": data.get("merged_at"),
        # Only present on the single-PR endpoint
        "additions": data.get("additions", 0),
        "deletions": data.get("deletions", 0),
        "changed_files": data.get("changed_files", 0),
        "commits": data.get("commits", 0),
        "user": {"login": user.get("login"), "avatar_url": user.get("avatar_url")},
        "head": {"ref": head.get("ref"), "sha": head.get("sha")},
        "base": {"ref": base.get("ref")},
        "labels": _label_names(data),
    }


class PullRequestService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "pulls"

    async def get_user_pull_requests(
        self,
        owner: str,
        repo: str,
        username: str,
        user_id: int | None = None,
        base: str | None = None,
        page: int = 1,
        per_page: int = 10,
    ) -> dict[str, Any]:
        """
        One page of a user's pull requests, most recently updated first.

        Returns:
            ``{"prs": [...], "has_more": bool, "total_count": int}``.
            ``total_count`` counts the matches seen so far, which may be
            fewer than exist when fetching stopped early.
        """
        if user_id is not None:
            self.cache.update_user_mapping(user_id, username)

        key = user_pull_requests_key(owner, repo, username, base, page, per_page, user_id)

        async def fetch() -> dict[str, Any]:
            skip = (page - 1) * per_page
            matches = await self._collect_user_pull_requests(
                owner, repo, username, user_id, base, needed=skip + per_page + 1
            )
            page_items = matches[skip : skip + per_page]
            detailed = await asyncio.gather(
                *(self._get_details(owner, repo, pr) for pr in page_items)
            )
            return {
                "prs": list(detailed),
                "has_more": len(matches) > skip + per_page,
                "total_count": len(matches),
            }

        return await self._cached(Tiers.PULL_REQUESTS, key, fetch, "get_user_pull_requests")

    async def _collect_user_pull_requests(
        self,
        owner: str,
        repo: str,
        username: str,
        user_id: int | None,
        base: str | None,
        needed: int,
    ) -> list[dict[str, Any]]:
        """
        Walk the repository's PR list until ``needed`` of the user's PRs are
        found or the list runs out.
        """
        matches: list[dict[str, Any]] = []
        remote_page = 1
        while len(matches) < needed:
            params: dict[str, Any] = {
                "state": "all",
                "sort": "updated",
                "direction": "desc",
                "per_page": REMOTE_PAGE_SIZE,
                "page": remote_page,
            }
            if base:
                params["base"] = base

            response = await self.client.get(f"/repos/{owner}/{repo}/pulls", params=params)
            batch = response.data or []
            found = [pr for pr in batch if is_pr_for_user(pr, username, user_id)]
            matches.extend(found)
            self._log(
                f"Remote page {remote_page}: {len(found)}/{len(batch)} PRs by {username}"
            )

            if len(batch) < REMOTE_PAGE_SIZE:
                break
            remote_page += 1
        return matches

    async def _get_details(self, owner: str, repo: str, pr: dict[str, Any]) -> dict[str, Any]:
        """The list endpoint lacks diff stats; fetch them per PR."""
        response = await self.client.get_or_none(f"/repos/{owner}/{repo}/pulls/{pr['number']}")
        if response is None:
            logger.warning(f"PR #{pr['number']} vanished while loading details")
            return normalize_pull_request(pr)
        return normalize_pull_request(response.data)

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        head: str,
        base: str = "main",
        body: str = "",
        user_id: int | None = None,
        labels: list[str] | None = None,
    ) -> dict[str, Any]:
        """
        Open a pull request. ``user_id`` links an anonymous edit to a user
        with a ``user-id:<id>`` label so it shows up in their list.
        """
        response = await self.client.post(
            f"/repos/{owner}/{repo}/pulls",
            json_data={"title": title, "head": head, "base": base, "body": body},
        )
        pr = response.data
        label_list = list(labels or [])
        if user_id is not None:
            label_list.append(user_id_label(user_id))
        if label_list:
            await self.client.post(
                f"/repos/{owner}/{repo}/issues/{pr['number']}/labels",
                json_data={"labels": label_list},
                idempotent=True,
            )
            pr["labels"] = [{"name": name} for name in label_list]

        author = (pr.get("user") or {}).get("login")
        self._invalidate_for(owner, repo, author, user_id)
        logger.info(f"Opened PR #{pr['number']} on {owner}/{repo}")
        return normalize_pull_request(pr)

    async def close_pull_request(
        self, owner: str, repo: str, number: int, username: str | None = None
    ) -> dict[str, Any]:
        try:
            response = await self.client.patch(
                f"/repos/{owner}/{repo}/pulls/{number}",
                json_data={"state": "closed"},
                idempotent=True,
            )
        except NotFoundError:
            self._invalidate_for(owner, repo, username, None)
            raise
        pr = response.data
        author = username or (pr.get("user") or {}).get("login")
        self._invalidate_for(owner, repo, author, None)
        return normalize_pull_request(pr)

    def invalidate_user_pull_requests(self, owner: str, repo: str, username: str) -> int:
        return self.tier(Tiers.PULL_REQUESTS).invalidate(
            user_pull_requests_pattern(owner, repo, username)
        )

    def _invalidate_for(
        self, owner: str, repo: str, username: str | None, user_id: int | None
    ) -> None:
        tier = self.tier(Tiers.PULL_REQUESTS)
        if username:
            self.invalidate_user_pull_requests(owner, repo, username)
        if user_id is not None:
            # Linked PRs appear under whatever name the user currently has.
            current = self.cache.users.username_for(user_id)
            if current:
                self.invalidate_user_pull_requests(owner, repo, current)
        if not username and user_id is None:
            tier.invalidate(f"{repo_key(owner, repo)}/user/*")
