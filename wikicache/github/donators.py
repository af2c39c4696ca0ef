"""
Donator registry.

Donator status is kept as one open issue per user in the wiki repository:

- Title: ``[Donator] <username>``
- Labels: ``donator`` and ``user-id:<id>``
- Body: JSON status record

Lookups prefer the ``user-id:`` label, which survives renames, and fall
back to the title for entries created before the label existed.
"""

import json
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import donator_key, repo_key, user_key
from wikicache.github.pull_requests import user_id_label
from wikicache.services.cache import Tiers

DONATOR_LABEL = "donator"
DONATOR_TITLE_PREFIX = "[Donator]"


class DonatorStatus(BaseModel):
    """Donator record as stored in the issue body."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    is_donator: bool = Field(alias="isDonator")
    donated_at: str | None = Field(default=None, alias="donatedAt")
    badge: str | None = None
    color: str | None = None
    assigned_by: str | None = Field(default=None, alias="assignedBy")
    amount: float | None = None
    transaction_id: str | None = Field(default=None, alias="transactionId")

    @model_validator(mode="after")
    def _require_details_for_donators(self) -> "DonatorStatus":
        if not self.is_donator:
            return self
        missing = [
            name
            for name in ("donated_at", "badge", "color", "assigned_by")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Donator status is missing {', '.join(missing)}")
        if self.donated_at:
            datetime.fromisoformat(self.donated_at.replace("Z", "+00:00"))
        return self


def donator_title(username: str) -> str:
    return f"{DONATOR_TITLE_PREFIX} {username}"


def find_donator_issue(
    issues: list[dict[str, Any]], username: str, user_id: int | None
) -> dict[str, Any] | None:
    """Match by ``user-id:`` label first, then by legacy title."""
    label = user_id_label(user_id)
    if label is not None:
        for issue in issues:
            names = [
                lbl if isinstance(lbl, str) else (lbl or {}).get("name")
                for lbl in issue.get("labels") or []
            ]
            if label in names:
                return issue

    title = donator_title(username).lower()
    for issue in issues:
        if (issue.get("title") or "").lower() == title:
            return issue
    return None


class DonatorService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "donators"

    async def get_donator_status(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> dict[str, Any] | None:
        """
        Donator record for a user, or None if they have none.

        A record whose body cannot be parsed is logged and reported as None.
        Failing to reach GitHub raises.
        """
        if user_id is not None:
            self.cache.update_user_mapping(user_id, username)

        key = donator_key(owner, repo, username, user_id)

        async def fetch() -> dict[str, Any] | None:
            issues = await self._list_donator_issues(owner, repo)
            issue = find_donator_issue(issues, username, user_id)
            if issue is None:
                self._log(f"No donator status for {username}")
                return None
            try:
                record = json.loads(issue.get("body") or "")
            except ValueError as e:
                logger.error(
                    f"Malformed donator record for {username} (issue #{issue.get('number')}): {e}"
                )
                return None
            if not isinstance(record, dict):
                logger.error(f"Donator record for {username} is not an object")
                return None
            return record

        return await self._cached(Tiers.DONATOR_STATUS, key, fetch, "get_donator_status")

    async def save_donator_status(
        self,
        owner: str,
        repo: str,
        username: str,
        user_id: int,
        status: DonatorStatus | dict[str, Any],
    ) -> dict[str, Any]:
        """
        Create or update a user's donator record. Legacy records found by
        title are migrated to the ``user-id:`` label.

        Raises:
            pydantic.ValidationError: ``status`` is incomplete
        """
        if not isinstance(status, DonatorStatus):
            status = DonatorStatus.model_validate(status)

        record = {
            "userId": user_id,
            "username": username,
            **status.model_dump(by_alias=True, exclude_none=True),
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        payload = {
            "title": donator_title(username),
            "body": json.dumps(record, indent=2),
            "labels": [DONATOR_LABEL, user_id_label(user_id)],
        }

        issues = await self._list_donator_issues(owner, repo)
        existing = find_donator_issue(issues, username, user_id)
        try:
            if existing is not None:
                await self.client.patch(
                    f"/repos/{owner}/{repo}/issues/{existing['number']}",
                    json_data=payload,
                    idempotent=True,
                )
                logger.info(f"Updated donator status for {username} (#{existing['number']})")
            else:
                response = await self.client.post(
                    f"/repos/{owner}/{repo}/issues", json_data=payload
                )
                logger.info(f"Created donator status for {username} (#{response.data['number']})")
        finally:
            self.invalidate_donator_status(owner, repo, username, user_id)

        return record

    async def remove_donator_status(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> bool:
        """Close the user's donator issue. Returns False if there was none."""
        issues = await self._list_donator_issues(owner, repo)
        existing = find_donator_issue(issues, username, user_id)
        if existing is None:
            return False
        try:
            await self.client.patch(
                f"/repos/{owner}/{repo}/issues/{existing['number']}",
                json_data={"state": "closed"},
                idempotent=True,
            )
        finally:
            self.invalidate_donator_status(owner, repo, username, user_id)
        logger.info(f"Removed donator status for {username}")
        return True

    def invalidate_donator_status(
        self, owner: str, repo: str, username: str, user_id: int | None = None
    ) -> int:
        base = f"{repo_key(owner, repo)}/donator/{user_key(username)}"
        id_suffix = f"/id/{user_id}" if user_id is not None else None

        def matches(key: str) -> bool:
            if key == base or key.startswith(f"{base}/"):
                return True
            return (
                id_suffix is not None
                and key.startswith(f"{repo_key(owner, repo)}/donator/")
                and key.endswith(id_suffix)
            )

        return self.tier(Tiers.DONATOR_STATUS).invalidate_where(matches)

    async def _list_donator_issues(self, owner: str, repo: str) -> list[dict[str, Any]]:
        issues: list[dict[str, Any]] = []
        page = 1
        while True:
            response = await self.client.get(
                f"/repos/{owner}/{repo}/issues",
                params={"labels": DONATOR_LABEL, "state": "open", "per_page": 100, "page": page},
            )
            issues.extend(response.data or [])
            if not response.link_next:
                return issues
            page += 1
