"""
Shared builds.

Builds are stored as comments on a single index issue (label
``build-share-index``) whose body maps checksums to comment ids::

    # Build Share Index

    [3f2a9c1b04de]=1234567
    [a0b1c2d3e4f5]=1234570

A build never changes once shared, so it is cached forever. The index is
cached until busted; a checksum missing from a cached index busts it once.
"""

import json
import re
from typing import Any

from loguru import logger

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import build_index_key, build_key
from wikicache.services.cache import Tiers
from wikicache.services.errors import CacheKeyError

BUILD_SHARE_LABEL = "build-share-index"
INDEX_LINE = re.compile(r"\[([a-f0-9]{8,64})\]=(\d+)", re.IGNORECASE)
CHECKSUM = re.compile(r"^[a-f0-9]{8,64}$", re.IGNORECASE)


def parse_index_map(body: str | None) -> dict[str, int]:
    """Checksum -> comment id, from an index issue body."""
    if not body:
        return {}
    return {m.group(1): int(m.group(2)) for m in INDEX_LINE.finditer(body)}


class BuildService(BaseGitHubService):

    @property
    def service_id(self) -> str:
        return "builds"

    async def load_build(self, owner: str, repo: str, checksum: str) -> dict[str, Any] | None:
        """
        Load a shared build.

        Returns:
            ``{"checksum", "type", "data", "created_at"}`` or None if no
            build has that checksum.
        """
        if not CHECKSUM.match(checksum or ""):
            raise CacheKeyError(f"Malformed build checksum: {checksum!r}")

        async def fetch() -> dict[str, Any] | None:
            index = await self._get_index(owner, repo)
            comment_id = index["builds"].get(checksum)
            if comment_id is None:
                self.bust_build_index(owner, repo)
                index = await self._get_index(owner, repo)
                comment_id = index["builds"].get(checksum)
            if comment_id is None:
                logger.info(f"No build {checksum} in {owner}/{repo}")
                return None

            response = await self.client.get_or_none(
                f"/repos/{owner}/{repo}/issues/comments/{comment_id}"
            )
            if response is None:
                logger.warning(f"Build {checksum} points at missing comment {comment_id}")
                return None

            info = json.loads(response.data.get("body") or "{}")
            if info.get("checksum") != checksum:
                logger.warning(
                    f"Checksum mismatch for build {checksum}: comment says {info.get('checksum')}"
                )
            return {
                "checksum": checksum,
                "type": info.get("type"),
                "data": info.get("data"),
                "created_at": info.get("createdAt"),
            }

        return await self._cached(
            Tiers.BUILDS, build_key(owner, repo, checksum), fetch, "load_build", cache_none=False
        )

    async def _get_index(self, owner: str, repo: str) -> dict[str, Any]:
        async def fetch() -> dict[str, Any]:
            response = await self.client.get(
                f"/repos/{owner}/{repo}/issues",
                params={"labels": BUILD_SHARE_LABEL, "state": "open", "per_page": 1},
            )
            issues = response.data or []
            if not issues:
                return {"number": None, "builds": {}}
            issue = issues[0]
            return {"number": issue.get("number"), "builds": parse_index_map(issue.get("body"))}

        return await self._cached(
            Tiers.BUILD_INDEX, build_index_key(owner, repo), fetch, "get_build_index"
        )

    def bust_build_index(self, owner: str, repo: str) -> bool:
        return self.tier(Tiers.BUILD_INDEX).delete(build_index_key(owner, repo))
