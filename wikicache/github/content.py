"""
File content and history.

Content is cached per (path, ref); history per (path, page, per_page).
A write invalidates every cached revision and history page of the file.
"""

import base64
import binascii
from typing import Any
from urllib.parse import quote

from loguru import logger

from wikicache.github.base import BaseGitHubService
from wikicache.github.keys import file_commits_key, file_content_key, file_prefix, repo_key
from wikicache.services.cache import Tiers
from wikicache.services.errors import ConflictError, ServiceError


def _contents_path(owner: str, repo: str, path: str) -> str:
    return f"/repos/{owner}/{repo}/contents/{quote(path.strip('/'), safe='/')}"


def decode_content(data: dict[str, Any]) -> str:
    """
    Decode the ``content`` field of a contents API reply.

    Bytes that are not UTF-8 become U+FFFD. Files over 1 MB come back with
    ``encoding: none`` and no content; that raises rather than reading as empty.
    """
    raw = data.get("content") or ""
    encoding = data.get("encoding", "base64")
    if encoding == "none":
        raise ServiceError(
            f"'{data.get('path')}' is too large for the contents API "
            f"({data.get('size', 0)} bytes)",
            service_id="content",
        )
    if encoding != "base64":
        return raw
    try:
        decoded = base64.b64decode(raw)
    except binascii.Error as e:
        raise ServiceError(
            f"Malformed content for '{data.get('path')}': {e}", service_id="content"
        ) from e
    return decoded.decode("utf-8", errors="replace")


def normalize_commit(data: dict[str, Any]) -> dict[str, Any]:
    commit = data.get("commit") or {}
    author = commit.get("author") or {}
    user = data.get("author") or {}
    return {
        "sha": data.get("sha"),
        "message": commit.get("message", ""),
        "author_name": author.get("name"),
        "author_login": user.get("login"),
        "author_avatar_url": user.get("avatar_url"),
        "date": author.get("date"),
        "html_url": data.get("html_url"),
    }


class ContentService(BaseGitHubService):
    """Wiki page files stored in the repository."""

    @property
    def service_id(self) -> str:
        return "content"

    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: str = "main"
    ) -> dict[str, Any] | None:
        """
        Get a file at ``ref``.

        Returns:
            ``{"path", "sha", "size", "content"}`` with decoded text,
            or None if the file does not exist.
        """
        key = file_content_key(owner, repo, path, ref)

        async def fetch() -> dict[str, Any] | None:
            response = await self.client.get_or_none(
                _contents_path(owner, repo, path), params={"ref": ref}
            )
            if response is None:
                self._log(f"File not found: {key}")
                return None
            data = response.data
            if isinstance(data, list) or data.get("type") != "file":
                raise ServiceError(f"'{path}' is not a file", service_id=self.service_id)
            return {
                "path": data.get("path", path),
                "sha": data.get("sha"),
                "size": data.get("size", 0),
                "content": decode_content(data),
            }

        return await self._cached(
            Tiers.FILE_CONTENT, key, fetch, "get_file_content", cache_none=False
        )

    async def get_file_commits(
        self, owner: str, repo: str, path: str, page: int = 1, per_page: int = 10
    ) -> dict[str, Any]:
        """History of one file, newest first. A missing file has an empty history."""
        key = file_commits_key(owner, repo, path, page, per_page)

        async def fetch() -> dict[str, Any]:
            response = await self.client.get_or_none(
                f"/repos/{owner}/{repo}/commits",
                params={"path": path.strip("/"), "page": page, "per_page": per_page},
            )
            if response is None:
                return {"commits": [], "page": page, "per_page": per_page, "has_more": False}
            commits = [normalize_commit(c) for c in response.data or []]
            return {
                "commits": commits,
                "page": page,
                "per_page": per_page,
                "has_more": response.link_next,
            }

        return await self._cached(Tiers.COMMIT_LIST, key, fetch, "get_file_commits")

    async def update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        sha: str | None = None,
        branch: str = "main",
    ) -> dict[str, Any]:
        """
        Create or update a file.

        ``sha`` is the revision the caller last read; GitHub rejects the
        write if the file has changed since. Omit it only to create a file.

        Raises:
            ConflictError: the file was modified by someone else
        """
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            body["sha"] = sha

        try:
            response = await self.client.put(_contents_path(owner, repo, path), json_data=body)
        except ConflictError as e:
            logger.warning(f"Edit conflict on {owner}/{repo}/{path}@{branch}: {e}")
            raise
        finally:
            # Also on failure: the write may have landed before the error.
            self.invalidate_file(owner, repo, path)

        data = response.data or {}
        return {
            "path": (data.get("content") or {}).get("path", path),
            "sha": (data.get("content") or {}).get("sha"),
            "commit_sha": (data.get("commit") or {}).get("sha"),
        }

    def invalidate_file(self, owner: str, repo: str, path: str) -> int:
        """Drop every cached revision and history page of ``path``."""
        prefix = file_prefix(owner, repo, path)
        removed = self.tier(Tiers.FILE_CONTENT).invalidate_where(
            lambda key: key.startswith(prefix)
        )
        removed += self.tier(Tiers.COMMIT_LIST).invalidate_where(
            lambda key: key.startswith(prefix)
        )
        self._log(f"Invalidated {removed} entries for {prefix}")
        return removed

    def invalidate_repository_files(self, owner: str, repo: str) -> int:
        """Drop all cached content and history of a repository."""
        prefix = f"{repo_key(owner, repo)}/"
        removed = self.tier(Tiers.FILE_CONTENT).invalidate_where(
            lambda key: key.startswith(prefix)
        )
        removed += self.tier(Tiers.COMMIT_LIST).invalidate_where(
            lambda key: key.startswith(prefix)
        )
        return removed
