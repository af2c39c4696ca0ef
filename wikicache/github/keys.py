"""
Cache key builders.

Keys are built from resource coordinates only. Owners, repositories and
usernames are case-insensitive on GitHub and are lower-cased; paths, refs
and checksums are kept verbatim. ``/`` separates coordinates and ``:``
introduces a revision, which git forbids in ref names.
"""

from wikicache.services.errors import CacheKeyError


def _require(name: str, value: object) -> str:
    if value is None:
        raise CacheKeyError(f"Missing required identifier '{name}'")
    text = str(value).strip()
    if not text:
        raise CacheKeyError(f"Missing required identifier '{name}'")
    return text


def _ident(name: str, value: object) -> str:
    """Owner/repo/username: lower-cased, no separators allowed."""
    text = _require(name, value).lower()
    if "/" in text or ":" in text:
        raise CacheKeyError(f"Identifier '{name}' contains a separator: {text!r}")
    return text


def _positive(name: str, value: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise CacheKeyError(f"'{name}' must be a positive integer, got {value!r}")
    return value


def repo_key(owner: str, repo: str) -> str:
    return f"{_ident('owner', owner)}/{_ident('repo', repo)}"


def user_key(username: str) -> str:
    return _ident("username", username)


def file_content_key(owner: str, repo: str, path: str, ref: str) -> str:
    path = _require("path", path).strip("/")
    return f"{repo_key(owner, repo)}/{path}:{_require('ref', ref)}"


def file_prefix(owner: str, repo: str, path: str) -> str:
    """Prefix shared by every cached revision of one file."""
    return f"{repo_key(owner, repo)}/{_require('path', path).strip('/')}:"


def file_commits_key(owner: str, repo: str, path: str, page: int, per_page: int) -> str:
    path = _require("path", path).strip("/")
    return (
        f"{repo_key(owner, repo)}/{path}"
        f":page/{_positive('page', page)}/per/{_positive('per_page', per_page)}"
    )


def permission_key(owner: str, repo: str, username: str) -> str:
    return f"{repo_key(owner, repo)}/{user_key(username)}"


def fork_key(owner: str, repo: str, username: str) -> str:
    return f"{repo_key(owner, repo)}/fork/{user_key(username)}"


def user_pull_requests_key(
    owner: str,
    repo: str,
    username: str,
    base: str | None,
    page: int,
    per_page: int,
    user_id: int | None = None,
) -> str:
    # user_id widens the match to PRs labelled user-id:<id>
    id_part = f"/id/{_require('user_id', user_id)}" if user_id is not None else ""
    base_part = f"/base/{_require('base', base)}" if base else ""
    return (
        f"{repo_key(owner, repo)}/user/{user_key(username)}{id_part}{base_part}"
        f"/page/{_positive('page', page)}/per/{_positive('per_page', per_page)}"
    )


def user_pull_requests_pattern(owner: str, repo: str, username: str) -> str:
    """Glob matching every cached page of a user's pull requests."""
    return f"{repo_key(owner, repo)}/user/{user_key(username)}/*"


def donator_key(owner: str, repo: str, username: str, user_id: int | None) -> str:
    suffix = f"/id/{user_id}" if user_id is not None else ""
    return f"{repo_key(owner, repo)}/donator/{user_key(username)}{suffix}"


def avatar_key(user_id: int | str) -> str:
    return f"avatar/{_require('user_id', user_id)}"


def build_key(owner: str, repo: str, checksum: str) -> str:
    return f"{repo_key(owner, repo)}/build/{_require('checksum', checksum)}"


def build_index_key(owner: str, repo: str) -> str:
    return f"{repo_key(owner, repo)}/build-index"


def dedup_key(operation: str, cache_key: str) -> str:
    """In-flight key: operation name plus cache key."""
    return f"{_require('operation', operation)}:{cache_key}"
