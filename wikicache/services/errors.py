"""
Service layer exceptions.

Every failure surfaced by the cache/request layer is a ``ServiceError``.
Remote replies are classified once, in ``error_from_response``, so the
retry wrapper and the service functions only ever reason about types.
"""

from collections.abc import Mapping
from typing import Any

RATE_LIMIT_REMAINING_HEADER = "x-ratelimit-remaining"
RETRY_AFTER_HEADER = "retry-after"


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class ConfigurationError(ServiceError, ValueError):
    """Programmer or configuration error: fail fast, never degrade."""

    pass


class CacheKeyError(ConfigurationError):
    """A cache key could not be built from the given coordinates."""

    pass


class StorageError(ServiceError):
    """Durable storage operation failed."""

    pass


class StorageQuotaError(StorageError):
    """Value exceeds the durable store's size ceiling."""

    def __init__(self, key: str, size: int, limit: int):
        self.key = key
        self.size = size
        self.limit = limit
        super().__init__(
            f"Value for '{key}' is {size} bytes, over the {limit} byte quota"
        )


class NetworkError(ServiceError):
    """Connection-level failure (reset, DNS, protocol)."""

    pass


class RequestTimeoutError(NetworkError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float | None):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class GitHubAPIError(ServiceError):
    """Non-2xx reply from the GitHub REST API."""

    def __init__(
        self,
        status: int,
        message: str,
        headers: Mapping[str, str] | None = None,
        route: str | None = None,
    ):
        self.status = status
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.route = route
        super().__init__(message, service_id="github")

    @property
    def rate_limit_remaining(self) -> int | None:
        value = self.headers.get(RATE_LIMIT_REMAINING_HEADER)
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    @property
    def retry_after(self) -> float | None:
        """Seconds the server asked us to wait, if it said so."""
        value = self.headers.get(RETRY_AFTER_HEADER)
        try:
            return float(value) if value is not None else None
        except ValueError:
            return None

    @property
    def is_rate_limited(self) -> bool:
        if self.status == 429:
            return True
        if self.status != 403:
            return False
        return (
            self.rate_limit_remaining == 0
            or self.retry_after is not None
            or "rate limit" in str(self).lower()
        )


class RateLimitError(GitHubAPIError):
    """Rate limit exceeded (429, or 403 with an exhausted quota)."""

    pass


class NotFoundError(GitHubAPIError):
    """Resource does not exist."""

    pass


class ConflictError(GitHubAPIError):
    """Write rejected because the target changed since the caller's revision."""

    user_message = (
        "This page was modified by someone else while you were editing. "
        "Please refresh the page and try again."
    )


class PermissionDeniedError(GitHubAPIError):
    """Confirmed lack of rights for the operation."""

    pass


class AuthenticationError(GitHubAPIError):
    """Missing or expired credentials."""

    pass


class ServerError(GitHubAPIError):
    """5xx from the remote."""

    pass


def _is_sha_mismatch(message: str) -> bool:
    lowered = message.lower()
    return "does not match" in lowered or "sha" in lowered


def error_from_response(
    status: int,
    message: str,
    headers: Mapping[str, str] | None = None,
    route: str | None = None,
) -> GitHubAPIError:
    """Build the most specific ``GitHubAPIError`` subclass for a reply."""
    probe = GitHubAPIError(status, message, headers, route)

    cls: type[GitHubAPIError] = GitHubAPIError
    if probe.is_rate_limited:
        cls = RateLimitError
    elif status == 401:
        cls = AuthenticationError
    elif status == 403:
        cls = PermissionDeniedError
    elif status == 404:
        cls = NotFoundError
    elif status == 409 or (status == 422 and _is_sha_mismatch(message)):
        cls = ConflictError
    elif status >= 500:
        cls = ServerError

    return cls(status, message, headers, route)


def describe_error(error: BaseException) -> str:
    """Actionable, user-facing message for any error raised by this package."""
    if isinstance(error, ConflictError):
        return error.user_message
    if isinstance(error, RateLimitError):
        return "GitHub API rate limit exceeded. Please try again later."
    if isinstance(error, AuthenticationError):
        return "Authentication failed. Please login again."
    if isinstance(error, PermissionDeniedError):
        return "Permission denied. You may not have access to this resource."
    if isinstance(error, NotFoundError):
        return "Resource not found."
    if isinstance(error, RequestTimeoutError):
        return "The request to GitHub timed out. You can retry in a moment."
    if isinstance(error, NetworkError):
        return "Could not reach GitHub. Check your connection and retry."
    if isinstance(error, ServerError):
        return "GitHub is having trouble right now. You can retry in a moment."
    if isinstance(error, GitHubAPIError) and error.status == 422:
        return "Invalid request. Please check your input."
    return str(error) or "An error occurred while communicating with GitHub."


def error_details(error: BaseException) -> dict[str, Any]:
    """Structured fields for log lines and retry events."""
    return {
        "type": type(error).__name__,
        "status": getattr(error, "status", None),
        "message": str(error),
    }
