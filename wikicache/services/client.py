"""
GitHubClient - Async GitHub REST client with retry.

Every outbound call goes through the RetryPolicy. Replies are mapped onto
the error taxonomy in ``errors.py``; callers never see raw httpx errors.
Caching and de-duplication live one layer up, in the service functions.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from wikicache.services.errors import (
    NetworkError,
    NotFoundError,
    RequestTimeoutError,
    error_from_response,
)
from wikicache.services.retry import IDEMPOTENT_METHODS, RetryPolicy
from wikicache.settings import Settings

SERVICE_ID = "github"


@dataclass
class GitHubResponse:
    """Decoded reply from the API."""

    status: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def link_next(self) -> bool:
        return 'rel="next"' in self.headers.get("link", "")


class GitHubClient:
    """
    Thin async wrapper over the GitHub REST API.

    Usage:
        async with GitHubClient(settings) as client:
            response = await client.get("/repos/acme/wiki")
            repo = response.data

    One instance per authenticated user; never share an instance across
    tenants.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token: str | None = None,
    ):
        self._settings = settings or Settings()
        self._token = token if token is not None else self._settings.github_token
        self.retry_policy = retry_policy or RetryPolicy(self._settings.retry_config())
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._external_client: httpx.AsyncClient | None = None
        self.api_calls = 0

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": self._settings.github_user_agent,
            }
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.github_api_url,
                headers=headers,
                timeout=httpx.Timeout(self._settings.request_timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._http_client

    async def _get_external_client(self) -> httpx.AsyncClient:
        """Client for non-GitHub endpoints; never carries the GitHub token."""
        if self._external_client is None:
            self._external_client = httpx.AsyncClient(
                headers={"User-Agent": self._settings.github_user_agent},
                timeout=httpx.Timeout(self._settings.request_timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._external_client

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        idempotent: bool | None = None,
        skip_retry: bool = False,
    ) -> GitHubResponse:
        """
        Make an API call with retry.

        Args:
            method: HTTP method
            path: API path, e.g. ``/repos/{owner}/{repo}``
            params: Query parameters
            json_data: JSON body for writes
            headers: Extra headers
            idempotent: Override the method-based idempotency default
            skip_retry: Issue exactly one attempt

        Raises:
            GitHubAPIError subclasses for non-2xx replies,
            RequestTimeoutError / NetworkError for transport failures.
        """
        method = method.upper()
        if idempotent is None:
            idempotent = method in IDEMPOTENT_METHODS
        route = f"{method} {path}"

        async def do_request() -> GitHubResponse:
            return await self._execute_request(method, path, params, json_data, headers)

        return await self.retry_policy.run(
            do_request, route=route, idempotent=idempotent, skip_retry=skip_retry
        )

    async def _execute_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_data: dict[str, Any] | None,
        headers: dict[str, str] | None,
        external: bool = False,
    ) -> GitHubResponse:
        """Execute the actual HTTP request."""
        if external:
            client = await self._get_external_client()
        else:
            client = await self._get_http_client()
        self.api_calls += 1

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json_data,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(SERVICE_ID, self._settings.request_timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(f"network error: {e}", service_id=SERVICE_ID) from e

        response_headers = {k.lower(): v for k, v in response.headers.items()}

        if response.is_success:
            data: Any = None
            if response.content:
                data = response.json()
            return GitHubResponse(response.status_code, data, response_headers)

        raise error_from_response(
            response.status_code,
            _error_message(response),
            response_headers,
            route=f"{method} {path}",
        )

    async def get(
        self, path: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse:
        return await self.request("GET", path, params=params, **kwargs)

    async def get_or_none(
        self, path: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse | None:
        """GET that reports a missing resource as None instead of raising."""
        try:
            return await self.get(path, params=params, **kwargs)
        except NotFoundError:
            return None

    async def post(
        self, path: str, json_data: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse:
        return await self.request("POST", path, json_data=json_data, **kwargs)

    async def put(
        self, path: str, json_data: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse:
        return await self.request("PUT", path, json_data=json_data, **kwargs)

    async def patch(
        self, path: str, json_data: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse:
        return await self.request("PATCH", path, json_data=json_data, **kwargs)

    async def delete(
        self, path: str, json_data: dict[str, Any] | None = None, **kwargs: Any
    ) -> GitHubResponse:
        return await self.request("DELETE", path, json_data=json_data, **kwargs)

    async def get_external(
        self, url: str, params: dict[str, Any] | None = None
    ) -> GitHubResponse:
        """GET an absolute URL outside the GitHub API, with the same retry policy."""

        async def do_request() -> GitHubResponse:
            return await self._execute_request("GET", url, params, None, None, external=True)

        return await self.retry_policy.run(do_request, route=f"GET {url}", idempotent=True)

    async def get_rate_limit(self) -> dict[str, Any]:
        response = await self.get("/rate_limit", skip_retry=True)
        rate = response.data["rate"]
        return {
            "limit": rate["limit"],
            "remaining": rate["remaining"],
            "reset": rate["reset"],
            "used": rate.get("used"),
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        if self._external_client:
            await self._external_client.aclose()
            self._external_client = None
        logger.debug("GitHubClient closed")

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"
