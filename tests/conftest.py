"""
Shared fixtures: a fake GitHub behind httpx.MockTransport, a controllable
clock, and a sleep that records delays instead of waiting.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import pytest

from wikicache.services.storage import MemoryStore
from wikicache.settings import Settings
from wikicache.wiki import WikiCache

AVATAR_API_URL = "https://avatars.example.com/api/profile-picture"


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


Responder = Callable[[httpx.Request], httpx.Response]


class FakeGitHub:
    """
    Scripted replies per (method, path). Queued replies are served in order;
    the last one repeats. Unknown routes answer 404.
    """

    def __init__(self):
        self._queues: dict[tuple[str, str], list[Responder]] = defaultdict(list)
        self.requests: list[httpx.Request] = []

    def on(
        self,
        method: str,
        path: str,
        json: Any = None,
        status: int = 200,
        headers: dict[str, str] | None = None,
    ) -> "FakeGitHub":
        def respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json=json, headers=headers)

        self._queues[(method, path)].append(respond)
        return self

    def on_request(self, method: str, path: str, responder: Responder) -> "FakeGitHub":
        self._queues[(method, path)].append(responder)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._queues.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not Found"})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, method: str, path: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path == path
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        github_token="test-token",
        retry_max_retries=3,
        retry_initial_delay_ms=1000,
        retry_max_delay_ms=60000,
        avatar_api_url=AVATAR_API_URL,
    )


@pytest.fixture
def durable() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def wiki(settings, github, clock, sleeps, durable):
    cache = WikiCache(
        settings,
        store=durable,
        transport=github.transport,
        clock=clock,
        sleep=sleeps,
    )
    await cache.init()
    yield cache
    await cache.teardown()
