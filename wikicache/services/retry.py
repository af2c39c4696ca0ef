"""
RetryPolicy - Exponential backoff with jitter around one remote call.

Classification:
- Rate-limit rejections (429, or 403 with an exhausted quota) are retried
  for every call, since the server refused them before acting. They get the
  richer observer events ("retrying...", "recovered", "gave up").
- 5xx replies and network failures are retried only for idempotent calls,
  and only silently (logged, no rate-limit event).
- Everything else propagates on the first attempt.

Delay for attempt n (0-indexed):
    min(max_delay, initial_delay * multiplier ** n * (1 +/- 25% jitter))
raised to the server's retry-after hint when one is present.
"""

import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Protocol, TypeVar

from loguru import logger

from wikicache.services.errors import (
    ConfigurationError,
    GitHubAPIError,
    NetworkError,
    ServiceError,
)

T = TypeVar("T")

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})
NETWORK_ERROR_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "connection reset",
)
JITTER = 0.25


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters. Delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 2.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    retryable_statuses: frozenset[int] = frozenset({403, 429, 500, 502, 503, 504})

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.initial_delay <= 0:
            raise ConfigurationError("initial_delay must be positive")
        if self.max_delay < self.initial_delay:
            raise ConfigurationError("max_delay must be >= initial_delay")
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier must be >= 1")
        object.__setattr__(self, "retryable_statuses", frozenset(self.retryable_statuses))


class RetryEventKind(str, Enum):
    RETRYING = "retrying"
    RECOVERED = "recovered"
    GAVE_UP = "gave_up"


@dataclass(frozen=True)
class RetryEvent:
    """Lifecycle notification for rate-limit banners."""

    kind: RetryEventKind
    route: str
    attempt: int
    max_retries: int
    delay: float | None = None
    status: int | None = None
    message: str = ""
    rate_limited: bool = False
    duration: float | None = None

    @property
    def remaining_retries(self) -> int:
        return max(0, self.max_retries - self.attempt)


class RetryObserver(Protocol):
    def on_retry(self, event: RetryEvent) -> None: ...

    def on_recovered(self, event: RetryEvent) -> None: ...

    def on_give_up(self, event: RetryEvent) -> None: ...


class LoggingRetryObserver:
    """Default observer: writes every event to the log."""

    def on_retry(self, event: RetryEvent) -> None:
        logger.warning(
            f"Rate limit hit on {event.route}, retry {event.attempt}/{event.max_retries} "
            f"in {event.delay:.1f}s"
        )

    def on_recovered(self, event: RetryEvent) -> None:
        logger.info(
            f"{event.route} succeeded after {event.attempt} retries "
            f"({event.duration or 0:.1f}s)"
        )

    def on_give_up(self, event: RetryEvent) -> None:
        logger.error(f"{event.route} rate limited, giving up: {event.message}")


class RecordingRetryObserver:
    """Keeps the most recent events, e.g. to drive a 'retrying...' banner."""

    def __init__(self, max_events: int = 50):
        self.events: deque[RetryEvent] = deque(maxlen=max_events)

    def on_retry(self, event: RetryEvent) -> None:
        self.events.append(event)

    def on_recovered(self, event: RetryEvent) -> None:
        self.events.append(event)

    def on_give_up(self, event: RetryEvent) -> None:
        self.events.append(event)

    @property
    def latest(self) -> RetryEvent | None:
        return self.events[-1] if self.events else None

    @property
    def is_retrying(self) -> bool:
        latest = self.latest
        return latest is not None and latest.kind == RetryEventKind.RETRYING


class CompositeRetryObserver:
    def __init__(self, *observers: RetryObserver):
        self.observers = list(observers)

    def on_retry(self, event: RetryEvent) -> None:
        for observer in self.observers:
            observer.on_retry(event)

    def on_recovered(self, event: RetryEvent) -> None:
        for observer in self.observers:
            observer.on_recovered(event)

    def on_give_up(self, event: RetryEvent) -> None:
        for observer in self.observers:
            observer.on_give_up(event)


@dataclass
class RetryState:
    """Per-call bookkeeping, discarded when the call settles."""

    attempt: int = 0
    last_error: BaseException | None = None
    delays: list[float] = field(default_factory=list)


def is_network_failure(error: BaseException) -> bool:
    if isinstance(error, NetworkError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)


class RetryPolicy:
    """
    Transparent retry wrapper for outbound calls.

    Usage:
        policy = RetryPolicy(RetryConfig(), observer=RecordingRetryObserver())
        data = await policy.run(lambda: client.get(url), route="GET /user")
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        observer: RetryObserver | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self.observer = observer or LoggingRetryObserver()
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        cfg = self.config
        base = cfg.initial_delay * cfg.backoff_multiplier**attempt
        jitter = base * JITTER * (self._rng() * 2 - 1)
        delay = min(base + jitter, cfg.max_delay)

        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = min(max(delay, retry_after), cfg.max_delay)
        return delay

    def is_retryable(self, error: BaseException, idempotent: bool = True) -> bool:
        if isinstance(error, GitHubAPIError):
            if error.is_rate_limited:
                return error.status in self.config.retryable_statuses
            if error.status == 403:
                # permission denied, not a quota problem
                return False
            return idempotent and error.status in self.config.retryable_statuses
        if isinstance(error, ServiceError) and not isinstance(error, NetworkError):
            return False
        return idempotent and is_network_failure(error)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        route: str = "request",
        idempotent: bool = True,
        skip_retry: bool = False,
    ) -> T:
        """
        Execute ``fn`` with retry.

        Args:
            fn: Performs exactly one remote call per invocation
            route: Label used in events and logs
            idempotent: Whether replaying the call is safe
            skip_retry: Per-call opt-out, ``fn`` runs exactly once

        Raises:
            The final error, unchanged, once it is not retryable or the
            budget is spent.
        """
        if skip_retry:
            return await fn()

        state = RetryState()
        started = time.monotonic()
        max_retries = self.config.max_retries

        while True:
            try:
                result = await fn()
            except Exception as e:
                state.last_error = e
                rate_limited = bool(getattr(e, "is_rate_limited", False))
                retryable = self.is_retryable(e, idempotent)

                if not retryable or state.attempt >= max_retries:
                    if rate_limited:
                        self._notify(
                            "on_give_up",
                            RetryEvent(
                                kind=RetryEventKind.GAVE_UP,
                                route=route,
                                attempt=state.attempt,
                                max_retries=max_retries,
                                status=getattr(e, "status", None),
                                message=str(e),
                                rate_limited=True,
                                duration=time.monotonic() - started,
                            ),
                        )
                    elif state.attempt > 0:
                        logger.error(
                            f"{route} failed permanently after {state.attempt + 1} attempts: {e}"
                        )
                    raise

                delay = self.compute_delay(state.attempt, e)
                state.attempt += 1
                state.delays.append(delay)

                if rate_limited:
                    self._notify(
                        "on_retry",
                        RetryEvent(
                            kind=RetryEventKind.RETRYING,
                            route=route,
                            attempt=state.attempt,
                            max_retries=max_retries,
                            delay=delay,
                            status=getattr(e, "status", None),
                            message=str(e),
                            rate_limited=True,
                        ),
                    )
                else:
                    logger.warning(
                        f"Retryable error on {route}, attempt {state.attempt}/{max_retries} "
                        f"in {delay:.1f}s: {e}"
                    )

                await self._sleep(delay)
                continue

            if state.attempt > 0 and getattr(state.last_error, "is_rate_limited", False):
                self._notify(
                    "on_recovered",
                    RetryEvent(
                        kind=RetryEventKind.RECOVERED,
                        route=route,
                        attempt=state.attempt,
                        max_retries=max_retries,
                        rate_limited=True,
                        duration=time.monotonic() - started,
                    ),
                )
            return result

    def _notify(self, method: str, event: RetryEvent) -> None:
        try:
            getattr(self.observer, method)(event)
        except Exception as e:
            logger.error(f"Retry observer {method} failed: {e}")
