"""Retry with exponential backoff for calls into dependent services.

Object storage and the relational store can be asleep when the first request
arrives (serverless cold starts), so every call the pipeline makes into them goes
through :class:`RetryPolicy`. Transient failures are retried with a growing
delay; anything the classifier does not recognise is permanent and propagates on
first occurrence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from botocore.exceptions import ConnectionClosedError, ConnectTimeoutError, EndpointConnectionError, ReadTimeoutError

from gallery.core.config import Settings, settings as default_settings
from gallery.services.media_errors import DependencyUnavailable, MediaPipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ShouldRetry = Callable[[BaseException], bool]
OnRetry = Callable[[BaseException, int], None]
Sleep = Callable[[float], Awaitable[None]]

TRANSIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    ConnectionRefusedError,
    ConnectionResetError,
    BrokenPipeError,
    TimeoutError,
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

TRANSIENT_MESSAGE_MARKERS: tuple[str, ...] = (
    "econnrefused",
    "connection refused",
    "econnreset",
    "connection reset",
    "etimedout",
    "timed out",
    "timeout",
    "socket hang up",
    "network error",
    "connection terminated",
    "connection lost",
    "could not connect",
    "connection was closed",
    "epipe",
    "broken pipe",
    "service unavailable",
    "serviceunavailable",
    "503",
    "nosuchbucket",
    "no such bucket",
    "bucket does not exist",
)


def is_transient_error(error: BaseException) -> bool:
    """Return True for failures expected while a dependent service is starting up."""
    if isinstance(error, MediaPipelineError):
        return False
    if isinstance(error, TRANSIENT_ERROR_TYPES):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MESSAGE_MARKERS)


def _notify(on_retry: OnRetry | None, error: BaseException, attempt: int) -> None:
    if on_retry is None:
        return
    try:
        on_retry(error, attempt)
    except Exception:
        logger.exception("retry_callback_failed", extra={"attempt": attempt})


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 5,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 1.5,
    max_delay: float = 10.0,
    should_retry: ShouldRetry = is_transient_error,
    on_retry: OnRetry | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``operation()`` until it succeeds, fails permanently, or attempts run out.

    The last error is re-raised unchanged. ``max_attempts`` counts the first call.
    """
    attempts = max(1, int(max_attempts))
    delay = max(0.0, float(initial_delay))
    cap = max(delay, float(max_delay))
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            _notify(on_retry, exc, attempt)
            await sleep(delay)
            delay = min(delay * float(backoff_multiplier), cap)


def _log_retry(name: str) -> OnRetry:
    def _callback(error: BaseException, attempt: int) -> None:
        logger.warning(
            "dependency_retry",
            extra={"dependency": name, "attempt": attempt, "error": str(error), "error_type": type(error).__name__},
        )

    return _callback


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    name: str
    max_attempts: int = 5
    initial_delay: float = 1.0
    backoff_multiplier: float = 1.5
    max_delay: float = 10.0
    should_retry: ShouldRetry = is_transient_error
    on_retry: OnRetry | None = None
    sleep: Sleep = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, name: str, *, max_delay: float | None = None, config: Settings | None = None) -> "RetryPolicy":
        cfg = config or default_settings
        return cls(
            name=name,
            max_attempts=max(1, int(cfg.retry_max_attempts or 5)),
            initial_delay=max(0.0, float(cfg.retry_initial_delay_seconds)),
            backoff_multiplier=max(1.0, float(cfg.retry_backoff_multiplier or 1.5)),
            max_delay=float(max_delay if max_delay is not None else cfg.retry_max_delay_seconds),
            on_retry=_log_retry(name),
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under this policy.

        Transient errors that survive every attempt surface as
        :class:`DependencyUnavailable`; permanent errors propagate as raised.
        """
        try:
            return await with_retry(
                operation,
                max_attempts=self.max_attempts,
                initial_delay=self.initial_delay,
                backoff_multiplier=self.backoff_multiplier,
                max_delay=self.max_delay,
                should_retry=self.should_retry,
                on_retry=self.on_retry,
                sleep=self.sleep,
            )
        except Exception as exc:
            if self.should_retry(exc):
                raise DependencyUnavailable(self.name, self.max_attempts, exc) from exc
            raise


def storage_retry_policy(config: Settings | None = None) -> RetryPolicy:
    cfg = config or default_settings
    return RetryPolicy.from_settings("object_store", max_delay=cfg.storage_retry_max_delay_seconds, config=cfg)


def database_retry_policy(config: Settings | None = None) -> RetryPolicy:
    cfg = config or default_settings
    return RetryPolicy.from_settings("asset_status_store", max_delay=cfg.database_retry_max_delay_seconds, config=cfg)
