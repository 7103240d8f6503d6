"""Bounded retry with pluggable backoff.

Attempt numbers are 1-based: ``delay_for(1)`` is the pause after the first
failed attempt.  All durations are seconds.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from dockhand.errors import DockerError, Failure, FailureKind, is_retryable, looks_transient
from dockhand.logger import logger

T = TypeVar("T")

RetryPredicate = Callable[[Failure], bool]


@dataclass(frozen=True)
class Fixed:
    """Same delay before every retry."""

    delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.delay


@dataclass(frozen=True)
class Linear:
    """``initial + increment * (attempt - 1)``."""

    initial: float = 0.1
    increment: float = 0.1

    def delay_for(self, attempt: int) -> float:
        return self.initial + self.increment * (attempt - 1)


@dataclass(frozen=True)
class Exponential:
    """``initial * multiplier ** (attempt - 1)``, never more than ``max``."""

    initial: float = 0.1
    multiplier: float = 2.0
    max: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.initial * self.multiplier ** (attempt - 1), self.max)


BackoffStrategy = Fixed | Linear | Exponential


def retry_on_all(failure: Failure) -> bool:
    return True


def retry_on_timeout(failure: Failure) -> bool:
    return failure.kind is FailureKind.TIMEOUT


def retry_on_transient(failure: Failure) -> bool:
    """Transient kinds, plus command failures that read like network hiccups."""
    return is_retryable(failure) or looks_transient(failure)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait, and which failures qualify.

    ``max_attempts`` counts the first attempt, so ``1`` means no retries.
    """

    max_attempts: int = 3
    backoff: BackoffStrategy = field(default_factory=Exponential)
    retry_on: RetryPredicate = is_retryable

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise DockerError(
                Failure.invalid_config(f"max_attempts must be at least 1, got {self.max_attempts}")
            )

    def should_retry(self, failure: Failure, attempt: int) -> bool:
        return attempt < self.max_attempts and self.retry_on(failure)


DEFAULT_POLICY = RetryPolicy()
NO_RETRY = RetryPolicy(max_attempts=1)


def _next_delay(policy: RetryPolicy, err: DockerError, attempt: int) -> float | None:
    """Return the pause before the next attempt, or None to give up."""
    if attempt >= policy.max_attempts:
        logger.debug("Retry attempts exhausted", attempts=policy.max_attempts)
        return None
    if not policy.retry_on(err.failure):
        logger.debug("Failure is not retryable", kind=err.kind.value, error=str(err))
        return None
    delay = policy.backoff.delay_for(attempt)
    logger.debug(
        "Attempt failed, retrying",
        attempt=attempt,
        max_attempts=policy.max_attempts,
        delay=delay,
        error=str(err),
    )
    return delay


async def run_with_retry_async(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
) -> T:
    """Await *operation* until it succeeds or the policy gives up.

    The last ``DockerError`` is re-raised unchanged; other exceptions are not
    retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except DockerError as err:
            delay = _next_delay(policy, err, attempt)
            if delay is None:
                raise
        await asyncio.sleep(delay)


def run_with_retry(policy: RetryPolicy, operation: Callable[[], T]) -> T:
    """Blocking counterpart of :func:`run_with_retry_async`."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except DockerError as err:
            delay = _next_delay(policy, err, attempt)
            if delay is None:
                raise
        time.sleep(delay)
