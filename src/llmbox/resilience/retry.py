"""Classifier-driven retry executor built on tenacity.

Wraps any awaitable external call with:
- a bounded number of attempts (default 3),
- exponential backoff between attempts (default 1s, 2s, 4s, ...),
- a per-attempt timeout, optionally capped by an absolute deadline,
- a caller-supplied classifier deciding which errors are worth retrying.

Fatal classifications re-raise the original exception after a single call.
Retryable failures that exhaust the budget raise ``RetryExhaustedError``
chained from the final error.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from llmbox.domain.errors import (
    AttemptTimeoutError,
    DeadlineExceededError,
    ErrorClass,
    RetryExhaustedError,
)

logger = structlog.get_logger()

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorClass]
AttemptHook = Callable[[int, BaseException | None, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget shared by the completion and delivery clients.

    Attributes:
        max_attempts: Total attempts including the first call.
        base_delay: Delay in seconds after the first failed attempt.
        backoff_multiplier: Factor applied to the delay after each failure.
        attempt_timeout: Per-attempt timeout in seconds (``None`` = unbounded).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    attempt_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.backoff_multiplier < 1:
            raise ValueError("base_delay must be >= 0 and backoff_multiplier >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay slept after failed attempt number *attempt* (1-based)."""
        return self.base_delay * self.backoff_multiplier ** (attempt - 1)


DEFAULT_POLICY = RetryPolicy()


def _attempt_timeout(
    policy: RetryPolicy,
    deadline: float | None,
    loop: asyncio.AbstractEventLoop,
    operation_name: str,
) -> float | None:
    """Per-attempt timeout: the policy timeout capped by the remaining deadline."""
    if deadline is None:
        return policy.attempt_timeout
    remaining = deadline - loop.time()
    if remaining <= 0:
        raise DeadlineExceededError(operation_name)
    if policy.attempt_timeout is None:
        return remaining
    return min(policy.attempt_timeout, remaining)


def _log_before_sleep(operation_name: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry_scheduled",
            operation=operation_name,
            attempt=retry_state.attempt_number,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
            error=str(exception),
            error_type=type(exception).__name__,
        )

    return _before_sleep


async def execute(
    operation: Callable[[], Awaitable[T]],
    classifier: Classifier,
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    operation_name: str = "external_call",
    deadline: float | None = None,
    on_attempt: AttemptHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation* under *policy*, retrying only what *classifier* allows.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        classifier: Maps a raised exception to ``RETRYABLE`` or ``FATAL``.
        policy: Attempt budget, backoff, and per-attempt timeout.
        operation_name: Name used in log events and error messages.
        deadline: Absolute ``loop.time()`` after which no attempt may start.
        on_attempt: Called after every attempt with
            ``(attempt_number, error_or_None, latency_ms)``.
        sleep: Awaitable sleep used between attempts.  Injected by tests.

    Returns:
        The value returned by the first successful attempt.

    Raises:
        RetryExhaustedError: Every attempt failed with a retryable error.
        DeadlineExceededError: The deadline passed before an attempt started.
        Exception: The original error, when classified as fatal.
    """
    loop = asyncio.get_running_loop()

    def _is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, AttemptTimeoutError):
            return True
        if isinstance(exc, DeadlineExceededError):
            return False
        return classifier(exc) is ErrorClass.RETRYABLE

    async def _attempt(attempt_number: int) -> T:
        timeout = _attempt_timeout(policy, deadline, loop, operation_name)
        error: BaseException | None = None
        started = time.perf_counter()
        timer = asyncio.timeout(timeout)
        try:
            async with timer:
                return await operation()
        except TimeoutError as exc:
            if timer.expired():
                error = AttemptTimeoutError(operation_name, timeout or 0.0)
                raise error from exc
            error = exc
            raise
        except Exception as exc:
            error = exc
            raise
        finally:
            if on_attempt is not None:
                latency_ms = round((time.perf_counter() - started) * 1000, 3)
                on_attempt(attempt_number, error, latency_ms)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay,
            exp_base=policy.backoff_multiplier,
        ),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_before_sleep(operation_name),
        sleep=sleep,
    )

    result: T
    try:
        async for attempt in retrying:
            with attempt:
                result = await _attempt(attempt.retry_state.attempt_number)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        attempts = exc.last_attempt.attempt_number
        logger.error(
            "retry_exhausted",
            operation=operation_name,
            attempts=attempts,
            error=str(last_error),
        )
        raise RetryExhaustedError(operation_name, attempts, last_error) from last_error
    return result
