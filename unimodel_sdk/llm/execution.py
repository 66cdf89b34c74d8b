# unimodel_sdk/llm/execution.py
# SPDX-License-Identifier: Apache-2.0
"""
Execution policy engine — timeout, retry, and backoff-with-jitter for model calls.

Purpose
-------
Wrap a *factory* of async response sequences with fault tolerance while
keeping the external contract identical: callers still receive one lazy,
cancellable async iterator of response events.

    stream = apply_execution_policy(
        lambda: adapter_stream_once(request),
        ExecutionConfig(timeout=30, max_attempts=3),
    )
    async for chunk in stream:
        ...

Semantics
---------
- No config: the factory's sequence is returned unmodified (no wrapping).
- timeout: each attempt's whole sequence, from subscription to completion,
  must finish within `timeout` seconds or the attempt fails with
  DeadlineExceeded. A timeout is retry-eligible like any other error.
- max_attempts > 1: the entire operation (producing *and* consuming the
  sequence) is retried by re-invoking the factory, so every attempt performs
  a fresh network call with fresh per-request state (e.g. encryption keys).
- Backoff before retry n: min(initial * multiplier**(n-1), max_backoff),
  perturbed by ±50% jitter and clamped to [initial, max_backoff]. The delay is
  an `asyncio.sleep`, never a blocking sleep.
- Errors rejected by `retry_on` propagate immediately.
- When attempts are exhausted the *last* error is raised unchanged; attempt
  bookkeeping is attached with `attach_context` (`retry_exhausted=True`).
- Cancellation (consumer `aclose()` / task cancellation, including during a
  backoff delay) closes the in-flight iterator and schedules no further
  attempts. Timeouts use the same teardown path.

Per-call state machine:

    Idle -> Attempting -> Succeeded
                       -> AttemptFailed -> Backoff -> Attempting
                       -> Exhausted (last error)

Events already delivered to the consumer by a failed attempt are not
retracted; a retried attempt starts the sequence again from its first event.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from unimodel_sdk.core.error_context import attach_context
from unimodel_sdk.llm.errors import (
    BadGateway,
    DeadlineExceeded,
    EncryptionError,
    GatewayTimeout,
    InternalServerError,
    RequestTimeout,
    ResourceExhausted,
    TransientNetwork,
    Unavailable,
)

LOG = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
Duration = Union[float, int, timedelta]

DEFAULT_INITIAL_BACKOFF_S = 1.0
DEFAULT_MAX_BACKOFF_S = 10.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0
JITTER_FACTOR = 0.5

_END = object()


# =============================================================================
# Retry predicates
# =============================================================================

def retry_on_any(error: BaseException) -> bool:
    """
    Default predicate: retry every error except EncryptionError.

    Encryption failures indicate a key/configuration mismatch; a caller that
    really wants them retried must pass its own predicate.
    """
    return not isinstance(error, EncryptionError)


RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (
    TransientNetwork,
    DeadlineExceeded,
    RequestTimeout,
    ResourceExhausted,
    InternalServerError,
    BadGateway,
    Unavailable,
    GatewayTimeout,
)


def retry_on_retryable(error: BaseException) -> bool:
    """Retry only network failures, timeouts, throttling and 5xx-mapped errors."""
    return isinstance(error, RETRYABLE_ERRORS)


def retry_on_types(*types: Type[BaseException]) -> RetryPredicate:
    """Build a predicate retrying only instances of the given error types."""
    if not types:
        raise ValueError("retry_on_types requires at least one exception type")

    def _predicate(error: BaseException) -> bool:
        return isinstance(error, types)

    return _predicate


# =============================================================================
# Configuration
# =============================================================================

def _seconds(value: Optional[Duration], name: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, timedelta):
        value = value.total_seconds()
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be seconds (int/float) or timedelta")
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return float(value)


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Immutable timeout/retry configuration for one model call.

    Absent (None) fields mean "do not apply this behavior"; when retry is
    active, unset backoff fields fall back to 1s initial, 10s max, x2.

    Attributes:
        timeout:
            Per-attempt budget for the whole response sequence, seconds
            (or timedelta). None = unbounded.
        max_attempts:
            Total attempts including the first. None/1 = no retry.
        initial_backoff:
            Delay before the first retry.
        max_backoff:
            Upper bound for any retry delay.
        backoff_multiplier:
            Growth factor per retry (>= 1.0).
        retry_on:
            Predicate deciding whether an error is retried.
    """
    timeout: Optional[Duration] = None
    max_attempts: Optional[int] = None
    initial_backoff: Optional[Duration] = None
    max_backoff: Optional[Duration] = None
    backoff_multiplier: Optional[float] = None
    retry_on: Optional[RetryPredicate] = None

    def __post_init__(self) -> None:
        for name in ("timeout", "initial_backoff", "max_backoff"):
            object.__setattr__(self, name, _seconds(getattr(self, name), name))
        if self.max_attempts is not None:
            if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
                raise TypeError("max_attempts must be an int")
            if self.max_attempts < 1:
                raise ValueError("max_attempts must be >= 1")
        if self.backoff_multiplier is not None and self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.retry_on is not None and not callable(self.retry_on):
            raise TypeError("retry_on must be callable")

    @property
    def retries_enabled(self) -> bool:
        return (self.max_attempts or 1) > 1

    @staticmethod
    def merge(
        primary: Optional["ExecutionConfig"],
        fallback: Optional["ExecutionConfig"],
    ) -> Optional["ExecutionConfig"]:
        """
        Field-by-field merge: primary's non-None values win.

        Returns the other side unchanged when either is None.
        """
        if primary is None:
            return fallback
        if fallback is None:
            return primary
        merged = {}
        for f in fields(ExecutionConfig):
            value = getattr(primary, f.name)
            merged[f.name] = value if value is not None else getattr(fallback, f.name)
        return ExecutionConfig(**merged)


MODEL_DEFAULTS = ExecutionConfig(
    timeout=300.0,
    max_attempts=3,
    initial_backoff=DEFAULT_INITIAL_BACKOFF_S,
    max_backoff=DEFAULT_MAX_BACKOFF_S,
    backoff_multiplier=DEFAULT_BACKOFF_MULTIPLIER,
    retry_on=retry_on_any,
)

TOOL_DEFAULTS = ExecutionConfig(timeout=300.0, max_attempts=1)


# =============================================================================
# Backoff
# =============================================================================

def compute_backoff(
    retry_number: int,
    *,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF_S,
    max_backoff: float = DEFAULT_MAX_BACKOFF_S,
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    jitter: float = JITTER_FACTOR,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retry `retry_number` (1-based).

    The jitter offset is drawn uniformly from ±jitter*base, restricted so the
    result stays within [initial_backoff, max_backoff].
    """
    if retry_number < 1:
        raise ValueError("retry_number must be >= 1")
    initial_backoff = min(initial_backoff, max_backoff)
    try:
        base = initial_backoff * (multiplier ** (retry_number - 1))
    except OverflowError:
        base = max_backoff
    base = min(base, max_backoff)
    if jitter <= 0:
        return base

    offset = base * jitter
    low = max(initial_backoff - base, -offset)
    high = min(max_backoff - base, offset)
    if high <= low:
        return base
    return base + (rng or random).uniform(low, high)


# =============================================================================
# Policy application
# =============================================================================

async def _next_or_end(iterator: AsyncIterator[T]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


async def _aclose(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:  # noqa: BLE001
        # The attempt's own outcome (success or its error) takes precedence.
        LOG.debug("error while closing response iterator: %s", e)


async def _iterate_with_timeout(
    factory: Callable[[], AsyncIterator[T]],
    timeout: Optional[float],
) -> AsyncIterator[T]:
    """
    Run one attempt: create the source via `factory` and yield from it,
    failing with DeadlineExceeded once `timeout` elapses.

    The factory is invoked on first iteration, so an error raised while
    producing the sequence is an attempt failure like any other.
    """
    source = factory()
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    try:
        while True:
            if deadline is None:
                item = await _next_or_end(source)
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise DeadlineExceeded(
                        f"response not completed within {timeout:.3f}s",
                        details={"timeout_s": timeout},
                    )
                try:
                    item = await asyncio.wait_for(_next_or_end(source), timeout=remaining)
                except asyncio.TimeoutError as e:
                    raise DeadlineExceeded(
                        f"response not completed within {timeout:.3f}s",
                        details={"timeout_s": timeout},
                    ) from e
            if item is _END:
                return
            yield item
    finally:
        await _aclose(source)


def _should_retry(predicate: RetryPredicate, error: BaseException) -> bool:
    try:
        return bool(predicate(error))
    except Exception as e:  # noqa: BLE001
        LOG.warning("retry predicate raised %s; treating error as terminal", type(e).__name__)
        return False


async def _run_with_policy(
    factory: Callable[[], AsyncIterator[T]],
    config: ExecutionConfig,
    *,
    operation: str,
    model: Optional[str],
    rng: Optional[random.Random],
) -> AsyncIterator[T]:
    max_attempts = config.max_attempts or 1
    initial_backoff = config.initial_backoff or DEFAULT_INITIAL_BACKOFF_S
    max_backoff = config.max_backoff or DEFAULT_MAX_BACKOFF_S
    multiplier = config.backoff_multiplier or DEFAULT_BACKOFF_MULTIPLIER
    retry_on = config.retry_on or retry_on_any

    attempt = 0
    while True:
        attempt += 1
        attempt_iter = _iterate_with_timeout(factory, config.timeout)
        try:
            async for item in attempt_iter:
                yield item
            return
        except Exception as e:  # noqa: BLE001
            exhausted = attempt >= max_attempts
            if exhausted or not _should_retry(retry_on, e):
                attach_context(
                    e,
                    "execution",
                    operation=operation,
                    model=model,
                    attempts=attempt,
                    max_attempts=max_attempts,
                    retry_exhausted=exhausted and max_attempts > 1,
                )
                raise
            delay = compute_backoff(
                attempt,
                initial_backoff=initial_backoff,
                max_backoff=max_backoff,
                multiplier=multiplier,
                rng=rng,
            )
            LOG.warning(
                "Retrying %s for model %s (attempt %d/%d) in %.2fs due to: %s",
                operation,
                model or "unknown",
                attempt + 1,
                max_attempts,
                delay,
                e,
            )
        finally:
            await attempt_iter.aclose()
        await asyncio.sleep(delay)


def apply_execution_policy(
    factory: Callable[[], AsyncIterator[T]],
    config: Optional[ExecutionConfig],
    *,
    operation: str = "stream",
    model: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> AsyncIterator[T]:
    """
    Wrap a response-sequence factory with timeout and retry semantics.

    Args:
        factory:
            Zero-argument callable returning a *fresh* async iterator per call.
            Re-invoked for every attempt.
        config:
            ExecutionConfig or None. None (or a config with neither timeout
            nor retries) returns `factory()` unwrapped.
        operation, model:
            Labels for logs and attached error context.
        rng:
            Optional random source for jitter (tests pin it).

    Returns:
        An async iterator with the same element contract as `factory()`.
    """
    if config is None or (config.timeout is None and not config.retries_enabled):
        return factory()

    LOG.debug(
        "Applied execution policy to %s: timeout=%s max_attempts=%s",
        operation,
        config.timeout,
        config.max_attempts,
    )
    return _run_with_policy(factory, config, operation=operation, model=model, rng=rng)


async def run_with_policy(
    call: Callable[[], Awaitable[T]],
    config: Optional[ExecutionConfig],
    *,
    operation: str = "call",
    model: Optional[str] = None,
) -> T:
    """
    Unary counterpart of `apply_execution_policy`.

    `call` is a zero-argument coroutine factory; it is re-invoked on every
    attempt.
    """
    if config is None:
        return await call()

    async def _single() -> AsyncIterator[T]:
        yield await call()

    stream = apply_execution_policy(_single, config, operation=operation, model=model)
    try:
        async for result in stream:
            return result
    finally:
        await _aclose(stream)
    raise RuntimeError(f"{operation} produced no result")  # pragma: no cover


__all__ = [
    "ExecutionConfig",
    "MODEL_DEFAULTS",
    "TOOL_DEFAULTS",
    "RetryPredicate",
    "RETRYABLE_ERRORS",
    "retry_on_any",
    "retry_on_retryable",
    "retry_on_types",
    "compute_backoff",
    "apply_execution_policy",
    "run_with_policy",
]
