"""Retry and circuit breaking for calls to the embedding service.

Transient failures (rate limits, 5xx, dropped connections) are retried with
exponential backoff, honouring ``Retry-After``. Repeated transient failures
open a circuit so that indexing jobs and search requests fail fast while the
service is down instead of piling up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import openai

from ..exceptions import SessionStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Texts per embeddings request when batching
EMBED_BATCH_SIZE = 16


@dataclass
class RetryConfig:
    """Backoff schedule and what counts as transient."""

    max_retries: int = 4
    backoff_base: float = 0.5  # seconds
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_status_codes: tuple[int, ...] = (408, 409, 429, 500, 502, 503, 504)
    retryable_exceptions: tuple[type[BaseException], ...] = (
        openai.APIConnectionError,
        openai.APITimeoutError,
        ConnectionError,
        TimeoutError,
    )

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number ``attempt + 1``."""
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        return min(self.backoff_base * (self.backoff_multiplier**attempt), self.backoff_max)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(SessionStorageError):
    """Raised instead of calling the embedding service while the circuit is open."""

    def __init__(self, context: str = ""):
        message = "Embedding service unavailable (circuit open)"
        if context:
            message += f" [{context}]"
        super().__init__(message, {"context": context} if context else None)


@dataclass
class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    After ``failure_threshold`` transient failures in a row the circuit
    opens; calls are rejected until ``reset_timeout`` seconds have passed,
    then one trial request is let through. A success closes the circuit again.
    """

    failure_threshold: int = 5
    reset_timeout: float = 30.0

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False, repr=False)
    _failures: int = field(default=0, init=False, repr=False)
    _opened_at: float = field(default=0.0, init=False, repr=False)
    _trips: int = field(default=0, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and time.monotonic() - self._opened_at >= self.reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("Embedding circuit half-open, allowing a trial request")
        return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("Embedding circuit closed, service recovered")
        self._failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                self._trips += 1
                logger.warning(
                    f"Embedding circuit open after {self._failures} failures "
                    f"(trip #{self._trips}), probing again in {self.reset_timeout}s"
                )
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()

    def stats(self) -> dict[str, Any]:
        return {"state": self.state.value, "failures": self._failures, "trips": self._trips}


def status_code_of(exc: BaseException) -> int | None:
    """HTTP status of an SDK error, if it carries one."""
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None) if response is not None else None
    return int(status) if status is not None else None


def retry_after_of(exc: BaseException) -> float | None:
    """``Retry-After`` seconds from an SDK error's response headers."""
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def is_transient(exc: BaseException, config: RetryConfig) -> bool:
    if isinstance(exc, config.retryable_exceptions):
        return True
    status = status_code_of(exc)
    return status is not None and status in config.retryable_status_codes


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    circuit: CircuitBreaker | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient failures.

    Raises:
        CircuitOpenError: If the circuit rejects the call
        Exception: The last error once retries are exhausted, or the first
            non-transient error (auth, bad request) immediately
    """
    cfg = config or RetryConfig()
    ctx = f" [{context_msg}]" if context_msg else ""

    for attempt in range(cfg.max_retries + 1):
        if circuit is not None and not circuit.allow_request():
            raise CircuitOpenError(context_msg)

        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            transient = is_transient(exc, cfg)
            # Permanent errors say nothing about service health
            if circuit is not None and transient:
                circuit.record_failure()

            if not transient or attempt >= cfg.max_retries:
                logger.error(
                    "Embedding call failed: attempt=%d/%d status=%s transient=%s%s: %s",
                    attempt + 1,
                    cfg.max_retries + 1,
                    status_code_of(exc),
                    transient,
                    ctx,
                    exc,
                )
                raise

            delay = cfg.delay_for(attempt, retry_after_of(exc))
            logger.warning(
                "Retrying embedding call: attempt=%d/%d status=%s delay=%.1fs%s: %s",
                attempt + 1,
                cfg.max_retries + 1,
                status_code_of(exc),
                delay,
                ctx,
                exc,
            )
            await asyncio.sleep(delay)
            continue

        if attempt > 0:
            logger.info("Embedding call recovered after %d retries%s", attempt, ctx)
        if circuit is not None:
            circuit.record_success()
        return result

    raise RuntimeError("retry_with_backoff exhausted without raising")  # pragma: no cover
