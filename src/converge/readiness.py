"""
Readiness polling for resources that settle asynchronously.

A check is an async callable returning ``NOT_READY`` to keep waiting,
``Ready(value)`` to stop with a value, or ``Failed(reason)`` to stop with an
error. Exceptions raised by the check end the poll immediately.

Every poll is bounded by a timeout, an attempt count, or both. Unbounded
polling is rejected up front. The timeout and the cancel event also bound a
check that is still running: it is abandoned when either fires. A check
running in a worker thread is left to finish on its own, but its result is
discarded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from converge.core.errors import ConfigurationError, PollCancelledError, ReadinessFailedError, ReadinessTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


class _NotReady:
    def __repr__(self) -> str:
        return "NOT_READY"


NOT_READY = _NotReady()


@dataclass(frozen=True)
class Ready(Generic[T]):
    value: T = None  # type: ignore[assignment]


@dataclass(frozen=True)
class Failed:
    reason: str


CheckOutcome = Union[_NotReady, Ready[Any], Failed]
Check = Callable[[], Awaitable[CheckOutcome]]


class _BudgetExhausted(Exception):
    """The poll's time budget ran out during a check or a sleep."""


async def poll_until(
    check: Check,
    *,
    interval: float,
    timeout: float | None,
    max_attempts: int | None = None,
    cancel: asyncio.Event | None = None,
    description: str = "condition",
) -> Any:
    """Run ``check`` now and then every ``interval`` seconds until it settles.

    Returns the value of the ``Ready`` outcome.

    Raises:
        ValueError: neither ``timeout`` nor ``max_attempts`` is set
        ReadinessTimeoutError: the bound was reached while still not ready
        ReadinessFailedError: the check returned ``Failed``
        PollCancelledError: ``cancel`` was set
    """
    if timeout is None and max_attempts is None:
        raise ValueError("poll_until requires a timeout or max_attempts bound")
    if interval < 0:
        raise ValueError("interval must not be negative")

    if timeout is not None and max_attempts is not None:
        stop = stop_after_delay(timeout) | stop_after_attempt(max_attempts)
    elif timeout is not None:
        stop = stop_after_delay(timeout)
    else:
        stop = stop_after_attempt(max_attempts)

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    attempts = 0

    def remaining() -> float | None:
        if deadline is None:
            return None
        return max(deadline - loop.time(), 0.0)

    def cancelled() -> PollCancelledError:
        return PollCancelledError(f"Polling for {description} was cancelled", details={"attempts": attempts})

    async def bounded(awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` until it finishes, the budget runs out or ``cancel`` is set."""
        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise cancelled()
        raise _BudgetExhausted()

    async def sleep(seconds: float) -> None:
        budget = remaining()
        if budget is not None and budget <= seconds:
            await bounded(asyncio.sleep(budget))
            raise _BudgetExhausted()
        await bounded(asyncio.sleep(seconds))

    def log_waiting(retry_state: RetryCallState) -> None:
        logger.info(
            "poll_waiting",
            description=description,
            attempt=retry_state.attempt_number,
            elapsed=round(retry_state.seconds_since_start or 0.0, 3),
        )

    async def attempt() -> CheckOutcome:
        nonlocal attempts
        if cancel is not None and cancel.is_set():
            raise cancelled()
        attempts += 1
        outcome = await bounded(check())
        if not isinstance(outcome, (_NotReady, Ready, Failed)):
            raise TypeError(f"Readiness check for {description} returned {outcome!r}")
        return outcome

    retrying = AsyncRetrying(
        stop=stop,
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda outcome: outcome is NOT_READY),
        before_sleep=log_waiting,
        sleep=sleep,
    )
    try:
        outcome = await retrying(attempt)
    except (RetryError, _BudgetExhausted):
        raise ReadinessTimeoutError(
            f"Timed out waiting for {description}",
            details={"attempts": attempts, "timeout": timeout, "max_attempts": max_attempts},
        ) from None

    if isinstance(outcome, Failed):
        raise ReadinessFailedError(f"{description} failed: {outcome.reason}", details={"reason": outcome.reason})
    logger.debug("poll_ready", description=description, attempts=attempts)
    return outcome.value


class Poller:
    """Polling bound shared by the handlers of one run."""

    def __init__(
        self,
        *,
        interval: float,
        timeout: float | None,
        max_attempts: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> None:
        if timeout is None and max_attempts is None:
            raise ValueError("Poller requires a timeout or max_attempts bound")
        self.interval = interval
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.cancel = cancel

    @classmethod
    def from_settings(cls, settings: Any, *, cancel: asyncio.Event | None = None) -> Poller:
        if settings.poll_timeout is None and settings.poll_max_attempts is None:
            raise ConfigurationError(
                "Set CONVERGE_POLL_TIMEOUT or CONVERGE_POLL_MAX_ATTEMPTS; readiness polling needs a bound",
                details={"poll_timeout": None, "poll_max_attempts": None},
            )
        return cls(
            interval=settings.poll_interval,
            timeout=settings.poll_timeout,
            max_attempts=settings.poll_max_attempts,
            cancel=cancel,
        )

    async def wait_for(self, check: Check, *, description: str = "condition") -> Any:
        return await poll_until(
            check,
            interval=self.interval,
            timeout=self.timeout,
            max_attempts=self.max_attempts,
            cancel=self.cancel,
            description=description,
        )
