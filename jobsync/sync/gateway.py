"""Single-flight, budget-aware outbound call queue for the target API."""

import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

import structlog

from jobsync.errors import RateLimitError

log = structlog.stdlib.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RateBudget:
    """Snapshot of the outbound call budget.

    ``window_start`` is the oldest dispatch still in the rolling window and
    ``reset_at`` the moment it ages out.
    """

    capacity: int
    window_start: float
    used: int
    reset_at: float


@dataclass
class GatewayResponse(Generic[T]):
    """Wraps a request result together with server-reported quota metadata."""

    value: T
    remaining: int | None = None
    reset_after: float | None = None


@dataclass
class _QueuedCall:
    request_fn: Callable[[], Any]
    future: Future = field(default_factory=Future)
    rate_limit_retries: int = 0
    started: bool = False


class RateLimitedGateway:
    """
    FIFO queue that dispatches at most one outbound call at a time.

    Calls are dispatched in submission order by a single drain thread. No
    more than ``capacity`` calls are dispatched within any rolling window of
    ``window_seconds``; when the budget is spent the drain thread sleeps until
    the oldest dispatch ages out. A ``RateLimitError`` from the target exhausts
    the budget immediately and the same call is retried at the head of the
    queue once the budget resets.
    """

    def __init__(
        self,
        capacity: int = 60,
        window_seconds: float = 60.0,
        fallback_reset_seconds: float = 60.0,
        max_rate_limit_retries: int = 5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the gateway.

        Args:
            capacity: Calls allowed per window
            window_seconds: Length of the budget window
            fallback_reset_seconds: Wait after a rate-limit response with no reset hint
            max_rate_limit_retries: Rate-limit responses tolerated per call
            clock: Monotonic clock (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self._capacity = capacity
        self._window_seconds = window_seconds
        self._fallback_reset_seconds = fallback_reset_seconds
        self._max_rate_limit_retries = max_rate_limit_retries
        self._clock = clock
        self._sleep = sleep

        self._queue: deque[_QueuedCall] = deque()
        self._lock = threading.Lock()
        self._draining = False

        # Dispatch times inside the rolling window, oldest first.
        self._dispatched: deque[float] = deque()

        log.info(
            "rate_limited_gateway_initialized",
            capacity=capacity,
            window_seconds=window_seconds,
        )

    @property
    def budget(self) -> RateBudget:
        with self._lock:
            now = self._clock()
            self._expire(now)
            window_start = self._dispatched[0] if self._dispatched else now
            return RateBudget(
                capacity=self._capacity,
                window_start=window_start,
                used=len(self._dispatched),
                reset_at=window_start + self._window_seconds,
            )

    @property
    def pending(self) -> int:
        """Number of calls waiting to be dispatched."""
        with self._lock:
            return len(self._queue)

    def enqueue(self, request_fn: Callable[[], Any]) -> Future:
        """
        Queue an outbound call.

        ``request_fn`` may return a plain value or a ``GatewayResponse``
        carrying quota metadata; the future resolves to the plain value.

        Returns:
            Future settled with the call's result or exception
        """
        call = _QueuedCall(request_fn)
        with self._lock:
            self._queue.append(call)
            if not self._draining:
                self._draining = True
                threading.Thread(
                    target=self._drain, name="rate-limited-gateway", daemon=True
                ).start()
        return call.future

    def call(self, request_fn: Callable[[], T]) -> T:
        """Queue an outbound call and block until it settles."""
        return self.enqueue(request_fn).result()

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._draining = False
                    return
                call = self._queue.popleft()

            if not call.started:
                if not call.future.set_running_or_notify_cancel():
                    continue
                call.started = True

            self._dispatch(call)

    def _dispatch(self, call: _QueuedCall) -> None:
        self._wait_for_budget()

        with self._lock:
            self._dispatched.append(self._clock())

        try:
            result = call.request_fn()
        except RateLimitError as e:
            self._exhaust(e.reset_after)
            call.rate_limit_retries += 1
            if call.rate_limit_retries > self._max_rate_limit_retries:
                log.error(
                    "rate_limit_retries_exhausted",
                    retries=call.rate_limit_retries - 1,
                    error=str(e),
                )
                call.future.set_exception(e)
                return

            log.warning(
                "rate_limit_hit_requeueing",
                attempt=call.rate_limit_retries,
                reset_after=e.reset_after,
            )
            # Head of the queue keeps FIFO order across the retry.
            with self._lock:
                self._queue.appendleft(call)
            return
        except BaseException as e:
            call.future.set_exception(e)
            return

        if isinstance(result, GatewayResponse):
            self._observe_quota(result.remaining, result.reset_after)
            call.future.set_result(result.value)
        else:
            call.future.set_result(result)

    def _wait_for_budget(self) -> None:
        while True:
            with self._lock:
                now = self._clock()
                self._expire(now)
                if len(self._dispatched) < self._capacity:
                    return
                oldest = self._dispatched[0]
                wait = oldest + self._window_seconds - now

            if wait > 0:
                log.info("rate_budget_exhausted_waiting", wait_seconds=round(wait, 3))
                self._sleep(wait)

            with self._lock:
                # Slots stamped up to the awaited one have aged out.
                while self._dispatched and self._dispatched[0] <= oldest:
                    self._dispatched.popleft()

    def _expire(self, now: float) -> None:
        while self._dispatched and self._dispatched[0] + self._window_seconds <= now:
            self._dispatched.popleft()

    def _fill(self, count: int, free_at: float) -> None:
        """Replace the window with ``count`` slots that all free up at ``free_at``."""
        stamp = free_at - self._window_seconds
        self._dispatched = deque([stamp] * count)

    def _exhaust(self, reset_after: float | None) -> None:
        wait = reset_after if reset_after is not None and reset_after > 0 else None
        with self._lock:
            now = self._clock()
            self._fill(
                self._capacity,
                now + (wait if wait is not None else self._fallback_reset_seconds),
            )

    def _observe_quota(self, remaining: int | None, reset_after: float | None) -> None:
        if remaining is None:
            return
        with self._lock:
            now = self._clock()
            used = min(max(self._capacity - remaining, 1), self._capacity)
            # The server's count replaces ours; its slots free up at its reset time.
            if reset_after is not None and reset_after > 0:
                free_at = now + reset_after
            else:
                free_at = now + self._window_seconds
            self._fill(used, free_at)
