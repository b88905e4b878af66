"""Throttled, coalescing site publishing."""

import threading
import time
from concurrent.futures import Future
from enum import Enum
from typing import Callable

import structlog

from jobsync.clients.base import TargetClient
from jobsync.models.records import PublishResult

log = structlog.stdlib.get_logger()

TimerFactory = Callable[[float, Callable[[], None]], threading.Timer]


class PublishState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    PUBLISHING = "publishing"


class PublishThrottle:
    """
    Enforces a minimum interval between site publishes.

    A request arriving within the interval is deferred until the interval
    ends. Requests arriving while one is deferred are merged into it and share
    its future; the deferred publish carries the most recent reason.
    """

    def __init__(
        self,
        target_client: TargetClient,
        enabled: bool = False,
        min_interval_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: TimerFactory = threading.Timer,
    ):
        """
        Initialize the publish throttle.

        Args:
            target_client: Client whose ``publish`` is throttled
            enabled: Whether ``publish_if_enabled`` publishes at all
            min_interval_seconds: Minimum time between two actual publishes
            clock: Monotonic clock (injectable for tests)
            timer_factory: Builds the timer for deferred publishes
        """
        self.target_client = target_client
        self.min_interval_seconds = min_interval_seconds
        self._enabled = enabled
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._state = PublishState.IDLE
        self._last_publish_at: float | None = None
        self._pending_future: Future | None = None
        self._pending_reason: str | None = None
        self._pending_swallow = True
        self._timer: threading.Timer | None = None
        self.last_error: BaseException | None = None

        log.info(
            "publish_throttle_initialized",
            enabled=enabled,
            min_interval_seconds=min_interval_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def state(self) -> PublishState:
        return self._state

    def set_enabled(self, enabled: bool) -> None:
        """Switch auto-publishing on or off. A pending publish is kept."""
        self._enabled = enabled
        log.info("auto_publish_toggled", enabled=enabled)

    def publish_if_enabled(self, reason: str) -> Future | None:
        """
        Request a publish if auto-publishing is enabled.

        Failures are logged and kept in ``last_error``; the returned future
        then resolves to None instead of raising.

        Returns:
            Future of the publish, or None when auto-publishing is disabled
        """
        if not self._enabled:
            log.debug("auto_publish_disabled", reason=reason)
            return None
        return self._request(reason, swallow_errors=True)

    def force_publish(self, reason: str) -> Future:
        """
        Request a publish regardless of the enabled flag.

        The minimum interval still applies. Failures propagate through the
        returned future.

        Returns:
            Future of the publish
        """
        return self._request(reason, swallow_errors=False)

    def cancel_pending(self) -> bool:
        """Cancel a deferred publish. Returns True if one was pending."""
        with self._lock:
            if self._state != PublishState.PENDING or self._timer is None:
                return False
            self._timer.cancel()
            future = self._pending_future
            self._reset_pending()
            self._state = PublishState.IDLE

        if future is not None:
            future.cancel()
        log.info("pending_publish_cancelled")
        return True

    def _request(self, reason: str, swallow_errors: bool) -> Future:
        with self._lock:
            if self._state == PublishState.PENDING and self._pending_future is not None:
                self._pending_reason = reason
                # A caller that wants errors raised makes the merged publish raise.
                self._pending_swallow = self._pending_swallow and swallow_errors
                log.info("publish_request_coalesced", reason=reason)
                return self._pending_future

            future: Future = Future()
            wait = self._remaining_interval()

            if wait > 0 or self._state == PublishState.PUBLISHING:
                self._pending_future = future
                self._pending_reason = reason
                self._pending_swallow = swallow_errors
                self._state = PublishState.PENDING
                delay = wait if wait > 0 else self.min_interval_seconds
                self._timer = self._timer_factory(delay, self._fire_pending)
                self._timer.daemon = True
                self._timer.start()
                log.info("publish_deferred", reason=reason, delay_seconds=round(delay, 3))
                return future

            self._state = PublishState.PUBLISHING
            self._last_publish_at = self._clock()

        self._execute(future, reason, swallow_errors)
        return future

    def _remaining_interval(self) -> float:
        if self._last_publish_at is None:
            return 0.0
        return self.min_interval_seconds - (self._clock() - self._last_publish_at)

    def _finish_publishing(self) -> None:
        # A request may have been deferred while the publish was in flight.
        if self._state == PublishState.PUBLISHING:
            self._state = PublishState.IDLE

    def _reset_pending(self) -> None:
        self._pending_future = None
        self._pending_reason = None
        self._pending_swallow = True
        self._timer = None

    def _fire_pending(self) -> None:
        with self._lock:
            if self._state != PublishState.PENDING or self._pending_future is None:
                return
            future = self._pending_future
            reason = self._pending_reason or "deferred"
            swallow = self._pending_swallow
            self._reset_pending()
            self._state = PublishState.PUBLISHING
            self._last_publish_at = self._clock()

        if not future.set_running_or_notify_cancel():
            with self._lock:
                self._state = PublishState.IDLE
            return

        self._execute(future, reason, swallow, running=True)

    def _execute(
        self, future: Future, reason: str, swallow_errors: bool, running: bool = False
    ) -> None:
        if not running:
            future.set_running_or_notify_cancel()

        log.info("publishing_site", reason=reason)
        try:
            result: PublishResult = self.target_client.publish(reason)
        except Exception as e:
            with self._lock:
                self.last_error = e
                self._finish_publishing()
            log.error("publish_failed", reason=reason, error=str(e), error_type=type(e).__name__)
            if swallow_errors:
                future.set_result(None)
            else:
                future.set_exception(e)
            return

        with self._lock:
            self.last_error = None
            self._finish_publishing()
        log.info("site_published", reason=reason, published_at=result.published_at)
        future.set_result(result)
