"""Property-based tests for the publish throttle."""

import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from jobsync.models.records import PublishResult
from jobsync.sync.publish_throttle import PublishState, PublishThrottle
from tests.fakes import FakeTargetClient, FakeTimer, ManualClock

log = structlog.stdlib.get_logger()


def _throttle(target: FakeTargetClient, clock: ManualClock, timers: list, **kwargs):
    def timer_factory(interval, function):
        timer = FakeTimer(interval, function)
        timers.append(timer)
        return timer

    return PublishThrottle(
        target,
        min_interval_seconds=10,
        clock=clock,
        timer_factory=timer_factory,
        **kwargs,
    )


def test_property_7_publish_coalescing():
    """Property 7: Publish coalescing.

    The first request on an idle throttle publishes immediately; there is
    nothing to coalesce with yet. After that publish, two requests within the
    minimum interval produce exactly one further publish, carrying the latest
    reason. So two requests on a fresh throttle give two publishes: one now
    and one deferred.
    """
    target = FakeTargetClient()
    clock = ManualClock()
    timers: list[FakeTimer] = []
    throttle = _throttle(target, clock, timers)

    first = throttle.force_publish("initial")
    assert isinstance(first.result(timeout=1), PublishResult)

    clock.advance(2)
    second = throttle.force_publish("second")
    third = throttle.force_publish("third")

    assert second is third
    assert throttle.state == PublishState.PENDING
    assert len(timers) == 1
    assert timers[0].interval == 8

    clock.advance(8)
    timers[0].fire()

    assert target.publish_calls == ["initial", "third"]
    assert isinstance(second.result(timeout=1), PublishResult)
    assert throttle.state == PublishState.IDLE


@given(st.integers(min_value=1, max_value=20))
@settings(max_examples=20, deadline=None)
def test_burst_within_interval_publishes_once_more(burst: int):
    target = FakeTargetClient()
    clock = ManualClock()
    timers: list[FakeTimer] = []
    throttle = _throttle(target, clock, timers, enabled=True)

    throttle.publish_if_enabled("initial")
    futures = []
    for i in range(burst):
        clock.advance(0.1)
        futures.append(throttle.publish_if_enabled(f"burst {i}"))

    assert len({id(f) for f in futures}) == 1
    assert len(timers) == 1

    timers[0].fire()

    assert target.publish_calls == ["initial", f"burst {burst - 1}"]


def test_disabled_throttle_does_not_publish():
    target = FakeTargetClient()
    throttle = _throttle(target, ManualClock(), [], enabled=False)

    assert throttle.publish_if_enabled("sync finished") is None
    assert target.publish_calls == []

    throttle.set_enabled(True)
    assert throttle.enabled is True
    assert throttle.publish_if_enabled("sync finished") is not None
    assert target.publish_calls == ["sync finished"]


def test_force_publish_ignores_enabled_flag():
    target = FakeTargetClient()
    throttle = _throttle(target, ManualClock(), [], enabled=False)

    throttle.force_publish("manual").result(timeout=1)

    assert target.publish_calls == ["manual"]


def test_publish_if_enabled_swallows_failures():
    target = FakeTargetClient()
    target.publish_error = RuntimeError("site locked")
    throttle = _throttle(target, ManualClock(), [], enabled=True)

    future = throttle.publish_if_enabled("sync finished")

    assert future.result(timeout=1) is None
    assert isinstance(throttle.last_error, RuntimeError)
    assert throttle.state == PublishState.IDLE


def test_force_publish_propagates_failures():
    target = FakeTargetClient()
    target.publish_error = RuntimeError("site locked")
    throttle = _throttle(target, ManualClock(), [])

    future = throttle.force_publish("manual")

    assert isinstance(future.exception(timeout=1), RuntimeError)


def test_failed_publish_returns_to_idle_and_allows_retry():
    target = FakeTargetClient()
    target.publish_error = RuntimeError("site locked")
    clock = ManualClock()
    throttle = _throttle(target, clock, [], enabled=True)

    throttle.publish_if_enabled("first")
    target.publish_error = None
    clock.advance(10)
    throttle.publish_if_enabled("second").result(timeout=1)

    assert target.publish_calls == ["first", "second"]
    assert throttle.last_error is None


def test_cancel_pending_publish():
    target = FakeTargetClient()
    clock = ManualClock()
    timers: list[FakeTimer] = []
    throttle = _throttle(target, clock, timers)

    throttle.force_publish("initial")
    pending = throttle.force_publish("deferred")

    assert throttle.cancel_pending() is True
    assert pending.cancelled()
    assert timers[0].cancelled
    assert throttle.state == PublishState.IDLE
    assert throttle.cancel_pending() is False

    timers[0].fire()
    assert target.publish_calls == ["initial"]
