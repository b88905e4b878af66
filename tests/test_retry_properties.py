"""Property-based tests for retry logic with linear backoff."""

from unittest.mock import Mock

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from jobsync.errors import SourceError, TransientNetworkError
from jobsync.utils.retry import linear_backoff_retry

log = structlog.stdlib.get_logger()


@given(
    st.integers(min_value=0, max_value=4),
    st.floats(min_value=0.01, max_value=5.0),
)
@settings(max_examples=50, deadline=None)
def test_property_5_linear_backoff_behavior(num_failures: int, delay: float):
    """Property 5: Linear backoff behavior.

    For any number of transient failures below the attempt limit, the n-th
    retry waits delay * n seconds and the call eventually succeeds.
    """
    log.info("test_property_5_linear_backoff_behavior", num_failures=num_failures, delay=delay)

    sleeps: list[float] = []
    call_count = 0

    @linear_backoff_retry(
        max_attempts=5,
        delay=delay,
        exceptions=(TransientNetworkError,),
        sleep=sleeps.append,
    )
    def flaky():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise TransientNetworkError(f"timeout {call_count}")
        return "success"

    assert flaky() == "success"
    assert call_count == num_failures + 1
    assert sleeps == pytest.approx([delay * n for n in range(1, num_failures + 1)])


def test_gives_up_after_max_attempts():
    sleeps: list[float] = []
    func = Mock(side_effect=TransientNetworkError("timeout"))
    func.__name__ = "func"

    wrapped = linear_backoff_retry(
        max_attempts=3, delay=1.0, exceptions=(TransientNetworkError,), sleep=sleeps.append
    )(func)

    with pytest.raises(TransientNetworkError):
        wrapped()

    assert func.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_unlisted_exceptions_are_not_retried():
    sleeps: list[float] = []
    func = Mock(side_effect=SourceError("unauthorized"))
    func.__name__ = "func"

    wrapped = linear_backoff_retry(
        max_attempts=3, exceptions=(TransientNetworkError,), sleep=sleeps.append
    )(func)

    with pytest.raises(SourceError):
        wrapped()

    assert func.call_count == 1
    assert sleeps == []
