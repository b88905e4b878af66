"""Shared utilities for configuration, logging, retries and timestamps"""

from jobsync.utils.retry import linear_backoff_retry
from jobsync.utils.timestamps import parse_timestamp, utc_now

__all__ = ["linear_backoff_retry", "parse_timestamp", "utc_now"]
