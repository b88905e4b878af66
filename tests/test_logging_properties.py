"""Property-based tests for logging functionality.

Log entries must carry a timestamp, a severity level and the event name,
plus any context bound for the current sync run.
"""

import json
from pathlib import Path

import pytest
import structlog
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from jobsync.models.config import LoggingConfig
from jobsync.utils.logging_config import configure_logging, configure_logging_from_config


def _last_json_line(output: str) -> dict:
    lines = [line for line in output.strip().splitlines() if line.startswith("{")]
    assert lines, f"no JSON log lines in output: {output!r}"
    return json.loads(lines[-1])


@given(
    log_level=st.sampled_from(["debug", "info", "warning", "error", "critical"]),
    error_message=st.text(min_size=1, max_size=200),
)
@settings(max_examples=50, suppress_health_check=[HealthCheck.function_scoped_fixture])
def test_property_8_log_format_contains_required_fields(
    capsys: pytest.CaptureFixture, log_level: str, error_message: str
):
    """Property 8: Log format.

    *For any* logged event, the JSON entry contains timestamp, level and
    event fields.
    """
    configure_logging(log_level="DEBUG", json_logs=True)
    capsys.readouterr()

    log = structlog.stdlib.get_logger("test_logger")
    getattr(log, log_level)("upsert_failed", error=error_message)

    entry = _last_json_line(capsys.readouterr().out)

    assert entry["event"] == "upsert_failed"
    assert entry["level"] == log_level
    assert entry["error"] == error_message
    assert "timestamp" in entry


def test_bound_sync_context_is_merged(capsys: pytest.CaptureFixture):
    configure_logging(log_level="INFO", json_logs=True)
    capsys.readouterr()

    log = structlog.stdlib.get_logger("test_logger")
    with structlog.contextvars.bound_contextvars(sync_id="sync-abc"):
        log.info("sync_started")

    entry = _last_json_line(capsys.readouterr().out)

    assert entry["sync_id"] == "sync-abc"


def test_level_filtering(capsys: pytest.CaptureFixture):
    configure_logging(log_level="WARNING", json_logs=True)
    capsys.readouterr()

    log = structlog.stdlib.get_logger("test_logger")
    log.info("quiet_event")
    log.warning("loud_event")

    output = capsys.readouterr().out
    assert "quiet_event" not in output
    assert "loud_event" in output


def test_log_file_is_written(tmp_path: Path, capsys: pytest.CaptureFixture):
    log_file = tmp_path / "logs" / "sync.log"
    configure_logging_from_config(
        LoggingConfig(log_level="INFO", json_logs=True, log_file=str(log_file))
    )

    structlog.stdlib.get_logger("test_logger").info("written_to_file")

    assert "written_to_file" in log_file.read_text(encoding="utf-8")
