"""Change detection for identifying source records modified since a baseline."""

from datetime import datetime, timedelta

import structlog

from jobsync.clients.base import SourceClient
from jobsync.errors import SourceError
from jobsync.models.records import SourceRecord
from jobsync.sync.models import ChangeDetectionResult
from jobsync.utils.timestamps import ensure_utc, parse_timestamp

log = structlog.stdlib.get_logger()


class ChangeDetector:
    """
    Finds source records changed since a baseline.

    The source's server-side filter is not trusted: its results are
    re-validated, and an empty answer is double-checked with a client-side
    pass over the full collection.
    """

    def __init__(self, source_client: SourceClient, precision_buffer_seconds: float = 1.0):
        """
        Initialize the change detector.

        Args:
            source_client: Client for the source system
            precision_buffer_seconds: Tolerance applied to client-side comparisons
        """
        self.source_client = source_client
        self.precision_buffer = timedelta(seconds=precision_buffer_seconds)

    def get_changed(self, since: datetime | None) -> ChangeDetectionResult:
        """
        Return records modified after ``since``.

        Records without any recognized modification timestamp are always
        included. ``since=None`` returns the whole collection.

        Args:
            since: Baseline instant, or None for a full scan

        Returns:
            ChangeDetectionResult with the changed records

        Raises:
            SourceError: If the source cannot be queried
        """
        if since is None:
            log.info("change_detection_full_scan")
            records = self._fetch_all()
            return ChangeDetectionResult(
                records=records, no_changes=not records, source="full_scan"
            )

        since = ensure_utc(since)
        log.info("detecting_changes", since=since.isoformat())

        try:
            server_records = self.source_client.fetch_changed_since(since)
        except SourceError:
            raise
        except Exception as e:
            log.error("server_change_query_failed", error=str(e), error_type=type(e).__name__)
            raise SourceError(f"Server-side change query failed: {e}") from e

        # Guards against servers that ignore the filter and return everything.
        validated = [r for r in server_records if self._changed_after(r, since, buffer=False)]

        log.info(
            "server_changes_validated",
            returned=len(server_records),
            validated=len(validated),
        )

        if validated:
            return ChangeDetectionResult(records=validated, source="server")

        client_records = [
            r for r in self._fetch_all() if self._changed_after(r, since, buffer=True)
        ]

        if client_records:
            log.warning(
                "change_detection_discrepancy",
                since=since.isoformat(),
                server_count=len(validated),
                client_count=len(client_records),
                sample_ids=[r.id for r in client_records[:5]],
                modification_fields=sorted(
                    {r.modification_field for r in client_records if r.modification_field}
                ),
            )
            return ChangeDetectionResult(
                records=client_records, discrepancy=True, source="client"
            )

        log.info("no_changes_detected", since=since.isoformat())
        return ChangeDetectionResult(records=[], no_changes=True, source="client")

    def _fetch_all(self) -> list[SourceRecord]:
        try:
            return self.source_client.fetch_all()
        except SourceError:
            raise
        except Exception as e:
            log.error("source_fetch_failed", error=str(e), error_type=type(e).__name__)
            raise SourceError(f"Failed to fetch source records: {e}") from e

    def _changed_after(self, record: SourceRecord, since: datetime, buffer: bool) -> bool:
        raw = record.modification_timestamp
        if raw is None:
            log.debug("record_without_modification_date", source_id=record.id)
            return True

        modified = parse_timestamp(raw)
        if modified is None:
            return True

        threshold = since - self.precision_buffer if buffer else since
        return modified > threshold
