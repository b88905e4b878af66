"""Publication policy: which source records belong on the website."""

from datetime import datetime
from typing import Callable

from jobsync.models.records import SourceRecord
from jobsync.utils.timestamps import ensure_utc, utc_now

ONLINE_STATUS = "Online"


def should_publish(record: SourceRecord, now: datetime | None = None) -> bool:
    """
    Decide whether a source record should be visible in the target.

    A record is publishable when its status is Online, it is flagged to show
    on the website, and its publication window has not ended. An end date
    equal to ``now`` still counts as open.

    Args:
        record: Source record to evaluate
        now: Reference time (defaults to the current UTC time)

    Returns:
        True if the record should be published
    """
    if record.status != ONLINE_STATUS:
        return False
    if not record.visible_on_site:
        return False
    if record.effective_to is None:
        return True
    reference = ensure_utc(now) if now is not None else utc_now()
    return record.effective_to >= reference


def unpublish_reason(record: SourceRecord, now: datetime | None = None) -> str | None:
    """Human-readable reason a record fails the policy, or None if it passes."""
    if record.status != ONLINE_STATUS:
        return f'Status is "{record.status}" instead of "{ONLINE_STATUS}"'
    if not record.visible_on_site:
        return "Show on website is disabled"
    if not should_publish(record, now):
        return f"End date ({record.effective_to.isoformat()}) expired"
    return None


class PublicationPolicy:
    """Publication predicate bound to a clock."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def should_publish(self, record: SourceRecord) -> bool:
        return should_publish(record, self._clock())

    def unpublish_reason(self, record: SourceRecord) -> str | None:
        return unpublish_reason(record, self._clock())

    def publishable_ids(self, records: list[SourceRecord]) -> set[str]:
        """Ids of the records that pass the policy, evaluated at one instant."""
        now = self._clock()
        return {record.id for record in records if should_publish(record, now)}
