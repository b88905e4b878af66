"""Post-transform hooks applied to target payloads before upsert."""

from abc import ABC, abstractmethod
from typing import Any

import structlog

from jobsync.models.records import SourceRecord

log = structlog.stdlib.get_logger()

SECTOR_FIELD = "job-companies"


class PostTransformHook(ABC):
    """Adjusts a transformed payload using business rules."""

    @abstractmethod
    def apply(self, record: SourceRecord, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the (possibly modified) payload for ``record``."""


class InternalSectorHook(PostTransformHook):
    """Forces a fixed sector reference onto vacancies flagged as internal."""

    def __init__(self, sector_id: str, field: str = SECTOR_FIELD):
        if not sector_id:
            raise ValueError("sector_id must not be empty")
        self.sector_id = sector_id
        self.field = field

    def apply(self, record: SourceRecord, payload: dict[str, Any]) -> dict[str, Any]:
        if not record.internal:
            return payload

        log.debug("internal_sector_forced", source_id=record.id, sector_id=self.sector_id)
        return {**payload, self.field: self.sector_id}
