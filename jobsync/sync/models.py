"""Data models for synchronization runs."""

from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from jobsync.models.records import SourceRecord, TargetRecord


class SyncKind(str, Enum):
    """Kind of reconciliation run."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncPhase(str, Enum):
    """Phases of a reconciliation run, in execution order."""

    FETCH_SOURCE = "fetch_source"
    FILTER_BY_POLICY = "filter_by_policy"
    FETCH_TARGET_SNAPSHOT = "fetch_target_snapshot"
    MATCH = "match"
    UPSERT = "upsert"
    ARCHIVE_PASS = "archive_pass"
    PUBLISH = "publish"
    COMMIT_STATE = "commit_state"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeSet(BaseModel):
    """Actions computed for one run. Never persisted."""

    to_upsert: list[SourceRecord] = Field(
        default_factory=list, description="Source records to create or update"
    )
    to_archive: list[TargetRecord] = Field(
        default_factory=list, description="Target records to soft-delete"
    )


class ChangeDetectionResult(BaseModel):
    """Records changed since a baseline, as seen by the change detector."""

    records: list[SourceRecord] = Field(default_factory=list)
    no_changes: bool = Field(
        default=False, description="True only when both detection passes found nothing"
    )
    discrepancy: bool = Field(
        default=False,
        description="Client-side filtering found records the server filter missed",
    )
    source: str = Field(default="server", description="Which pass produced the records")


class ItemOutcome(BaseModel):
    """Settled outcome of one dispatched item."""

    source_id: str
    success: bool
    action: str | None = None
    target_id: str | None = None
    modified: str | None = Field(
        default=None, description="Modification timestamp to record on success"
    )
    not_found: bool = False
    cancelled: bool = Field(default=False, description="Never dispatched because the run was cancelled")
    error: str | None = None


class SyncResult(BaseModel):
    """Report of a reconciliation run."""

    type: SyncKind
    sync_id: str
    successful: int = Field(default=0, ge=0, description="Upserts confirmed by the target")
    failed: int = Field(default=0, ge=0, description="Upserts that settled as failures")
    archived: int = Field(default=0, ge=0)
    archive_failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0, description="Records left untouched this run")
    not_found: int = Field(default=0, ge=0, description="Targets that vanished mid-run")
    no_changes: bool = False
    discrepancy: bool = False
    publish_requested: bool = False
    started_at: datetime
    finished_at: datetime | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        """Check if every attempted item succeeded."""
        return self.failed == 0 and self.archive_failed == 0


class SyncEvent(BaseModel):
    """Progress notification emitted by the reconciler."""

    sync_id: str
    kind: SyncKind
    phase: SyncPhase
    detail: dict[str, Any] = Field(default_factory=dict)


SyncObserver = Callable[[SyncEvent], None]
