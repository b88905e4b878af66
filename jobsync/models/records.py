"""Pydantic models for source records, target records and persisted sync state."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from jobsync.utils.timestamps import ensure_utc, parse_timestamp

# Candidate modification-timestamp fields, in order of preference. The CRM
# schema carries several of these with inconsistent presence.
MODIFICATION_FIELDS: tuple[str, ...] = (
    "LastModifiedDate",
    "SystemModstamp",
    "msf__LastModified__c",
    "LastUpdatedDate",
    "ModifiedDate",
    "modifiedTimestamp",
    "msf__Last_Modified__c",
)

# Field on target items holding the source id
SOURCE_ID_FIELD = "mysolution-id"


def best_modification_field(fields: dict[str, Any]) -> tuple[str, str] | None:
    """
    Pick the most recent modification timestamp among the candidate fields.

    Args:
        fields: Raw source record fields

    Returns:
        (field_name, raw_value) of the latest parseable candidate, or None if
        the record carries none
    """
    best: tuple[str, str] | None = None
    best_dt: datetime | None = None

    for name in MODIFICATION_FIELDS:
        raw = fields.get(name)
        parsed = parse_timestamp(raw)
        if parsed is None:
            continue
        if best_dt is None or parsed > best_dt:
            best = (name, raw if isinstance(raw, str) else parsed.isoformat())
            best_dt = parsed

    return best


class SourceRecord(BaseModel):
    """A job vacancy as held by the source of truth."""

    id: str = Field(default=..., min_length=1, description="Stable source identifier")
    name: str | None = Field(default=None, description="Vacancy title")
    status: str | None = Field(default=None, description="Workflow status, e.g. Online")
    visible_on_site: bool = Field(default=False, description="'Show on website' flag")
    effective_to: datetime | None = Field(
        default=None, description="End of the publication window"
    )
    sector: str | None = Field(default=None, description="Sector name to resolve on the target")
    internal: bool = Field(default=False, description="Vacancy is for internal candidates")
    fields: dict[str, Any] = Field(default_factory=dict, description="All raw source fields")

    @field_validator("effective_to", mode="before")
    @classmethod
    def parse_effective_to(cls, v: Any) -> datetime | None:
        """Accept CRM date strings and normalize to UTC."""
        if v is None or v == "":
            return None
        parsed = parse_timestamp(v)
        if parsed is None:
            raise ValueError(f"Unparseable effective_to value: {v!r}")
        return parsed

    @classmethod
    def from_source(cls, raw: dict[str, Any]) -> "SourceRecord":
        """Build a record from a raw CRM API payload."""
        if not raw.get("Id"):
            raise ValueError("Source record is missing its Id field")

        return cls(
            id=str(raw["Id"]),
            name=raw.get("Name"),
            status=raw.get("msf__Status__c"),
            visible_on_site=bool(raw.get("msf__Show_On_Website__c")),
            effective_to=raw.get("msf__On_Website_To__c"),
            sector=raw.get("BS_Sector__c") or None,
            internal=raw.get("msf__Show_On_Internal__c") is True,
            fields=dict(raw),
        )

    @property
    def modification_field(self) -> str | None:
        """Name of the field the modification timestamp was taken from."""
        best = best_modification_field(self.fields)
        return best[0] if best else None

    @property
    def modification_timestamp(self) -> str | None:
        """Raw value of the most recent modification timestamp, if any."""
        best = best_modification_field(self.fields)
        return best[1] if best else None


class TargetRecord(BaseModel):
    """An item in the target collection mirroring a source record."""

    id: str = Field(default=..., description="Target-assigned identifier")
    source_id: str | None = Field(default=None, description="Back-reference to the source")
    archived: bool = Field(default=False)
    draft: bool = Field(default=False)
    name: str | None = Field(default=None)
    field_data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_target(cls, raw: dict[str, Any]) -> "TargetRecord":
        """Build a record from a raw CMS collection item."""
        field_data = raw.get("fieldData") or {}
        source_id = field_data.get(SOURCE_ID_FIELD)

        return cls(
            id=str(raw["id"]),
            source_id=str(source_id) if source_id else None,
            archived=bool(raw.get("isArchived", False)),
            draft=bool(raw.get("isDraft", False)),
            name=field_data.get("name") or raw.get("name"),
            field_data=field_data,
        )


class UpsertResult(BaseModel):
    """Outcome of a create/update call on the target."""

    id: str
    action: Literal["created", "updated"]


class PublishResult(BaseModel):
    """Outcome of a site publish call."""

    published_at: datetime
    reason: str | None = None


class LastError(BaseModel):
    """Last run-level error recorded in the sync state."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    time: datetime
    error_id: str | None = None


class SyncState(BaseModel):
    """Durable synchronization state.

    Persisted as JSON with camelCase keys. ``entity_modification_dates`` maps
    a source id to the raw modification timestamp of its last confirmed
    upsert.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "lastFullSync": "2024-05-01T02:00:00Z",
                "lastIncrementalSync": "2024-05-01T10:15:00Z",
                "syncCount": 42,
                "lastError": None,
                "entityModificationDates": {"a0X1t000001": "2024-04-30T17:22:05.000+0000"},
            }
        },
    )

    last_full_sync: datetime | None = None
    last_incremental_sync: datetime | None = None
    sync_count: int = Field(default=0, ge=0)
    last_error: LastError | None = None
    entity_modification_dates: dict[str, str] = Field(default_factory=dict)

    @field_validator("last_full_sync", "last_incremental_sync")
    @classmethod
    def normalize_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    @property
    def last_sync(self) -> datetime | None:
        """Most recent successful run of either kind."""
        stamps = [s for s in (self.last_full_sync, self.last_incremental_sync) if s]
        return max(stamps) if stamps else None

