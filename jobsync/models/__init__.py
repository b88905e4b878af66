"""Data models for the job sync service."""

from jobsync.models.config import (
    AppConfig,
    LoggingConfig,
    PublishConfig,
    SourceConfig,
    SyncConfig,
    TargetConfig,
)
from jobsync.models.records import (
    MODIFICATION_FIELDS,
    SOURCE_ID_FIELD,
    LastError,
    PublishResult,
    SourceRecord,
    SyncState,
    TargetRecord,
    UpsertResult,
    best_modification_field,
)

__all__ = [
    "AppConfig",
    "LoggingConfig",
    "PublishConfig",
    "SourceConfig",
    "SyncConfig",
    "TargetConfig",
    "MODIFICATION_FIELDS",
    "SOURCE_ID_FIELD",
    "LastError",
    "PublishResult",
    "SourceRecord",
    "SyncState",
    "TargetRecord",
    "UpsertResult",
    "best_modification_field",
]
