"""Interfaces of the source and target systems consumed by the sync engine."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from jobsync.models.records import PublishResult, SourceRecord, TargetRecord, UpsertResult


class SourceClient(ABC):
    """Read access to the source-of-truth record system."""

    @abstractmethod
    def fetch_all(self) -> list[SourceRecord]:
        """Fetch every record in the source collection."""

    @abstractmethod
    def fetch_changed_since(self, since: datetime) -> list[SourceRecord]:
        """
        Ask the source for records changed since ``since``.

        The source may ignore the filter and return everything; callers must
        not assume server-side filtering happened.
        """

    @abstractmethod
    def fetch_by_id(self, record_id: str) -> SourceRecord:
        """Fetch one record. Raises NotFoundError if it does not exist."""


class TargetClient(ABC):
    """Write access to the mirrored target collection."""

    @abstractmethod
    def fetch_all_mirrored(self) -> list[TargetRecord]:
        """Fetch every item of the mirrored collection, archived ones included."""

    @abstractmethod
    def upsert(
        self, source_id: str, payload: dict[str, Any], target_id: str | None = None
    ) -> UpsertResult:
        """
        Create or update the item mirroring ``source_id``.

        When ``target_id`` is given the item is updated (and un-archived),
        otherwise a new item is created.
        """

    @abstractmethod
    def archive(self, target_id: str) -> None:
        """Soft-delete an item. Archived items can be reactivated by an update."""

    @abstractmethod
    def publish(self, reason: str) -> PublishResult:
        """Publish the site so the current collection state goes live."""

    def resolve_reference(self, collection: str, name: str) -> str | None:
        """Resolve a display name to an item id in a lookup collection."""
        return None
