"""Durable bookkeeping of sync times and per-entity modification dates."""

import os
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import ValidationError

from jobsync.errors import PersistenceError
from jobsync.models.records import LastError, SyncState
from jobsync.sync.models import SyncKind
from jobsync.utils.timestamps import ensure_utc, parse_timestamp, utc_now

log = structlog.stdlib.get_logger()


class StateStore(ABC):
    """
    Owns the durable SyncState between runs.

    Subclasses only implement raw persistence (``_read``/``_write``); the
    bookkeeping rules live here so every backend behaves the same way.
    """

    def __init__(self) -> None:
        self._state: SyncState = SyncState()
        self._lock = threading.RLock()

    @abstractmethod
    def _read(self) -> str | None:
        """Return the persisted payload, or None if nothing was persisted.

        Raises UnicodeDecodeError when the payload is not valid text; ``load``
        quarantines it like any other corrupt payload.
        """

    @abstractmethod
    def _write(self, payload: str) -> None:
        """Atomically replace the persisted payload."""

    def _quarantine(self, payload: str | None) -> None:
        """Move an unparseable payload aside. Backends override when they can."""
        log.warning("sync_state_quarantine_not_supported", payload_size=len(payload or ""))

    @property
    def state(self) -> SyncState:
        """The in-memory state for the current run."""
        return self._state

    def load(self) -> SyncState:
        """
        Load the persisted state into memory.

        Returns:
            Persisted state, or a default state if nothing was persisted, the
            payload is corrupt (it is quarantined first) or it cannot be read
        """
        with self._lock:
            try:
                payload = self._read()
            except PersistenceError as e:
                log.error("sync_state_read_failed", error=str(e))
                self._state = SyncState()
                return self._state
            except UnicodeDecodeError as e:
                log.error("sync_state_corrupted", error=str(e))
                self._quarantine(None)
                self._state = SyncState()
                return self._state

            if payload is None:
                log.info("no_sync_state_found")
                self._state = SyncState()
                return self._state

            try:
                self._state = SyncState.model_validate_json(payload)
            except ValidationError as e:
                log.error("sync_state_corrupted", error=str(e))
                self._quarantine(payload)
                self._state = SyncState()
                return self._state

            log.info(
                "sync_state_loaded",
                last_full_sync=self._state.last_full_sync,
                last_incremental_sync=self._state.last_incremental_sync,
                entity_count=len(self._state.entity_modification_dates),
            )
            return self._state

    def save(self, state: SyncState | None = None) -> None:
        """
        Persist state, merging with what is already stored.

        Modification dates recorded by earlier runs and not touched by this
        one are kept; dates in ``state`` win on conflict.

        Raises:
            PersistenceError: If the state cannot be written
        """
        with self._lock:
            if state is not None:
                self._state = state

            merged = dict(self._persisted_dates())
            merged.update(self._state.entity_modification_dates)
            self._state.entity_modification_dates = merged

            self._write(self._state.model_dump_json(by_alias=True, indent=2))
            log.info("sync_state_saved", entity_count=len(merged))

    def _persisted_dates(self) -> dict[str, str]:
        try:
            payload = self._read()
        except PersistenceError as e:
            log.warning("sync_state_merge_read_failed", error=str(e))
            return {}
        except UnicodeDecodeError:
            return {}
        if payload is None:
            return {}
        try:
            return SyncState.model_validate_json(payload).entity_modification_dates
        except ValidationError:
            return {}

    def record_success(self, kind: SyncKind, at: datetime | None = None) -> SyncState:
        """
        Stamp the run time, bump the counter and clear the last error.

        Callers pass the run start as ``at`` so records modified while the run
        was in progress are picked up by the next incremental run.
        """
        with self._lock:
            now = ensure_utc(at) if at is not None else utc_now()
            if kind == SyncKind.FULL:
                self._state.last_full_sync = now
            else:
                self._state.last_incremental_sync = now
            self._state.sync_count += 1
            self._state.last_error = None

            log.info("sync_success_recorded", kind=kind.value, sync_count=self._state.sync_count)
            return self._state

    def record_error(self, error: BaseException) -> SyncState:
        """Record a run-level error. Modification dates are left untouched."""
        with self._lock:
            error_id = f"error-{uuid.uuid4().hex[:12]}"
            self._state.last_error = LastError(
                message=str(error) or type(error).__name__,
                time=utc_now(),
                error_id=error_id,
            )

            log.error(
                "sync_error_recorded",
                error_id=error_id,
                error=str(error),
                error_type=type(error).__name__,
            )
            return self._state

    def needs_update(self, source_id: str, candidate_timestamp: str | None) -> bool:
        """
        Decide whether an entity has to be pushed to the target again.

        Returns:
            True if nothing is stored for the entity, either timestamp fails
            to parse, or the candidate strictly postdates the stored value
        """
        with self._lock:
            stored = self._state.entity_modification_dates.get(source_id)

        if not stored or not candidate_timestamp:
            return True

        stored_dt = parse_timestamp(stored)
        candidate_dt = parse_timestamp(candidate_timestamp)
        if stored_dt is None or candidate_dt is None:
            log.warning(
                "unparseable_modification_date",
                source_id=source_id,
                stored=stored,
                candidate=candidate_timestamp,
            )
            return True

        return candidate_dt > stored_dt

    def record_modification_dates(self, dates: dict[str, str]) -> None:
        """Record modification dates of entities whose upsert was confirmed."""
        if not dates:
            return
        with self._lock:
            self._state.entity_modification_dates.update(
                {source_id: value for source_id, value in dates.items() if source_id and value}
            )
        log.debug("modification_dates_recorded", count=len(dates))

    def modification_dates(self) -> dict[str, str]:
        """Return a copy of the stored modification dates."""
        with self._lock:
            return dict(self._state.entity_modification_dates)

    def reset(self) -> SyncState:
        """Replace the persisted state with defaults."""
        with self._lock:
            self._state = SyncState()
            self._write(self._state.model_dump_json(by_alias=True, indent=2))
            log.warning("sync_state_reset")
            return self._state


class InMemoryStateStore(StateStore):
    """State store for tests and ephemeral deployments.

    Holds the serialized payload, so load/save behave exactly like the
    file-backed store.
    """

    def __init__(self, payload: str | None = None) -> None:
        super().__init__()
        self._payload = payload
        self.quarantined: list[str] = []

    def _read(self) -> str | None:
        return self._payload

    def _write(self, payload: str) -> None:
        self._payload = payload

    def _quarantine(self, payload: str | None) -> None:
        if payload is not None:
            self.quarantined.append(payload)
        self._payload = None


class FileStateStore(StateStore):
    """JSON file state store with atomic replace-on-write."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        log.info("file_state_store_initialized", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> str | None:
        if not self._path.exists():
            return None
        try:
            return self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read sync state {self._path}: {e}") from e

    def _write(self, payload: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Failed to write sync state {self._path}: {e}") from e

    def _quarantine(self, payload: str | None) -> None:
        backup = self._path.with_name(f"{self._path.name}.corrupted.{int(time.time() * 1000)}")
        try:
            os.replace(self._path, backup)
            log.warning("sync_state_quarantined", backup=str(backup))
        except OSError as e:
            log.error("sync_state_quarantine_failed", backup=str(backup), error=str(e))
