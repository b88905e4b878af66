"""Reconciliation of the target collection against the source of truth."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog

from jobsync.clients.base import SourceClient, TargetClient
from jobsync.errors import (
    NotFoundError,
    PersistenceError,
    SourceError,
    SyncCancelledError,
    SyncInProgressError,
    TargetError,
    TargetValidationError,
)
from jobsync.models.config import SyncConfig
from jobsync.models.records import SourceRecord, SyncState, TargetRecord
from jobsync.sync.change_detector import ChangeDetector
from jobsync.sync.models import (
    ChangeSet,
    ItemOutcome,
    SyncEvent,
    SyncKind,
    SyncObserver,
    SyncPhase,
    SyncResult,
)
from jobsync.sync.policy import PublicationPolicy
from jobsync.sync.publish_throttle import PublishThrottle
from jobsync.sync.state_store import StateStore
from jobsync.sync.transformer import RecordTransformer
from jobsync.utils.timestamps import utc_now

log = structlog.stdlib.get_logger()


@dataclass(frozen=True)
class ReconcilerConfig:
    """Tuning knobs of the reconciler."""

    concurrency: int = 5
    incremental_fallback_lookback: timedelta | None = timedelta(hours=24)
    incremental_unpublish_scan: bool = False

    @classmethod
    def from_sync_config(cls, config: SyncConfig) -> "ReconcilerConfig":
        hours = config.incremental_fallback_lookback_hours
        return cls(
            concurrency=config.concurrency,
            incremental_fallback_lookback=timedelta(hours=hours) if hours else None,
            incremental_unpublish_scan=config.incremental_unpublish_scan,
        )


class Reconciler:
    """
    Drives the target collection towards the publishable source records.

    A run fetches the source, filters it through the publication policy,
    compares it with a snapshot of the target, creates, updates and archives
    items, requests a site publish and commits the sync state. Only one run
    executes at a time.
    """

    def __init__(
        self,
        source_client: SourceClient,
        target_client: TargetClient,
        state_store: StateStore,
        change_detector: ChangeDetector | None = None,
        publish_throttle: PublishThrottle | None = None,
        transformer: RecordTransformer | None = None,
        policy: PublicationPolicy | None = None,
        config: ReconcilerConfig | None = None,
        observer: SyncObserver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the reconciler.

        Args:
            source_client: Client for the source of truth
            target_client: Client for the mirrored target collection
            state_store: Durable sync state
            change_detector: Change detector (built from source_client if None)
            publish_throttle: Publish throttle (no publishing if None)
            transformer: Source to target mapping (plain mapping if None)
            policy: Publication policy (bound to ``clock`` if None)
            config: Reconciler settings
            observer: Callable notified of every phase transition
            clock: Source of the current UTC time
        """
        self.source_client = source_client
        self.target_client = target_client
        self.state_store = state_store
        self.change_detector = change_detector or ChangeDetector(source_client)
        self.publish_throttle = publish_throttle
        self.transformer = transformer or RecordTransformer(target_client)
        self.policy = policy or PublicationPolicy(clock)
        self.config = config or ReconcilerConfig()
        self.observer = observer
        self._clock = clock
        self._run_lock = threading.Lock()

        log.info(
            "reconciler_initialized",
            concurrency=self.config.concurrency,
            incremental_unpublish_scan=self.config.incremental_unpublish_scan,
        )

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_full(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """
        Reconcile the whole collection.

        Raises:
            SyncInProgressError: If another run is executing
            SyncCancelledError: If ``cancel_event`` is set during the run
            SourceError: If the source cannot be read
            TargetError: If the target snapshot cannot be read
        """
        return self._guarded_run(SyncKind.FULL, cancel_event)

    def run_incremental(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """
        Propagate records changed since the last successful run.

        Raises the same errors as ``run_full``.
        """
        return self._guarded_run(SyncKind.INCREMENTAL, cancel_event)

    def get_state(self) -> SyncState:
        """
        Return a copy of the sync state.

        The persisted state is reloaded only when no run is executing; during
        a run the in-memory state of that run is returned.
        """
        if not self._run_lock.acquire(blocking=False):
            return self.state_store.state.model_copy(deep=True)
        try:
            self.state_store.load()
            return self.state_store.state.model_copy(deep=True)
        finally:
            self._run_lock.release()

    def reset_state(self) -> SyncState:
        """Discard the sync state. The next incremental run falls back to a lookback."""
        if not self._run_lock.acquire(blocking=False):
            raise SyncInProgressError("Cannot reset state while a sync is running")
        try:
            return self.state_store.reset()
        finally:
            self._run_lock.release()

    def _guarded_run(self, kind: SyncKind, cancel_event: threading.Event | None) -> SyncResult:
        if not self._run_lock.acquire(blocking=False):
            log.warning("sync_already_running", kind=kind.value)
            raise SyncInProgressError(f"A sync is already running; {kind.value} run refused")
        try:
            return self._run(kind, cancel_event or threading.Event())
        finally:
            self._run_lock.release()

    def _run(self, kind: SyncKind, cancel_event: threading.Event) -> SyncResult:
        sync_id = f"sync-{uuid.uuid4().hex[:12]}"
        started_at = self._clock()
        result = SyncResult(type=kind, sync_id=sync_id, started_at=started_at)

        with structlog.contextvars.bound_contextvars(sync_id=sync_id, sync_kind=kind.value):
            log.info("sync_started", started_at=started_at.isoformat())
            self.state_store.load()

            try:
                if kind == SyncKind.FULL:
                    self._run_full(result, cancel_event)
                else:
                    self._run_incremental(result, cancel_event)
            except Exception as e:
                self.state_store.record_error(e)
                self._commit(result)
                result.finished_at = self._clock()
                self._emit(result, SyncPhase.FAILED, error=str(e), error_type=type(e).__name__)
                log.error(
                    "sync_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    successful=result.successful,
                    failed=result.failed,
                )
                raise

            self._emit(result, SyncPhase.COMMIT_STATE)
            self.state_store.record_success(kind, at=started_at)
            self._commit(result)

            result.finished_at = self._clock()
            self._emit(
                result,
                SyncPhase.COMPLETED,
                successful=result.successful,
                failed=result.failed,
                archived=result.archived,
            )
            log.info(
                "sync_completed",
                successful=result.successful,
                failed=result.failed,
                archived=result.archived,
                archive_failed=result.archive_failed,
                skipped=result.skipped,
                not_found=result.not_found,
                no_changes=result.no_changes,
                duration_seconds=(result.finished_at - started_at).total_seconds(),
            )
            return result

    def _run_full(self, result: SyncResult, cancel_event: threading.Event) -> None:
        self._emit(result, SyncPhase.FETCH_SOURCE)
        source_records = self._fetch_source_all()
        self._check_cancelled(cancel_event)

        self._emit(result, SyncPhase.FILTER_BY_POLICY, fetched=len(source_records))
        publishable_ids = self.policy.publishable_ids(source_records)
        publishable = [r for r in source_records if r.id in publishable_ids]
        log.info(
            "publication_filter_applied",
            fetched=len(source_records),
            publishable=len(publishable),
        )

        self._emit(result, SyncPhase.FETCH_TARGET_SNAPSHOT)
        targets = self._fetch_target_snapshot()
        self._check_cancelled(cancel_event)

        self._emit(result, SyncPhase.MATCH, targets=len(targets))
        by_source_id = self._index_targets(targets)
        upserts = self._plan_upserts(publishable, by_source_id, result, check_dates=True)
        to_archive = self._archive_candidates(publishable_ids, targets)
        changes = ChangeSet(to_upsert=[r for r, _ in upserts], to_archive=to_archive)
        log.info(
            "changes_planned",
            to_upsert=len(changes.to_upsert),
            to_archive=len(changes.to_archive),
            skipped=result.skipped,
        )

        self._emit(result, SyncPhase.UPSERT, count=len(upserts))
        self._apply_upserts(upserts, result, cancel_event)

        self._emit(result, SyncPhase.ARCHIVE_PASS, count=len(to_archive))
        self._apply_archives(to_archive, source_records, result, cancel_event)

        self._emit(result, SyncPhase.PUBLISH)
        self._request_publish(result)

    def _run_incremental(self, result: SyncResult, cancel_event: threading.Event) -> None:
        baseline = self._incremental_baseline()

        self._emit(
            result,
            SyncPhase.FETCH_SOURCE,
            baseline=baseline.isoformat() if baseline else None,
        )
        detection = self.change_detector.get_changed(baseline)
        result.discrepancy = detection.discrepancy
        self._check_cancelled(cancel_event)

        self._emit(result, SyncPhase.FILTER_BY_POLICY, changed=len(detection.records))
        changed = []
        for record in detection.records:
            if self.state_store.needs_update(record.id, record.modification_timestamp):
                changed.append(record)
            else:
                result.skipped += 1

        if not changed and not self.config.incremental_unpublish_scan:
            result.no_changes = True
            log.info(
                "incremental_no_changes",
                detected=len(detection.records),
                skipped=result.skipped,
            )
            return

        publishable_ids = self.policy.publishable_ids(changed)
        publishable = [r for r in changed if r.id in publishable_ids]
        log.info(
            "publication_filter_applied",
            changed=len(changed),
            publishable=len(publishable),
        )

        self._emit(result, SyncPhase.FETCH_TARGET_SNAPSHOT)
        targets = self._fetch_target_snapshot()
        self._check_cancelled(cancel_event)

        self._emit(result, SyncPhase.MATCH, targets=len(targets))
        by_source_id = self._index_targets(targets)
        upserts = self._plan_upserts(publishable, by_source_id, result, check_dates=False)

        self._emit(result, SyncPhase.UPSERT, count=len(upserts))
        self._apply_upserts(upserts, result, cancel_event)

        if self.config.incremental_unpublish_scan:
            self._emit(result, SyncPhase.ARCHIVE_PASS)
            self._unpublish_scan(targets, result, cancel_event)

        if not changed and result.archived == 0:
            result.no_changes = True

        self._emit(result, SyncPhase.PUBLISH)
        self._request_publish(result)

    def _unpublish_scan(
        self, targets: list[TargetRecord], result: SyncResult, cancel_event: threading.Event
    ) -> None:
        source_records = self._fetch_source_all()
        publishable_ids = self.policy.publishable_ids(source_records)
        to_archive = self._archive_candidates(publishable_ids, targets)
        log.info("unpublish_scan_planned", to_archive=len(to_archive))
        self._apply_archives(to_archive, source_records, result, cancel_event)

    def _incremental_baseline(self) -> datetime | None:
        baseline = self.state_store.state.last_sync
        if baseline is not None:
            return baseline

        lookback = self.config.incremental_fallback_lookback
        if lookback is None:
            log.info("no_sync_baseline_full_scan")
            return None

        fallback = self._clock() - lookback
        log.info(
            "no_sync_baseline_using_lookback",
            lookback_hours=lookback.total_seconds() / 3600,
            baseline=fallback.isoformat(),
        )
        return fallback

    def _fetch_source_all(self) -> list[SourceRecord]:
        try:
            return self.source_client.fetch_all()
        except SourceError:
            raise
        except Exception as e:
            raise SourceError(f"Failed to fetch source records: {e}") from e

    def _fetch_target_snapshot(self) -> list[TargetRecord]:
        try:
            targets = self.target_client.fetch_all_mirrored()
        except TargetError:
            raise
        except Exception as e:
            raise TargetError(f"Failed to fetch target snapshot: {e}") from e
        log.info(
            "target_snapshot_fetched",
            total=len(targets),
            archived=sum(1 for t in targets if t.archived),
            drafts=sum(1 for t in targets if t.draft),
        )
        return targets

    def _index_targets(self, targets: list[TargetRecord]) -> dict[str, TargetRecord]:
        """Map source ids to target items, preferring live items over archived ones."""
        index: dict[str, TargetRecord] = {}
        for target in targets:
            if not target.source_id:
                continue
            existing = index.get(target.source_id)
            if existing is None:
                index[target.source_id] = target
                continue
            log.warning(
                "duplicate_target_items",
                source_id=target.source_id,
                target_ids=[existing.id, target.id],
            )
            if existing.archived and not target.archived:
                index[target.source_id] = target
        return index

    def _plan_upserts(
        self,
        records: list[SourceRecord],
        by_source_id: dict[str, TargetRecord],
        result: SyncResult,
        check_dates: bool,
    ) -> list[tuple[SourceRecord, TargetRecord | None]]:
        upserts: list[tuple[SourceRecord, TargetRecord | None]] = []
        for record in records:
            target = by_source_id.get(record.id)
            if target is None or target.archived:
                upserts.append((record, target))
            elif not check_dates or self.state_store.needs_update(
                record.id, record.modification_timestamp
            ):
                upserts.append((record, target))
            else:
                result.skipped += 1
        return upserts

    def _archive_candidates(
        self, publishable_ids: set[str], targets: list[TargetRecord]
    ) -> list[TargetRecord]:
        """Live target items whose source record is gone or fails the policy."""
        candidates = []
        for target in targets:
            if target.archived or not target.source_id:
                continue
            if target.source_id not in publishable_ids:
                candidates.append(target)
        log.debug("archive_candidates_found", count=len(candidates))
        return candidates

    def _apply_upserts(
        self,
        upserts: list[tuple[SourceRecord, TargetRecord | None]],
        result: SyncResult,
        cancel_event: threading.Event,
    ) -> None:
        if not upserts:
            return

        outcomes: list[ItemOutcome] = []
        cancelled = False
        with ThreadPoolExecutor(
            max_workers=self.config.concurrency, thread_name_prefix="upsert"
        ) as pool:
            futures = []
            for record, target in upserts:
                if cancel_event.is_set():
                    cancelled = True
                    break
                futures.append(
                    pool.submit(self._upsert_one, record, target, cancel_event, result.sync_id)
                )
            for future in futures:
                outcomes.append(future.result())

        succeeded: dict[str, str] = {}
        for outcome in outcomes:
            if outcome.success:
                result.successful += 1
                if outcome.modified:
                    succeeded[outcome.source_id] = outcome.modified
            elif outcome.not_found:
                result.not_found += 1
                result.skipped += 1
            elif outcome.cancelled:
                cancelled = True
            else:
                result.failed += 1
                result.errors.append(f"{outcome.source_id}: {outcome.error}")

        self.state_store.record_modification_dates(succeeded)

        log.info(
            "upserts_settled",
            successful=result.successful,
            failed=result.failed,
            not_found=result.not_found,
        )

        if cancelled:
            raise SyncCancelledError("Sync cancelled during upsert phase")

    def _upsert_one(
        self,
        record: SourceRecord,
        target: TargetRecord | None,
        cancel_event: threading.Event,
        sync_id: str,
    ) -> ItemOutcome:
        if cancel_event.is_set():
            return ItemOutcome(source_id=record.id, success=False, cancelled=True)

        # Worker threads do not inherit the caller's context variables.
        with structlog.contextvars.bound_contextvars(sync_id=sync_id, source_id=record.id):
            return self._upsert_item(record, target)

    def _upsert_item(self, record: SourceRecord, target: TargetRecord | None) -> ItemOutcome:
        try:
            payload = self.transformer.transform(record)
            upserted = self.target_client.upsert(
                record.id, payload, target.id if target else None
            )
        except NotFoundError as e:
            log.warning("target_item_vanished", target_id=target.id if target else None)
            return ItemOutcome(
                source_id=record.id, success=False, not_found=True, error=str(e)
            )
        except TargetValidationError as e:
            log.error("upsert_rejected", error=str(e), detail=e.detail)
            detail = f"{e} ({e.detail})" if e.detail else str(e)
            return ItemOutcome(source_id=record.id, success=False, error=detail)
        except Exception as e:
            log.error("upsert_failed", error=str(e), error_type=type(e).__name__)
            return ItemOutcome(source_id=record.id, success=False, error=str(e))

        log.info(
            "item_upserted",
            action=upserted.action,
            target_id=upserted.id,
            reactivated=bool(target and target.archived),
        )
        return ItemOutcome(
            source_id=record.id,
            success=True,
            action=upserted.action,
            target_id=upserted.id,
            modified=record.modification_timestamp,
        )

    def _apply_archives(
        self,
        to_archive: list[TargetRecord],
        source_records: list[SourceRecord],
        result: SyncResult,
        cancel_event: threading.Event,
    ) -> None:
        by_id = {r.id: r for r in source_records}
        for target in to_archive:
            self._check_cancelled(cancel_event)

            source = by_id.get(target.source_id) if target.source_id else None
            reason = (
                self.policy.unpublish_reason(source) if source else "Removed from source"
            )
            try:
                self.target_client.archive(target.id)
            except NotFoundError:
                log.info("archive_target_missing", target_id=target.id)
                result.not_found += 1
                continue
            except Exception as e:
                result.archive_failed += 1
                result.errors.append(f"archive {target.id}: {e}")
                log.error(
                    "archive_failed",
                    target_id=target.id,
                    source_id=target.source_id,
                    error=str(e),
                )
                continue

            result.archived += 1
            log.info(
                "item_archived",
                target_id=target.id,
                source_id=target.source_id,
                reason=reason,
            )

    def _request_publish(self, result: SyncResult) -> None:
        if self.publish_throttle is None:
            return
        if result.successful == 0 and result.archived == 0:
            log.debug("publish_not_needed")
            return

        reason = (
            f"{result.type.value} sync {result.sync_id}: "
            f"{result.successful} upserted, {result.archived} archived"
        )
        try:
            future = self.publish_throttle.publish_if_enabled(reason)
        except Exception as e:
            log.error("publish_request_failed", error=str(e), error_type=type(e).__name__)
            return
        result.publish_requested = future is not None

    def _commit(self, result: SyncResult) -> None:
        try:
            self.state_store.save()
        except PersistenceError as e:
            log.error("sync_state_commit_failed", error=str(e))
            result.errors.append(f"state: {e}")

    def _check_cancelled(self, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            log.warning("sync_cancel_requested")
            raise SyncCancelledError("Sync cancelled by operator")

    def _emit(self, result: SyncResult, phase: SyncPhase, **detail) -> None:
        log.debug("sync_phase", phase=phase.value, **detail)
        if self.observer is None:
            return
        try:
            self.observer(
                SyncEvent(sync_id=result.sync_id, kind=result.type, phase=phase, detail=detail)
            )
        except Exception as e:
            log.warning("sync_observer_failed", phase=phase.value, error=str(e))
