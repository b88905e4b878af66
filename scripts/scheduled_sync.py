#!/usr/bin/env python3
"""
Scheduled synchronization script for the job sync service.

Mirrors CRM job vacancies into the website CMS:
- Creates and updates items for publishable vacancies
- Archives items whose vacancy was removed or no longer qualifies
- Requests a site publish when anything changed (if auto-publish is on)

Designed to be run on a schedule (e.g., via cron or a container scheduler),
typically an incremental run every few minutes and a full run nightly.

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--full-sync] [--reset-state]
"""

import argparse
import sys
from datetime import datetime

import structlog

from jobsync.clients import MysolutionClient, WebflowClient
from jobsync.models.config import AppConfig
from jobsync.sync import (
    ChangeDetector,
    FileStateStore,
    InMemoryStateStore,
    InternalSectorHook,
    PublishThrottle,
    RateLimitedGateway,
    Reconciler,
    ReconcilerConfig,
    RecordTransformer,
    SyncEvent,
)
from jobsync.sync.state_store import StateStore
from jobsync.utils.config_loader import ConfigLoader
from jobsync.utils.logging_config import configure_logging_from_config

log = structlog.stdlib.get_logger()


def build_reconciler(config: AppConfig) -> Reconciler:
    """Wire clients, gateway, state store and throttle from configuration."""
    source_client = MysolutionClient.from_config(config.source)

    gateway = RateLimitedGateway(capacity=config.target.rate_limit_per_minute)
    target_client = WebflowClient.from_config(config.target, gateway=gateway)

    state_store: StateStore
    if config.sync.state_backend == "memory":
        state_store = InMemoryStateStore()
    else:
        state_store = FileStateStore(config.sync.state_file)

    hooks = []
    if config.sync.internal_sector_id:
        hooks.append(InternalSectorHook(config.sync.internal_sector_id))

    publish_throttle = PublishThrottle(
        target_client,
        enabled=config.publish.auto_publish,
        min_interval_seconds=config.publish.min_interval_seconds,
    )

    return Reconciler(
        source_client=source_client,
        target_client=target_client,
        state_store=state_store,
        change_detector=ChangeDetector(
            source_client, precision_buffer_seconds=config.sync.precision_buffer_seconds
        ),
        publish_throttle=publish_throttle,
        transformer=RecordTransformer(target_client, hooks=hooks),
        config=ReconcilerConfig.from_sync_config(config.sync),
        observer=log_phase,
    )


def log_phase(event: SyncEvent) -> None:
    log.info("sync_phase_entered", phase=event.phase.value, **event.detail)


def perform_sync(
    config_path: str | None = None, full_sync: bool = False, reset_state: bool = False
) -> dict:
    """
    Perform one synchronization run.

    Args:
        config_path: Optional path to configuration file
        full_sync: If True, perform full sync instead of incremental
        reset_state: If True, discard the sync state before running

    Returns:
        Dictionary with sync statistics
    """
    start_time = datetime.now()
    sync_type = "full" if full_sync else "incremental"

    try:
        config = ConfigLoader().load_config(config_path)
        configure_logging_from_config(config.logging)

        log.info("starting_synchronization", sync_type=sync_type)

        reconciler = build_reconciler(config)
        if reset_state:
            reconciler.reset_state()

        if full_sync:
            result = reconciler.run_full()
        else:
            result = reconciler.run_incremental()

        end_time = datetime.now()
        stats = {
            "success": result.success,
            "sync_type": sync_type,
            "sync_id": result.sync_id,
            "successful": result.successful,
            "failed": result.failed,
            "archived": result.archived,
            "archive_failed": result.archive_failed,
            "skipped": result.skipped,
            "not_found": result.not_found,
            "no_changes": result.no_changes,
            "discrepancy": result.discrepancy,
            "publish_requested": result.publish_requested,
            "errors": result.errors,
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - start_time).total_seconds(),
        }

        log.info("synchronization_finished", **stats)
        return stats

    except Exception as e:
        end_time = datetime.now()
        duration = (end_time - start_time).total_seconds()

        log.error(
            "synchronization_failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_seconds=duration,
        )

        return {
            "success": False,
            "sync_type": sync_type,
            "error": str(e),
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": duration,
        }


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Scheduled job synchronization")
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--full-sync",
        action="store_true",
        help="Perform full sync instead of incremental",
    )
    parser.add_argument(
        "--reset-state",
        action="store_true",
        help="Discard stored sync state before running",
    )

    args = parser.parse_args()

    stats = perform_sync(
        config_path=args.config, full_sync=args.full_sync, reset_state=args.reset_state
    )

    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)

    if "error" not in stats:
        print(f"Status: {'✓ SUCCESS' if stats['success'] else '⚠ COMPLETED WITH FAILURES'}")
        print(f"Sync Type: {stats['sync_type']}")
        if stats["no_changes"]:
            print("No changes since the last sync")
        print(f"Upserted: {stats['successful']}")
        print(f"Failed: {stats['failed']}")
        print(f"Archived: {stats['archived']}")
        print(f"Archive Failures: {stats['archive_failed']}")
        print(f"Skipped: {stats['skipped']}")
        print(f"Duration: {stats['duration_seconds']:.2f} seconds")
    else:
        print("Status: ✗ FAILED")
        print(f"Error: {stats['error']}")
        print(f"Duration: {stats['duration_seconds']:.2f} seconds")

    print("=" * 60)

    sys.exit(0 if stats.get("success") else 1)


if __name__ == "__main__":
    main()
