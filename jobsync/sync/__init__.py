"""Synchronization components for reconciling the target with the source."""

from jobsync.sync.change_detector import ChangeDetector
from jobsync.sync.gateway import GatewayResponse, RateBudget, RateLimitedGateway
from jobsync.sync.hooks import InternalSectorHook, PostTransformHook
from jobsync.sync.models import ChangeSet, SyncEvent, SyncKind, SyncPhase, SyncResult
from jobsync.sync.policy import PublicationPolicy, should_publish
from jobsync.sync.publish_throttle import PublishState, PublishThrottle
from jobsync.sync.reconciler import Reconciler, ReconcilerConfig
from jobsync.sync.state_store import FileStateStore, InMemoryStateStore, StateStore
from jobsync.sync.transformer import RecordTransformer

__all__ = [
    "ChangeDetector",
    "ChangeSet",
    "FileStateStore",
    "GatewayResponse",
    "InMemoryStateStore",
    "InternalSectorHook",
    "PostTransformHook",
    "PublicationPolicy",
    "PublishState",
    "PublishThrottle",
    "RateBudget",
    "RateLimitedGateway",
    "Reconciler",
    "ReconcilerConfig",
    "RecordTransformer",
    "StateStore",
    "SyncEvent",
    "SyncKind",
    "SyncPhase",
    "SyncResult",
    "should_publish",
]
