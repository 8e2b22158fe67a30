"""Sync engine services."""

from library_sync.services.alerts import FailureAlerter
from library_sync.services.batch_executor import BatchResult, BatchSyncExecutor
from library_sync.services.catalog_client import (
    CatalogClient,
    CatalogClientError,
    RateLimitedError,
    TransientIOError,
)
from library_sync.services.checkpoints import CheckpointStore
from library_sync.services.entity_store import EntityStore
from library_sync.services.ledger import SyncLedger
from library_sync.services.orchestrator import IncrementalSyncOrchestrator
from library_sync.services.rate_governor import RateGovernor, RateLimitTracker
from library_sync.services.sync_control import SyncController, get_controller

__all__ = [
    "BatchResult",
    "BatchSyncExecutor",
    "CatalogClient",
    "CatalogClientError",
    "CheckpointStore",
    "EntityStore",
    "FailureAlerter",
    "IncrementalSyncOrchestrator",
    "RateGovernor",
    "RateLimitTracker",
    "RateLimitedError",
    "SyncController",
    "SyncLedger",
    "TransientIOError",
    "get_controller",
]
