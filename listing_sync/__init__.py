"""Listing reconciliation and owner-enrichment state."""

from listing_sync.enrichment import EnrichmentStateManager
from listing_sync.memory_store import InMemoryListingStore
from listing_sync.reconcile import ReconciliationEngine
from listing_sync.state import (
    AlreadyInProgress,
    EnrichmentStatus,
    OwnerRecord,
    RawListing,
    StoredListing,
    SyncStats,
    Ticket,
)

__all__ = [
    "AlreadyInProgress",
    "EnrichmentStateManager",
    "EnrichmentStatus",
    "InMemoryListingStore",
    "OwnerRecord",
    "RawListing",
    "ReconciliationEngine",
    "StoredListing",
    "SyncStats",
    "Ticket",
]
