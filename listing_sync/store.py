"""
Store adapter contract.

The reconciliation engine and the enrichment state manager only talk to the
store through this protocol. Hash-keyed reads are chunked (``chunk_size`` keys
per query) and merged before being returned.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol, Sequence, TypeVar

from listing_sync.config import DEFAULT_CHUNK_SIZE
from listing_sync.state import EnrichmentState, OwnerRecord, StoredListing, SyncStats

T = TypeVar("T")
V = TypeVar("V")


def chunked(values: Sequence[T], size: int = DEFAULT_CHUNK_SIZE) -> Iterator[list[T]]:
    for i in range(0, len(values), size):
        yield list(values[i : i + size])


def unique_keys(keys: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(k for k in keys if k))


def fetch_chunked(
    keys: Iterable[str | None],
    fetch: Callable[[list[str]], Mapping[str, V]],
    *,
    size: int = DEFAULT_CHUNK_SIZE,
    workers: int = 1,
) -> dict[str, V]:
    """Run ``fetch`` per chunk of unique keys and merge the per-chunk maps."""
    chunks = list(chunked(unique_keys(keys), size))
    merged: dict[str, V] = {}
    if workers <= 1 or len(chunks) <= 1:
        for chunk in chunks:
            merged.update(fetch(chunk))
        return merged

    with ThreadPoolExecutor(max_workers=min(workers, len(chunks))) as pool:
        for part in pool.map(fetch, chunks):
            merged.update(part)
    return merged


class ListingStore(Protocol):
    """Persistent store for listings, enrichment state and owner records."""

    chunk_size: int

    def ping(self) -> None: ...

    # Listings
    def get_listings(self, source: str, *, include_inactive: bool = True) -> list[StoredListing]: ...

    def get_all_active_listings(self, source: str) -> list[StoredListing]: ...

    def get_removed_listings(self, source: str) -> list[StoredListing]: ...

    def upsert_listing(self, record: StoredListing) -> StoredListing: ...

    def mark_inactive(self, listing_id: int, removed_at: datetime) -> None: ...

    def active_address_hashes(self, source: str | None = None) -> set[str]: ...

    # Enrichment state
    def get_enrichment_states(self, hashes: Iterable[str]) -> dict[str, EnrichmentState]: ...

    def ensure_enrichment_states(
        self, hashes: Iterable[str], listing_source: str | None, now: datetime
    ) -> int: ...

    def upsert_enrichment_state(
        self,
        address_hash: str,
        fields: Mapping[str, Any],
        *,
        when_unlocked: bool = False,
        stale_before: datetime | None = None,
        lock_token: str | None = None,
    ) -> bool: ...

    def list_enrichment_candidates(self, listing_source: str | None, limit: int) -> list[str]: ...

    def list_stale_locks(self, stale_before: datetime) -> list[EnrichmentState]: ...

    def list_enrichment_states(self, limit: int, offset: int = 0) -> list[EnrichmentState]: ...

    def mark_orphaned_states(self, now: datetime) -> int: ...

    # Owner records
    def get_owner_records(self, hashes: Iterable[str]) -> dict[str, OwnerRecord]: ...

    def upsert_owner_record(self, record: OwnerRecord, now: datetime) -> None: ...

    # Pass bookkeeping
    def record_sync_run(self, source: str, stats: SyncStats) -> None: ...

    def acquire_sync_lease(
        self, source: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool: ...

    def release_sync_lease(self, source: str, holder: str) -> None: ...
