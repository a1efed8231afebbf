"""In-process ListingStore (tests, dry runs). Conditional updates are serialized by one lock."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Mapping

from listing_sync.config import DEFAULT_CHUNK_SIZE
from listing_sync.errors import RecordWriteError
from listing_sync.state import (
    EnrichmentState,
    EnrichmentStatus,
    OwnerRecord,
    StoredListing,
    SyncStats,
)
from listing_sync.store import chunked, fetch_chunked, unique_keys
from listing_sync.time import now_utc_naive


class InMemoryListingStore:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        self._next_id = 1
        self.listings: dict[int, StoredListing] = {}
        self.states: dict[str, EnrichmentState] = {}
        self.owners: dict[str, OwnerRecord] = {}
        self.sync_runs: list[tuple[str, SyncStats]] = []
        self.leases: dict[str, tuple[str, datetime]] = {}

    def ping(self) -> None:
        return None

    # Listings

    def get_listings(self, source: str, *, include_inactive: bool = True) -> list[StoredListing]:
        with self._lock:
            return [
                replace(row)
                for _, row in sorted(self.listings.items())
                if row.source == source and (include_inactive or row.is_active)
            ]

    def get_all_active_listings(self, source: str) -> list[StoredListing]:
        return self.get_listings(source, include_inactive=False)

    def get_removed_listings(self, source: str) -> list[StoredListing]:
        removed = [row for row in self.get_listings(source) if not row.is_active]
        return sorted(removed, key=lambda row: row.removed_at or datetime.min, reverse=True)

    def upsert_listing(self, record: StoredListing) -> StoredListing:
        with self._lock:
            if record.id is None:
                record.id = self._next_id
                self._next_id += 1
                record.created_at = record.created_at or now_utc_naive()
                record.updated_at = record.updated_at or record.created_at
            elif record.id not in self.listings:
                raise RecordWriteError(f"Listing {record.id} not found for update")
            else:
                record.created_at = self.listings[record.id].created_at
            self.listings[record.id] = replace(record)
            return record

    def mark_inactive(self, listing_id: int, removed_at: datetime) -> None:
        with self._lock:
            row = self.listings.get(listing_id)
            if row is None:
                raise RecordWriteError(f"Listing {listing_id} not found to mark inactive")
            row.is_active = False
            row.removed_at = removed_at
            row.updated_at = removed_at

    def active_address_hashes(self, source: str | None = None) -> set[str]:
        with self._lock:
            return {
                row.address_hash
                for row in self.listings.values()
                if row.is_active and row.address_hash and (source is None or row.source == source)
            }

    # Enrichment state

    def _fetch_states(self, chunk: list[str]) -> dict[str, EnrichmentState]:
        with self._lock:
            return {h: replace(self.states[h]) for h in chunk if h in self.states}

    def get_enrichment_states(self, hashes: Iterable[str]) -> dict[str, EnrichmentState]:
        return fetch_chunked(hashes, self._fetch_states, size=self.chunk_size)

    def ensure_enrichment_states(
        self, hashes: Iterable[str], listing_source: str | None, now: datetime
    ) -> int:
        created = 0
        for chunk in chunked(unique_keys(hashes), self.chunk_size):
            with self._lock:
                for address_hash in chunk:
                    if address_hash in self.states:
                        continue
                    self.states[address_hash] = EnrichmentState(
                        address_hash=address_hash,
                        listing_source=listing_source,
                        created_at=now,
                        updated_at=now,
                    )
                    created += 1
        return created

    def upsert_enrichment_state(
        self,
        address_hash: str,
        fields: Mapping[str, Any],
        *,
        when_unlocked: bool = False,
        stale_before: datetime | None = None,
        lock_token: str | None = None,
    ) -> bool:
        values = dict(fields)
        now = values.setdefault("updated_at", now_utc_naive())
        with self._lock:
            row = self.states.get(address_hash)
            if row is None:
                if lock_token is not None:
                    return False
                row = EnrichmentState(
                    address_hash=address_hash,
                    listing_source=values.get("listing_source"),
                    created_at=now,
                    updated_at=now,
                )
                self.states[address_hash] = row
            if when_unlocked and row.locked:
                stale = (
                    stale_before is not None
                    and row.locked_at is not None
                    and row.locked_at < stale_before
                )
                if not stale:
                    return False
            if lock_token is not None and (not row.locked or row.lock_token != lock_token):
                return False
            for name, value in values.items():
                if name == "status":
                    value = EnrichmentStatus.parse(value)
                setattr(row, name, value)
            return True

    def list_enrichment_candidates(self, listing_source: str | None, limit: int) -> list[str]:
        with self._lock:
            rows = [
                row
                for row in self.states.values()
                if row.status is EnrichmentStatus.NEVER_CHECKED
                and not row.locked
                and (listing_source is None or row.listing_source == listing_source)
            ]
        rows.sort(key=lambda row: (row.created_at or datetime.min, row.address_hash))
        return [row.address_hash for row in rows[:limit]]

    def list_stale_locks(self, stale_before: datetime) -> list[EnrichmentState]:
        with self._lock:
            rows = [
                replace(row)
                for row in self.states.values()
                if row.locked and row.locked_at is not None and row.locked_at < stale_before
            ]
        return sorted(rows, key=lambda row: row.locked_at or datetime.min)

    def list_enrichment_states(self, limit: int, offset: int = 0) -> list[EnrichmentState]:
        with self._lock:
            rows = [replace(row) for row in self.states.values()]
        rows.sort(key=lambda row: row.address_hash)
        rows.sort(key=lambda row: row.checked_at or row.created_at or datetime.min, reverse=True)
        return rows[offset : offset + limit]

    def mark_orphaned_states(self, now: datetime) -> int:
        referenced = self.active_address_hashes()
        changed = 0
        with self._lock:
            for row in self.states.values():
                if row.locked or row.status is EnrichmentStatus.ORPHANED:
                    continue
                if row.address_hash in referenced:
                    continue
                row.status = EnrichmentStatus.ORPHANED
                row.updated_at = now
                changed += 1
        return changed

    # Owner records

    def _fetch_owners(self, chunk: list[str]) -> dict[str, OwnerRecord]:
        with self._lock:
            return {h: replace(self.owners[h]) for h in chunk if h in self.owners}

    def get_owner_records(self, hashes: Iterable[str]) -> dict[str, OwnerRecord]:
        return fetch_chunked(hashes, self._fetch_owners, size=self.chunk_size)

    def upsert_owner_record(self, record: OwnerRecord, now: datetime) -> None:
        with self._lock:
            previous = self.owners.get(record.address_hash)
            stored = replace(record)
            if previous is not None and stored.listing_source is None:
                stored.listing_source = previous.listing_source
            self.owners[record.address_hash] = stored

    # Pass bookkeeping

    def record_sync_run(self, source: str, stats: SyncStats) -> None:
        with self._lock:
            self.sync_runs.append((source, replace(stats)))

    def acquire_sync_lease(
        self, source: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool:
        with self._lock:
            current = self.leases.get(source)
            if current is not None:
                current_holder, current_expiry = current
                if current_holder != holder and current_expiry >= now:
                    return False
            self.leases[source] = (holder, expires_at)
            return True

    def release_sync_lease(self, source: str, holder: str) -> None:
        with self._lock:
            current = self.leases.get(source)
            if current is not None and current[0] == holder:
                del self.leases[source]
