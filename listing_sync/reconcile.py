"""
Reconciliation engine: diffs one scraped batch against the stored snapshot.

Outcomes per scraped record are added, updated, unchanged (reactivating an
inactive match), skipped (no identity) or duplicate (same identity earlier in
the batch). Rows that were active before the pass and whose identity is
absent from the batch are soft-deleted. Nothing is ever physically deleted.

The diff itself is single-threaded over the whole batch; only store reads
are chunked.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Container, Iterable, Mapping, Sequence

from loguru import logger

from listing_sync.config import DEFAULT_LEASE_SECONDS
from listing_sync.errors import RecordWriteError, StoreError, SyncInProgressError
from listing_sync.identity import ListingKeys, address_hash, listing_keys
from listing_sync.logging import bind_context, pass_finished, pass_started
from listing_sync.sources import DEFAULT_SOURCE, LocalityFilter, canonical_source, coerce_records
from listing_sync.state import COMPARED_FIELDS, RawListing, StoredListing, SyncStats, clean_value
from listing_sync.store import ListingStore
from listing_sync.time import now_utc_naive

Clock = Callable[[], datetime]


def changed_fields(stored: StoredListing, scraped: RawListing) -> dict[str, str | None]:
    """Compared fields whose cleaned values differ, mapped to the scraped value."""
    diff: dict[str, str | None] = {}
    for name in COMPARED_FIELDS:
        new_value = getattr(scraped, name)
        if clean_value(getattr(stored, name)) != clean_value(new_value):
            diff[name] = new_value
    return diff


class SnapshotIndex:
    """Link-key and address-key lookups over stored rows.

    Every row sharing a key is kept as a candidate, active rows first, then
    the older one. ``resolve`` returns the first candidate not yet claimed.
    """

    def __init__(self, rows: Iterable[StoredListing]) -> None:
        self.rows = list(rows)
        self.by_link: dict[str, list[StoredListing]] = {}
        self.by_address: dict[str, list[StoredListing]] = {}
        ordered = sorted(self.rows, key=lambda row: (not row.is_active, row.id or 0))
        for row in ordered:
            keys = listing_keys(row)
            if keys.link:
                self.by_link.setdefault(keys.link, []).append(row)
            if keys.address:
                self.by_address.setdefault(keys.address, []).append(row)

    def resolve(
        self, keys: ListingKeys, claimed: Container[int | None] = frozenset()
    ) -> StoredListing | None:
        """Link candidates first, then address candidates, skipping claimed rows."""
        candidates: list[StoredListing] = []
        if keys.link:
            candidates.extend(self.by_link.get(keys.link, ()))
        if keys.address:
            candidates.extend(self.by_address.get(keys.address, ()))
        for row in candidates:
            if row.id not in claimed:
                return row
        return None


class ReconciliationEngine:
    def __init__(
        self,
        store: ListingStore,
        *,
        locality: LocalityFilter | None = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Clock = now_utc_naive,
    ) -> None:
        self.store = store
        self.locality = locality
        self.lease_seconds = lease_seconds
        self.clock = clock

    # ------------------------------------------------------------------
    # Core diff
    # ------------------------------------------------------------------

    def reconcile(
        self,
        batch: Sequence[RawListing],
        snapshot: Iterable[StoredListing],
        *,
        source: str = DEFAULT_SOURCE,
    ) -> SyncStats:
        started = time.perf_counter()
        now = self.clock()
        stats = SyncStats(scraped=len(batch), timestamp=now)
        index = SnapshotIndex(snapshot)
        log = bind_context(source=source)

        scraped_links: set[str] = set()
        scraped_addresses: set[str] = set()
        seen_links: set[str] = set()
        seen_addresses: set[str] = set()
        claimed: set[int] = set()

        for record in batch:
            keys = listing_keys(record)
            if keys.empty:
                stats.skipped += 1
                continue
            scraped_links.add(keys.link)
            scraped_addresses.add(keys.address)
            if (keys.link and keys.link in seen_links) or (
                keys.address and keys.address in seen_addresses
            ):
                stats.duplicates += 1
                continue
            if keys.link:
                seen_links.add(keys.link)
            if keys.address:
                seen_addresses.add(keys.address)

            match = index.resolve(keys, claimed)
            if match is not None and match.id is not None:
                claimed.add(match.id)

            try:
                outcome = self._apply(source, record, keys, match, now)
            except RecordWriteError as exc:
                stats.failed += 1
                log.error("Listing write failed ({}): {}", keys.link or keys.address, exc)
                continue
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        for row in index.rows:
            if not row.is_active or row.id is None or row.id in claimed:
                continue
            keys = listing_keys(row)
            if keys.empty:
                continue
            if (keys.link and keys.link in scraped_links) or (
                keys.address and keys.address in scraped_addresses
            ):
                continue
            try:
                self.store.mark_inactive(row.id, now)
            except RecordWriteError as exc:
                stats.failed += 1
                log.error("Failed to mark listing {} inactive: {}", row.id, exc)
                continue
            stats.removed += 1

        stats.duration_seconds = round(time.perf_counter() - started, 3)
        return stats

    def _apply(
        self,
        source: str,
        record: RawListing,
        keys: ListingKeys,
        match: StoredListing | None,
        now: datetime,
    ) -> str:
        """Write one scraped record; returns the SyncStats bucket it lands in."""
        if match is None:
            self.store.upsert_listing(
                StoredListing(
                    source=source,
                    address=record.address,
                    price=record.price,
                    beds=record.beds,
                    baths=record.baths,
                    square_feet=record.square_feet,
                    listing_link=record.listing_link,
                    time_of_post=record.time_of_post,
                    address_hash=address_hash(keys.address),
                    is_active=True,
                    scrape_timestamp=now,
                    created_at=now,
                    updated_at=now,
                )
            )
            return "added"

        diff = changed_fields(match, record)
        if diff:
            updated = replace(match, **diff)
            if "address" in diff:
                updated.address_hash = address_hash(keys.address)
            updated.is_active = True
            updated.removed_at = None
            updated.scrape_timestamp = now
            updated.updated_at = now
            self.store.upsert_listing(updated)
            return "updated"

        if not match.is_active:
            self.store.upsert_listing(
                replace(match, is_active=True, removed_at=None, updated_at=now)
            )
        return "unchanged"

    # ------------------------------------------------------------------
    # Pass orchestration
    # ------------------------------------------------------------------

    def prepare_batch(
        self, source: str, records: Iterable[RawListing | Mapping[str, Any]]
    ) -> tuple[list[RawListing], int]:
        """Map raw records for ``source`` and apply the locality filter."""
        batch = coerce_records(source, records)
        if self.locality is None:
            return batch, 0
        kept = [record for record in batch if self.locality.accepts(record)]
        return kept, len(batch) - len(kept)

    def run_pass(
        self,
        source: str,
        records: Iterable[RawListing | Mapping[str, Any]],
        *,
        run_id: str | None = None,
    ) -> SyncStats:
        """One full reconciliation pass for ``source``, guarded by a per-source lease.

        Raises StoreUnavailableError when the store cannot be reached and
        SyncInProgressError when another live pass holds the lease.
        """
        source = canonical_source(source)
        batch, filtered = self.prepare_batch(source, records)
        holder = uuid.uuid4().hex
        run_id = run_id or holder[:8]
        log = bind_context(source=source, run_id=run_id)

        self.store.ping()
        now = self.clock()
        if not self.store.acquire_sync_lease(
            source, holder, now, now + timedelta(seconds=self.lease_seconds)
        ):
            raise SyncInProgressError(f"Another sync pass for {source!r} is in progress")

        pass_started(source, run_id)
        try:
            snapshot = self.store.get_listings(source, include_inactive=True)
            stats = self.reconcile(batch, snapshot, source=source)
            stats.filtered = filtered
            try:
                self.store.record_sync_run(source, stats)
            except StoreError:
                log.opt(exception=True).warning("Could not record sync run metadata")
        finally:
            try:
                self.store.release_sync_lease(source, holder)
            except StoreError:
                log.opt(exception=True).warning("Could not release sync lease")

        pass_finished(source, stats, run_id)
        self._register_active_addresses(source)
        return stats

    def _register_active_addresses(self, source: str) -> None:
        try:
            hashes = self.store.active_address_hashes(source)
            created = self.store.ensure_enrichment_states(hashes, source, self.clock())
        except StoreError:
            logger.opt(exception=True).warning(
                "Could not register enrichment state rows for {}", source
            )
            return
        if created:
            logger.info("Registered {} new addresses for enrichment ({})", created, source)

    # ------------------------------------------------------------------
    # Single-record and read paths
    # ------------------------------------------------------------------

    def add_listing(self, source: str, record: RawListing | Mapping[str, Any]) -> str:
        """Upsert one record while a scraper is still running. Never removes rows."""
        source = canonical_source(source)
        batch, _ = self.prepare_batch(source, [record])
        if not batch:
            return "skipped"
        scraped = batch[0]
        keys = listing_keys(scraped)
        if keys.empty:
            return "skipped"

        index = SnapshotIndex(self.store.get_listings(source, include_inactive=True))
        now = self.clock()
        outcome = self._apply(source, scraped, keys, index.resolve(keys), now)

        hashed = address_hash(keys.address)
        if hashed:
            self.store.ensure_enrichment_states([hashed], source, now)
        bind_context(source=source).debug("add_listing {} -> {}", keys.link or keys.address, outcome)
        return outcome

    def removed_listings(self, source: str) -> list[StoredListing]:
        return self.store.get_removed_listings(canonical_source(source))


__all__ = ["ReconciliationEngine", "SnapshotIndex", "changed_fields"]
