from __future__ import annotations

import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from listing_sync.db import create_tables
from listing_sync.enrichment import EnrichmentStateManager
from listing_sync.errors import RecordWriteError, StoreUnavailableError
from listing_sync.identity import address_hash_for
from listing_sync.models import ScrapeMetadata
from listing_sync.reconcile import ReconciliationEngine
from listing_sync.sql_store import SqlListingStore
from listing_sync.state import AlreadyInProgress, EnrichmentStatus, OwnerRecord, StoredListing, Ticket

T0 = datetime(2024, 6, 1, 12, 0, 0)


class _Clock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> SqlListingStore:
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    create_tables(engine)
    return SqlListingStore(engine=engine, chunk_size=2, chunk_workers=1)


def test_run_pass_add_update_remove_roundtrip(store: SqlListingStore) -> None:
    clock = _Clock()
    engine = ReconciliationEngine(store, clock=clock)
    first_batch = [
        {"listing_link": "/listing/123-main-st", "address": "123 Main St", "price": "300000"},
        {"listing_link": "/listing/9-oak-ave", "address": "9 Oak Ave", "price": "150000"},
    ]

    first = engine.run_pass("fsbo", first_batch)
    clock.advance(hours=1)
    second = engine.run_pass("fsbo", [{**first_batch[0], "price": "310000"}])

    assert (first.added, first.updated, first.removed) == (2, 0, 0)
    assert (second.added, second.updated, second.removed, second.unchanged) == (0, 1, 1, 0)

    active = store.get_all_active_listings("fsbo")
    assert [(row.listing_link, row.price) for row in active] == [("/listing/123-main-st", "310000")]
    removed = engine.removed_listings("fsbo")
    assert [row.listing_link for row in removed] == ["/listing/9-oak-ave"]
    assert removed[0].removed_at == T0 + timedelta(hours=1)
    assert len(store.get_listings("fsbo")) == 2

    with store.engine.connect() as conn:
        runs = conn.execute(select(func.count()).select_from(ScrapeMetadata)).scalar_one()
    assert runs == 2


def test_run_pass_is_idempotent_against_sql(store: SqlListingStore) -> None:
    engine = ReconciliationEngine(store, clock=_Clock())
    batch = [
        {"listing_link": "/listing/a", "address": "1 A St"},
        {"address": "2 B Street", "beds": 3},
    ]

    engine.run_pass("fsbo", batch)
    again = engine.run_pass("fsbo", batch)

    assert (again.added, again.updated, again.removed, again.unchanged) == (0, 0, 0, 2)


def test_reactivation_clears_removed_at(store: SqlListingStore) -> None:
    clock = _Clock()
    engine = ReconciliationEngine(store, clock=clock)
    record = {"listing_link": "/listing/back", "address": "7 Return St"}

    engine.run_pass("redfin", [record])
    engine.run_pass("redfin", [])
    assert store.get_all_active_listings("redfin") == []

    stats = engine.run_pass("redfin", [record])

    assert stats.unchanged == 1
    row = store.get_all_active_listings("redfin")[0]
    assert row.removed_at is None


def test_run_pass_registers_enrichment_states(store: SqlListingStore) -> None:
    engine = ReconciliationEngine(store, clock=_Clock())

    engine.run_pass("trulia", [{"address": "55 Elm St, Chicago, IL", "url": "https://t.co/x"}])

    h = address_hash_for("55 Elm St, Chicago, IL")
    assert h is not None
    state = store.get_enrichment_states([h])[h]
    assert state.status is EnrichmentStatus.NEVER_CHECKED
    assert state.listing_source == "trulia"


def test_chunked_reads_are_merged(store: SqlListingStore) -> None:
    hashes = [f"{i:032x}" for i in range(7)]
    created = store.ensure_enrichment_states(hashes, "fsbo", T0)

    states = store.get_enrichment_states(hashes + ["f" * 32])

    assert created == 7
    assert set(states) == set(hashes)
    assert store.ensure_enrichment_states(hashes, "fsbo", T0) == 0


def test_conditional_lock_on_sql(store: SqlListingStore) -> None:
    clock = _Clock()
    manager = EnrichmentStateManager(store, lock_ttl_seconds=900, clock=clock)
    h = "a" * 32

    first = manager.acquire(h, listing_source="hotpads")
    second = manager.acquire(h)

    assert isinstance(first, Ticket)
    assert isinstance(second, AlreadyInProgress)
    assert second.locked_at == T0

    clock.advance(minutes=16)
    reclaimed = manager.acquire(h)
    assert isinstance(reclaimed, Ticket)
    assert manager.complete(first, "failed", "timeout") is False
    assert manager.complete(reclaimed, "no_data") is True

    state = store.get_enrichment_states([h])[h]
    assert state.status is EnrichmentStatus.NO_DATA
    assert state.locked is False
    assert state.listing_source == "hotpads"


def test_stale_ticket_for_unknown_address_writes_no_row(store: SqlListingStore) -> None:
    manager = EnrichmentStateManager(store, clock=_Clock())
    h = "c" * 32
    ticket = Ticket(address_hash=h, token="not-a-live-token", acquired_at=T0)

    assert manager.complete(ticket, "no_data") is False
    assert store.get_enrichment_states([h]) == {}


def test_concurrent_acquire_on_file_database(tmp_path: Path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'locks.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(engine)
    manager = EnrichmentStateManager(SqlListingStore(engine=engine, chunk_workers=1), clock=_Clock())
    h = "d" * 32
    barrier = threading.Barrier(8)
    results: list[object] = []
    results_lock = threading.Lock()

    def _worker() -> None:
        barrier.wait()
        result = manager.acquire(h)
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    engine.dispose()

    assert sum(isinstance(r, Ticket) for r in results) == 1
    assert sum(isinstance(r, AlreadyInProgress) for r in results) == 7


def test_owner_upsert_keeps_listing_source(store: SqlListingStore) -> None:
    h = "b" * 32
    store.upsert_owner_record(OwnerRecord(address_hash=h, owner_name="A", listing_source="zillow-fsbo"), T0)
    store.upsert_owner_record(OwnerRecord(address_hash=h, owner_name="B", owner_phone="555"), T0)

    owner = store.get_owner_records([h])[h]

    assert owner.owner_name == "B"
    assert owner.owner_phone == "555"
    assert owner.listing_source == "zillow-fsbo"


def test_status_override_against_sql(store: SqlListingStore) -> None:
    manager = EnrichmentStateManager(store, clock=_Clock())
    h = "c" * 32
    ticket = manager.acquire(h)
    assert isinstance(ticket, Ticket)
    manager.complete(ticket, "failed", "provider 500")
    store.upsert_owner_record(OwnerRecord(address_hash=h, owner_name="Jane Doe"), T0)

    assert manager.current_status(h) is EnrichmentStatus.ENRICHED


def test_mark_orphaned_and_history_on_sql(store: SqlListingStore) -> None:
    clock = _Clock()
    engine = ReconciliationEngine(store, clock=clock)
    manager = EnrichmentStateManager(store, clock=clock)
    engine.run_pass("fsbo", [{"address": "1 Kept St"}])
    kept = address_hash_for("1 Kept St")
    gone = "d" * 32
    manager.register_addresses([gone], "fsbo")
    clock.advance(minutes=5)
    ticket = manager.acquire(gone)
    assert isinstance(ticket, Ticket)
    manager.complete(ticket, "no_data")

    assert manager.mark_orphaned() == 1

    history = manager.history(limit=5)
    assert [view.address_hash for view in history] == [gone, kept]
    assert history[0].status is EnrichmentStatus.ORPHANED
    assert history[1].status is EnrichmentStatus.NEVER_CHECKED


def test_sync_lease_is_exclusive_until_released_or_expired(store: SqlListingStore) -> None:
    later = T0 + timedelta(minutes=30)

    assert store.acquire_sync_lease("fsbo", "runner-a", T0, later) is True
    assert store.acquire_sync_lease("fsbo", "runner-b", T0, later) is False
    assert store.acquire_sync_lease("fsbo", "runner-a", T0, later) is True

    store.release_sync_lease("fsbo", "runner-b")
    assert store.acquire_sync_lease("fsbo", "runner-b", T0, later) is False

    store.release_sync_lease("fsbo", "runner-a")
    assert store.acquire_sync_lease("fsbo", "runner-b", T0, later) is True
    assert store.acquire_sync_lease("fsbo", "runner-a", later + timedelta(seconds=1), later) is True


def test_rejected_write_raises_record_write_error(store: SqlListingStore) -> None:
    with pytest.raises(RecordWriteError):
        store.upsert_listing(StoredListing(source=None))  # type: ignore[arg-type]
    with pytest.raises(RecordWriteError):
        store.mark_inactive(9999, T0)


class _BrokenEngine:
    def connect(self) -> Any:
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))


def test_unreachable_database_maps_to_store_unavailable() -> None:
    store = SqlListingStore(engine=_BrokenEngine(), chunk_size=10, chunk_workers=1)  # type: ignore[arg-type]

    with pytest.raises(StoreUnavailableError, match="connection refused"):
        store.ping()
    with pytest.raises(StoreUnavailableError):
        store.get_listings("fsbo")
