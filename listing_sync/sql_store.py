"""
SQLAlchemy-backed ListingStore.

PostgreSQL is the production target; the same statements run on SQLite
(``INSERT ... ON CONFLICT`` and conditional ``UPDATE``), which the tests use.
Every lock transition is a single conditional UPDATE whose row count decides
the winner, so concurrent callers never both succeed.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

from loguru import logger
from sqlalchemy import and_
from sqlalchemy import func
from sqlalchemy import insert
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import InterfaceError
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import SQLAlchemyError

from listing_sync.config import clamp_chunk_size, load_settings
from listing_sync.db import get_engine, resolve_pg_dsn
from listing_sync.errors import RecordWriteError, StoreError, StoreUnavailableError
from listing_sync.models import (
    EnrichmentStateRow,
    Listing,
    PropertyOwner,
    ScrapeMetadata,
    SyncLease,
)
from listing_sync.state import (
    EnrichmentState,
    EnrichmentStatus,
    OwnerRecord,
    StoredListing,
    SyncStats,
)
from listing_sync.store import chunked, fetch_chunked, unique_keys
from listing_sync.time import now_utc_naive

_LISTING_COLUMNS = (
    "source",
    "address",
    "price",
    "beds",
    "baths",
    "square_feet",
    "listing_link",
    "time_of_post",
    "address_hash",
    "is_active",
    "removed_at",
    "scrape_timestamp",
    "created_at",
    "updated_at",
)


def _to_listing(row: Mapping[str, Any]) -> StoredListing:
    return StoredListing(id=row["id"], **{col: row[col] for col in _LISTING_COLUMNS})


def _to_state(row: Mapping[str, Any]) -> EnrichmentState:
    return EnrichmentState(
        address_hash=row["address_hash"],
        status=EnrichmentStatus.parse(row["status"]),
        locked=bool(row["locked"]),
        lock_token=row["lock_token"],
        locked_at=row["locked_at"],
        checked_at=row["checked_at"],
        failure_reason=row["failure_reason"],
        listing_source=row["listing_source"],
        source_used=row["source_used"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _to_owner(row: Mapping[str, Any]) -> OwnerRecord:
    return OwnerRecord(
        address_hash=row["address_hash"],
        owner_name=row["owner_name"],
        owner_email=row["owner_email"],
        owner_phone=row["owner_phone"],
        mailing_address=row["mailing_address"],
        source=row["source"],
        listing_source=row["listing_source"],
    )


class SqlListingStore:
    """ListingStore over a SQLAlchemy engine (explicit handle, no module singleton)."""

    def __init__(
        self,
        dsn: str | None = None,
        *,
        engine: Engine | None = None,
        chunk_size: int | None = None,
        chunk_workers: int | None = None,
    ) -> None:
        settings = load_settings()
        if engine is None:
            engine = get_engine(resolve_pg_dsn(dsn))
        self._engine = engine
        self.chunk_size = clamp_chunk_size(chunk_size or settings.chunk_size)
        self.chunk_workers = chunk_workers if chunk_workers is not None else settings.chunk_workers

    @property
    def engine(self) -> Engine:
        return self._engine

    def _dsn_tag(self) -> str:
        return self._engine.url.render_as_string(hide_password=True)

    def _insert(self, model: Any):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise StoreError(f"Unsupported dialect for upserts: {dialect}")

    @contextmanager
    def _guard(self, action: str, *, write: bool = False) -> Iterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailableError(f"{action}: {exc}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise StoreUnavailableError(f"{action}: {exc}") from exc
            if write:
                raise RecordWriteError(f"{action}: {exc}") from exc
            raise StoreError(f"{action}: {exc}") from exc
        except SQLAlchemyError as exc:
            if write:
                raise RecordWriteError(f"{action}: {exc}") from exc
            raise StoreError(f"{action}: {exc}") from exc

    def ping(self) -> None:
        with self._guard("ping"), self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.debug("Listing store reachable (dsn={})", self._dsn_tag())

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def get_listings(self, source: str, *, include_inactive: bool = True) -> list[StoredListing]:
        stmt = select(Listing.__table__).where(Listing.source == source).order_by(Listing.id)
        if not include_inactive:
            stmt = stmt.where(Listing.is_active.is_(True))
        with self._guard(f"load listings for {source}"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_listing(row) for row in rows]

    def get_all_active_listings(self, source: str) -> list[StoredListing]:
        return self.get_listings(source, include_inactive=False)

    def get_removed_listings(self, source: str) -> list[StoredListing]:
        stmt = (
            select(Listing.__table__)
            .where(Listing.source == source, Listing.is_active.is_(False))
            .order_by(Listing.removed_at.desc(), Listing.id)
        )
        with self._guard(f"load removed listings for {source}"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_listing(row) for row in rows]

    def upsert_listing(self, record: StoredListing) -> StoredListing:
        values = {col: getattr(record, col) for col in _LISTING_COLUMNS}
        values["created_at"] = values["created_at"] or now_utc_naive()
        values["updated_at"] = values["updated_at"] or values["created_at"]
        with self._guard(f"upsert listing {record.listing_link or record.address}", write=True):
            with self._engine.begin() as conn:
                if record.id is None:
                    result = conn.execute(insert(Listing).values(**values))
                    record.id = int(result.inserted_primary_key[0])
                    return record
                values.pop("created_at")
                result = conn.execute(
                    update(Listing).where(Listing.id == record.id).values(**values)
                )
        if result.rowcount != 1:
            raise RecordWriteError(f"Listing {record.id} not found for update")
        return record

    def mark_inactive(self, listing_id: int, removed_at: datetime) -> None:
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id)
            .values(is_active=False, removed_at=removed_at, updated_at=removed_at)
        )
        with self._guard(f"mark listing {listing_id} inactive", write=True):
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        if result.rowcount != 1:
            raise RecordWriteError(f"Listing {listing_id} not found to mark inactive")

    def active_address_hashes(self, source: str | None = None) -> set[str]:
        stmt = select(Listing.address_hash).where(
            Listing.is_active.is_(True), Listing.address_hash.is_not(None)
        ).distinct()
        if source is not None:
            stmt = stmt.where(Listing.source == source)
        with self._guard("load active address hashes"), self._engine.connect() as conn:
            return set(conn.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Enrichment state
    # ------------------------------------------------------------------

    def _fetch_states(self, chunk: list[str]) -> dict[str, EnrichmentState]:
        stmt = select(EnrichmentStateRow.__table__).where(EnrichmentStateRow.address_hash.in_(chunk))
        with self._guard("load enrichment states"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return {row["address_hash"]: _to_state(row) for row in rows}

    def get_enrichment_states(self, hashes: Iterable[str]) -> dict[str, EnrichmentState]:
        return fetch_chunked(
            hashes, self._fetch_states, size=self.chunk_size, workers=self.chunk_workers
        )

    def ensure_enrichment_states(
        self, hashes: Iterable[str], listing_source: str | None, now: datetime
    ) -> int:
        created = 0
        for chunk in chunked(unique_keys(hashes), self.chunk_size):
            rows = [
                {
                    "address_hash": address_hash,
                    "status": EnrichmentStatus.NEVER_CHECKED.value,
                    "locked": False,
                    "listing_source": listing_source,
                    "created_at": now,
                    "updated_at": now,
                }
                for address_hash in chunk
            ]
            stmt = self._insert(EnrichmentStateRow).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["address_hash"])
            with self._guard("register enrichment states", write=True):
                with self._engine.begin() as conn:
                    result = conn.execute(stmt)
            created += max(result.rowcount or 0, 0)
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
        seed = self._insert(EnrichmentStateRow).values(
            address_hash=address_hash,
            status=EnrichmentStatus.NEVER_CHECKED.value,
            locked=False,
            listing_source=values.get("listing_source"),
            created_at=now,
            updated_at=now,
        )
        seed = seed.on_conflict_do_nothing(index_elements=["address_hash"])

        stmt = update(EnrichmentStateRow).where(EnrichmentStateRow.address_hash == address_hash)
        if when_unlocked:
            free = EnrichmentStateRow.locked.is_(False)
            if stale_before is not None:
                free = or_(
                    free,
                    and_(
                        EnrichmentStateRow.locked_at.is_not(None),
                        EnrichmentStateRow.locked_at < stale_before,
                    ),
                )
            stmt = stmt.where(free)
        if lock_token is not None:
            stmt = stmt.where(
                EnrichmentStateRow.locked.is_(True),
                EnrichmentStateRow.lock_token == lock_token,
            )

        with self._guard(f"update enrichment state {address_hash[:8]}", write=True):
            with self._engine.begin() as conn:
                # a token can only match an existing row
                if lock_token is None:
                    conn.execute(seed)
                result = conn.execute(stmt.values(**values))
        return result.rowcount == 1

    def list_enrichment_candidates(self, listing_source: str | None, limit: int) -> list[str]:
        stmt = (
            select(EnrichmentStateRow.address_hash)
            .where(
                EnrichmentStateRow.status == EnrichmentStatus.NEVER_CHECKED.value,
                EnrichmentStateRow.locked.is_(False),
            )
            .order_by(EnrichmentStateRow.created_at, EnrichmentStateRow.address_hash)
            .limit(limit)
        )
        if listing_source is not None:
            stmt = stmt.where(EnrichmentStateRow.listing_source == listing_source)
        with self._guard("load enrichment candidates"), self._engine.connect() as conn:
            return list(conn.execute(stmt).scalars().all())

    def list_stale_locks(self, stale_before: datetime) -> list[EnrichmentState]:
        stmt = (
            select(EnrichmentStateRow.__table__)
            .where(
                EnrichmentStateRow.locked.is_(True),
                EnrichmentStateRow.locked_at < stale_before,
            )
            .order_by(EnrichmentStateRow.locked_at)
        )
        with self._guard("load stale locks"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_state(row) for row in rows]

    def list_enrichment_states(self, limit: int, offset: int = 0) -> list[EnrichmentState]:
        recency = func.coalesce(EnrichmentStateRow.checked_at, EnrichmentStateRow.created_at)
        stmt = (
            select(EnrichmentStateRow.__table__)
            .order_by(recency.desc(), EnrichmentStateRow.address_hash)
            .limit(limit)
            .offset(offset)
        )
        with self._guard("load enrichment history"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_to_state(row) for row in rows]

    def mark_orphaned_states(self, now: datetime) -> int:
        referenced = select(Listing.address_hash).where(
            Listing.is_active.is_(True), Listing.address_hash.is_not(None)
        )
        stmt = (
            update(EnrichmentStateRow)
            .where(
                EnrichmentStateRow.locked.is_(False),
                EnrichmentStateRow.status != EnrichmentStatus.ORPHANED.value,
                EnrichmentStateRow.address_hash.not_in(referenced),
            )
            .values(status=EnrichmentStatus.ORPHANED.value, updated_at=now)
        )
        with self._guard("mark orphaned enrichment states", write=True):
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        return max(result.rowcount or 0, 0)

    # ------------------------------------------------------------------
    # Owner records
    # ------------------------------------------------------------------

    def _fetch_owners(self, chunk: list[str]) -> dict[str, OwnerRecord]:
        stmt = select(PropertyOwner.__table__).where(PropertyOwner.address_hash.in_(chunk))
        with self._guard("load owner records"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return {row["address_hash"]: _to_owner(row) for row in rows}

    def get_owner_records(self, hashes: Iterable[str]) -> dict[str, OwnerRecord]:
        return fetch_chunked(
            hashes, self._fetch_owners, size=self.chunk_size, workers=self.chunk_workers
        )

    def upsert_owner_record(self, record: OwnerRecord, now: datetime) -> None:
        row = asdict(record)
        stmt = self._insert(PropertyOwner).values(**row, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["address_hash"],
            set_={
                "owner_name": stmt.excluded.owner_name,
                "owner_email": stmt.excluded.owner_email,
                "owner_phone": stmt.excluded.owner_phone,
                "mailing_address": stmt.excluded.mailing_address,
                "source": stmt.excluded.source,
                "listing_source": func.coalesce(
                    stmt.excluded.listing_source, PropertyOwner.listing_source
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self._guard(f"upsert owner {record.address_hash[:8]}", write=True):
            with self._engine.begin() as conn:
                conn.execute(stmt)

    # ------------------------------------------------------------------
    # Pass bookkeeping
    # ------------------------------------------------------------------

    def record_sync_run(self, source: str, stats: SyncStats) -> None:
        stmt = insert(ScrapeMetadata).values(
            source=source,
            scrape_timestamp=stats.timestamp,
            scraped=stats.scraped,
            added=stats.added,
            updated=stats.updated,
            removed=stats.removed,
            unchanged=stats.unchanged,
            failed=stats.failed,
            duration_seconds=stats.duration_seconds,
            last_updated=stats.timestamp,
        )
        with self._guard(f"record sync run for {source}", write=True):
            with self._engine.begin() as conn:
                conn.execute(stmt)

    def acquire_sync_lease(
        self, source: str, holder: str, now: datetime, expires_at: datetime
    ) -> bool:
        seed = self._insert(SyncLease).values(source=source)
        seed = seed.on_conflict_do_nothing(index_elements=["source"])
        claim = (
            update(SyncLease)
            .where(
                SyncLease.source == source,
                or_(
                    SyncLease.expires_at.is_(None),
                    SyncLease.expires_at < now,
                    SyncLease.holder == holder,
                ),
            )
            .values(holder=holder, acquired_at=now, expires_at=expires_at)
        )
        with self._guard(f"acquire sync lease for {source}"), self._engine.begin() as conn:
            conn.execute(seed)
            result = conn.execute(claim)
        return result.rowcount == 1

    def release_sync_lease(self, source: str, holder: str) -> None:
        stmt = (
            update(SyncLease)
            .where(SyncLease.source == source, SyncLease.holder == holder)
            .values(holder=None, acquired_at=None, expires_at=None)
        )
        with self._guard(f"release sync lease for {source}"), self._engine.begin() as conn:
            conn.execute(stmt)
