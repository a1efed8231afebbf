from __future__ import annotations

import datetime as dt

from sqlalchemy import BigInteger
from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column

from listing_sync.time import now_utc_naive

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
_PK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    pass


class Listing(Base):
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[str | None] = mapped_column(String(64), nullable=True)
    beds: Mapped[str | None] = mapped_column(String(32), nullable=True)
    baths: Mapped[str | None] = mapped_column(String(32), nullable=True)
    square_feet: Mapped[str | None] = mapped_column(String(32), nullable=True)
    listing_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    time_of_post: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address_hash: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    removed_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    scrape_timestamp: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )

    __table_args__ = (
        Index("idx_listings_source_active", "source", "is_active"),
        Index("idx_listings_address_hash", "address_hash"),
    )


class EnrichmentStateRow(Base):
    __tablename__ = "property_owner_enrichment_state"

    address_hash: Mapped[str] = mapped_column(String(32), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="never_checked")
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lock_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    locked_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    checked_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    listing_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    source_used: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )

    __table_args__ = (
        Index("idx_enrichment_state_status_locked", "status", "locked"),
        Index("idx_enrichment_state_listing_source", "listing_source"),
    )


class PropertyOwner(Base):
    __tablename__ = "property_owners"

    address_hash: Mapped[str] = mapped_column(String(32), primary_key=True)
    owner_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    mailing_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    listing_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )


class ScrapeMetadata(Base):
    __tablename__ = "scrape_metadata"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    scrape_timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    scraped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    added: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    removed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated: Mapped[dt.datetime] = mapped_column(
        DateTime, nullable=False, default=now_utc_naive
    )

    __table_args__ = (
        Index("idx_scrape_metadata_source_ts", "source", "scrape_timestamp"),
    )


class SyncLease(Base):
    __tablename__ = "sync_leases"

    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(32), nullable=True)
    acquired_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
