"""Shared record types for reconciliation and enrichment state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from listing_sync.time import iso

# Fields compared to decide whether a matched listing changed.
COMPARED_FIELDS: tuple[str, ...] = (
    "address",
    "price",
    "beds",
    "baths",
    "square_feet",
    "time_of_post",
)


def clean_value(value: Any) -> str:
    """Comparison form of a business field: ``None`` and blanks become ''."""
    if value is None:
        return ""
    return str(value).strip()


class RawListing(BaseModel):
    """One scraped item, before identity normalization."""

    model_config = ConfigDict(extra="ignore")

    address: Optional[str] = None
    price: Optional[str] = None
    beds: Optional[str] = None
    baths: Optional[str] = None
    square_feet: Optional[str] = None
    listing_link: Optional[str] = None
    time_of_post: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip()
        return text or None


@dataclass(slots=True)
class StoredListing:
    source: str
    address: str | None = None
    price: str | None = None
    beds: str | None = None
    baths: str | None = None
    square_feet: str | None = None
    listing_link: str | None = None
    time_of_post: str | None = None
    address_hash: str | None = None
    is_active: bool = True
    removed_at: datetime | None = None
    scrape_timestamp: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None


@dataclass(slots=True)
class SyncStats:
    scraped: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0
    filtered: int = 0
    timestamp: datetime | None = None
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "scraped": self.scraped,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "filtered": self.filtered,
            "timestamp": iso(self.timestamp),
            "duration_seconds": self.duration_seconds,
        }


class EnrichmentStatus(str, Enum):
    NEVER_CHECKED = "never_checked"
    CHECKING = "checking"
    ENRICHED = "enriched"
    NO_DATA = "no_data"
    FAILED = "failed"
    ORPHANED = "orphaned"

    @classmethod
    def parse(cls, value: str | EnrichmentStatus | None) -> EnrichmentStatus:
        if isinstance(value, EnrichmentStatus):
            return value
        raw = (value or "").strip().lower()
        if not raw:
            return cls.NEVER_CHECKED
        if raw == "no_owner_data":
            return cls.NO_DATA
        return cls(raw)


TERMINAL_OUTCOMES = frozenset(
    {EnrichmentStatus.ENRICHED, EnrichmentStatus.NO_DATA, EnrichmentStatus.FAILED}
)


@dataclass(slots=True)
class EnrichmentState:
    address_hash: str
    status: EnrichmentStatus = EnrichmentStatus.NEVER_CHECKED
    locked: bool = False
    lock_token: str | None = None
    locked_at: datetime | None = None
    checked_at: datetime | None = None
    failure_reason: str | None = None
    listing_source: str | None = None
    source_used: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class OwnerRecord:
    address_hash: str
    owner_name: str | None = None
    owner_email: str | None = None
    owner_phone: str | None = None
    mailing_address: str | None = None
    source: str | None = None
    listing_source: str | None = None

    @property
    def has_contact(self) -> bool:
        return any(clean_value(v) for v in (self.owner_name, self.owner_email, self.owner_phone))

    def as_dict(self) -> dict[str, Any]:
        return {
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
            "owner_phone": self.owner_phone,
            "mailing_address": self.mailing_address,
            "source": self.source,
        }


@dataclass(frozen=True, slots=True)
class Ticket:
    """Capability returned by ``acquire``; required to ``complete`` the attempt."""

    address_hash: str
    token: str
    acquired_at: datetime
    listing_source: str | None = None


@dataclass(frozen=True, slots=True)
class AlreadyInProgress:
    """Another caller holds the lock for this address; skip it this cycle."""

    address_hash: str
    locked_at: datetime | None = None


AcquireResult = Ticket | AlreadyInProgress


@dataclass(slots=True)
class EnrichmentView:
    """Display-layer view of one address: effective status plus owner data."""

    address_hash: str
    status: EnrichmentStatus
    locked: bool = False
    checked_at: datetime | None = None
    failure_reason: str | None = None
    listing_source: str | None = None
    source_used: str | None = None
    owner: OwnerRecord | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "address_hash": self.address_hash,
            "status": self.status.value,
            "locked": self.locked,
            "checked_at": iso(self.checked_at),
            "failure_reason": self.failure_reason,
            "listing_source": self.listing_source,
            "source_used": self.source_used,
            "owner_info": self.owner.as_dict() if self.owner else None,
        }
