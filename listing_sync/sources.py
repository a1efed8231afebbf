"""
Source registry: canonical source names, per-source raw field mapping and the
optional locality filter.

Each scraper emits its own column names. They are resolved to the canonical
RawListing fields exactly once, here, at ingestion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from listing_sync.state import RawListing

DEFAULT_SOURCE = "fsbo"

SOURCE_ALIASES: dict[str, str] = {
    "fsbo": "fsbo",
    "forsalebyowner": "fsbo",
    "forsalebyowner.com": "fsbo",
    "listings": "fsbo",
    "trulia": "trulia",
    "redfin": "redfin",
    "zillow-fsbo": "zillow-fsbo",
    "zillow fsbo": "zillow-fsbo",
    "zillow_fsbo": "zillow-fsbo",
    "zillow-frbo": "zillow-frbo",
    "zillow frbo": "zillow-frbo",
    "zillow_frbo": "zillow-frbo",
    "hotpads": "hotpads",
    "apartments": "apartments",
    "apartments.com": "apartments",
    "apartments_frbo": "apartments",
}

_COMMON_FIELDS: dict[str, tuple[str, ...]] = {
    "address": ("address",),
    "price": ("price",),
    "beds": ("beds",),
    "baths": ("baths",),
    "square_feet": ("square_feet",),
    "listing_link": ("listing_link",),
    "time_of_post": ("time_of_post",),
}

SOURCE_FIELD_MAP: dict[str, dict[str, tuple[str, ...]]] = {
    "fsbo": dict(_COMMON_FIELDS),
    "trulia": {
        **_COMMON_FIELDS,
        "address": ("location.homeFormattedAddress", "address", "title"),
        "price": ("price", "Price"),
        "beds": ("bedrooms", "Bedrooms", "beds"),
        "baths": ("bathrooms", "Bathrooms", "baths"),
        "square_feet": ("floorSpace", "FloorSpace", "square_feet"),
        "listing_link": ("url", "URL", "listing_url", "listing_link"),
    },
    "redfin": {
        **_COMMON_FIELDS,
        "listing_link": ("listing_link", "url"),
    },
    "zillow-fsbo": {
        **_COMMON_FIELDS,
        "beds": ("bedrooms", "beds"),
        "baths": ("bathrooms", "baths"),
        "listing_link": ("detail_url", "listing_link"),
    },
    "zillow-frbo": {
        **_COMMON_FIELDS,
        "price": ("asking_price", "price"),
        "listing_link": ("url", "listing_link"),
    },
    "hotpads": {
        **_COMMON_FIELDS,
        "beds": ("bedrooms", "beds"),
        "baths": ("bathrooms", "baths"),
        "listing_link": ("url", "listing_link"),
        "time_of_post": ("listing_date", "time_of_post"),
    },
    "apartments": {
        **_COMMON_FIELDS,
        "address": ("full_address", "address", "title"),
        "baths": ("baths", "bath"),
        "square_feet": ("sqft", "square_feet"),
        "listing_link": ("listing_url", "listing_link"),
    },
}


def canonical_source(name: str) -> str:
    key = (name or "").strip().lower()
    try:
        return SOURCE_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown listing source: {name!r}") from None


def _first_present(raw: Mapping[str, Any], candidates: Iterable[str]) -> tuple[str | None, Any]:
    for key in candidates:
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return key, value
    return None, None


def map_raw_record(source: str, raw: Mapping[str, Any]) -> RawListing:
    fields = SOURCE_FIELD_MAP[canonical_source(source)]
    resolved: dict[str, Any] = {}
    for name, candidates in fields.items():
        key, value = _first_present(raw, candidates)
        if name == "address" and key == "title":
            # Titles look like "123 Main St | Trulia"; keep the address part.
            value = str(value).split("|")[0]
        resolved[name] = value
    return RawListing.model_validate(resolved)


def coerce_records(source: str, records: Iterable[RawListing | Mapping[str, Any]]) -> list[RawListing]:
    batch: list[RawListing] = []
    for record in records:
        if isinstance(record, RawListing):
            batch.append(record)
        else:
            batch.append(map_raw_record(source, record))
    return batch


@dataclass(frozen=True, slots=True)
class LocalityFilter:
    include_terms: tuple[str, ...] = ()
    exclude_terms: tuple[str, ...] = ()

    def accepts(self, record: RawListing) -> bool:
        address = (record.address or "").lower()
        if any(term in address for term in self.exclude_terms):
            return False
        if self.include_terms:
            return any(term in address for term in self.include_terms)
        return True


CHICAGO_LOCALITY = LocalityFilter(
    include_terms=("chicago",),
    exclude_terms=(
        "harwood heights",
        "norridge",
        "merrionette park",
        "alsip",
        "riverdale",
        "rosemont",
        "park ridge",
        "oak lawn",
        "evergreen park",
        "burbank",
        "cicero",
        "berwyn",
    ),
)

LOCALITY_PRESETS: dict[str, LocalityFilter] = {
    "chicago": CHICAGO_LOCALITY,
}
