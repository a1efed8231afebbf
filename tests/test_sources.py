from __future__ import annotations

import pytest

from listing_sync.sources import (
    CHICAGO_LOCALITY,
    LocalityFilter,
    canonical_source,
    coerce_records,
    map_raw_record,
)
from listing_sync.state import RawListing


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("FSBO", "fsbo"),
        ("forsalebyowner.com", "fsbo"),
        (" Zillow FSBO ", "zillow-fsbo"),
        ("zillow_frbo", "zillow-frbo"),
        ("Apartments.com", "apartments"),
    ],
)
def test_canonical_source_resolves_aliases(name: str, expected: str) -> None:
    assert canonical_source(name) == expected


def test_canonical_source_rejects_unknown() -> None:
    with pytest.raises(ValueError, match="Unknown listing source"):
        canonical_source("craigslist")


def test_map_raw_record_uses_first_non_blank_candidate() -> None:
    record = map_raw_record(
        "trulia",
        {
            "location.homeFormattedAddress": "  ",
            "title": "55 Elm St, Chicago, IL | Trulia",
            "Price": 425000,
            "bedrooms": 3,
            "Bathrooms": "2.5",
            "url": "https://www.trulia.com/home/55-elm-st",
            "unrelated": "ignored",
        },
    )

    assert record.address == "55 Elm St, Chicago, IL"
    assert record.price == "425000"
    assert record.beds == "3"
    assert record.baths == "2.5"
    assert record.listing_link == "https://www.trulia.com/home/55-elm-st"
    assert record.square_feet is None


def test_map_raw_record_per_source_columns() -> None:
    hotpads = map_raw_record(
        "hotpads",
        {"address": "9 Oak Ln", "bedrooms": "2", "url": "https://hotpads.com/x", "listing_date": "2024-05-01"},
    )
    assert hotpads.beds == "2"
    assert hotpads.listing_link == "https://hotpads.com/x"
    assert hotpads.time_of_post == "2024-05-01"

    frbo = map_raw_record("zillow frbo", {"address": "1 A St", "asking_price": "$1,900/mo"})
    assert frbo.price == "$1,900/mo"


def test_pipe_in_real_address_column_is_kept() -> None:
    apartments = map_raw_record("apartments", {"full_address": "Unit 3 | 12 Elm St", "title": "Nice flat | Apartments"})
    trulia = map_raw_record("trulia", {"address": "Rear | 4 Pine Ct"})

    assert apartments.address == "Unit 3 | 12 Elm St"
    assert trulia.address == "Rear | 4 Pine Ct"


def test_title_fallback_is_split_for_apartments() -> None:
    record = map_raw_record("apartments", {"title": "12 Elm St | Apartments.com"})

    assert record.address == "12 Elm St"


def test_raw_listing_blank_and_bool_values_become_none() -> None:
    record = RawListing.model_validate({"address": "   ", "price": True, "beds": " 4 "})
    assert record.address is None
    assert record.price is None
    assert record.beds == "4"


def test_coerce_records_passes_models_through() -> None:
    existing = RawListing(address="1 Main St")
    batch = coerce_records("fsbo", [existing, {"address": "2 Main St"}])
    assert batch[0] is existing
    assert batch[1].address == "2 Main St"


def test_chicago_locality_excludes_suburbs() -> None:
    assert CHICAGO_LOCALITY.accepts(RawListing(address="123 W Madison St, Chicago, IL 60602"))
    assert not CHICAGO_LOCALITY.accepts(RawListing(address="5 Main St, Cicero, IL"))
    assert not CHICAGO_LOCALITY.accepts(RawListing(address="1 Harlem Ave, Harwood Heights, Chicago area"))
    assert not CHICAGO_LOCALITY.accepts(RawListing(address=None))


def test_empty_locality_filter_accepts_everything() -> None:
    assert LocalityFilter().accepts(RawListing(address="anywhere"))
    assert LocalityFilter().accepts(RawListing())
