from __future__ import annotations

import pytest

from listing_sync.identity import (
    address_hash,
    address_hash_for,
    listing_keys,
    normalize_address_key,
    normalize_link_key,
    same_identity,
)
from listing_sync.state import RawListing


@pytest.mark.parametrize(
    "raw",
    [
        "123 Main Street",
        "123 Main St.",
        "  123   MAIN st ",
        "123 main",
    ],
)
def test_street_suffix_variants_collapse(raw: str) -> None:
    assert normalize_address_key(raw) == "123 main"


def test_address_key_strips_punctuation_and_suffix_tokens() -> None:
    assert normalize_address_key("4500 N. Lake Shore Dr., Apt #12, Chicago, IL") == (
        "4500 n lake shore apt 12 chicago il"
    )
    assert normalize_address_key("10 Sunset Boulevard") == normalize_address_key("10 sunset blvd")


@pytest.mark.parametrize(
    "raw",
    [
        "St. Louis Ave",
        "1 Court Ct, Way Place",
        "221B Baker-Street",
        "",
        "   ",
        "Ünïcode Ave. #3",
    ],
)
def test_address_key_is_idempotent(raw: str) -> None:
    once = normalize_address_key(raw)
    assert normalize_address_key(once) == once


def test_link_key_uses_listing_segment() -> None:
    assert normalize_link_key("https://www.forsalebyowner.com/listing/123-Main-St/abc") == "123-main-st"
    assert normalize_link_key("/listing/123-main-st") == "123-main-st"


def test_link_key_falls_back_to_lowercased_url() -> None:
    assert normalize_link_key("  HTTPS://Example.com/Home/42  ") == "https://example.com/home/42"
    assert normalize_link_key(None) == ""
    assert normalize_link_key("") == ""


@pytest.mark.parametrize(
    "raw",
    [
        "https://x.com/listing/ABC-1/",
        "https://x.com/listing/",
        "HTTPS://X.COM/HOMES/1",
    ],
)
def test_link_key_is_idempotent(raw: str) -> None:
    once = normalize_link_key(raw)
    assert normalize_link_key(once) == once


def test_address_hash_is_deterministic_and_empty_safe() -> None:
    assert address_hash("") is None
    assert address_hash_for(None) is None
    assert address_hash_for("123 Main Street") == address_hash_for("123 main st.")
    assert address_hash_for("123 Main Street") == address_hash("123 main")
    assert len(address_hash("123 main") or "") == 32


def test_listing_keys_empty_when_no_identity() -> None:
    assert listing_keys(RawListing(price="100")).empty
    assert not listing_keys(RawListing(address="1 Main St")).empty


def test_link_match_takes_precedence_over_address() -> None:
    left = RawListing(listing_link="/listing/abc", address="1 Main St")
    right = RawListing(listing_link="/listing/ABC", address="99 Other Rd")
    assert same_identity(left, right)


def test_address_fallback_when_link_missing() -> None:
    left = RawListing(listing_link=None, address="1 Main Street")
    right = RawListing(listing_link="/listing/xyz", address="1 main st")
    assert same_identity(left, right)
    assert not same_identity(left, RawListing(address="2 Main St"))
