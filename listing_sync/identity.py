"""
Identity keys for scraped listings.

A listing is recognised across scrapes by two normalized keys:

- link key: the listing-id path segment after ``/listing/`` in the source URL
  (falls back to the lower-cased URL when no such segment exists)
- address key: lower-cased address with punctuation and street-suffix tokens
  removed, so "123 Main Street" and "123 Main St." collapse together

The link key is the stronger signal and is always consulted first. Both
normalizers are idempotent.

``address_hash`` is derived from the address key only and is the join key
between listings, enrichment state and owner records.
"""

from __future__ import annotations

import hashlib
import re
from typing import NamedTuple, Protocol

_LISTING_ID_RE = re.compile(r"/listing/([^/]+)", re.IGNORECASE)
_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")
_SUFFIX_RE = re.compile(
    r"\b(street|st|avenue|ave|road|rd|boulevard|blvd|drive|dr|lane|ln|way|wy|court|ct|place|pl)\b"
)


class HasIdentityFields(Protocol):
    address: str | None
    listing_link: str | None


class ListingKeys(NamedTuple):
    link: str
    address: str

    @property
    def empty(self) -> bool:
        return not self.link and not self.address


def normalize_link_key(link: str | None) -> str:
    if not link:
        return ""
    match = _LISTING_ID_RE.search(link)
    if match:
        listing_id = match.group(1).lower().strip()
        if listing_id:
            return listing_id
    return link.lower().strip()


def normalize_address_key(address: str | None) -> str:
    if not address:
        return ""
    key = _PUNCT_RE.sub("", address.lower())
    key = _SUFFIX_RE.sub(" ", key)
    return _WS_RE.sub(" ", key).strip()


def address_hash(address_key: str) -> str | None:
    """Deterministic hash of an already-normalized address key."""
    if not address_key:
        return None
    return hashlib.md5(address_key.encode("utf-8")).hexdigest()


def address_hash_for(address: str | None) -> str | None:
    return address_hash(normalize_address_key(address))


def listing_keys(record: HasIdentityFields) -> ListingKeys:
    return ListingKeys(
        link=normalize_link_key(record.listing_link),
        address=normalize_address_key(record.address),
    )


def same_identity(left: HasIdentityFields, right: HasIdentityFields) -> bool:
    """Link keys are compared first; address keys only as the fallback."""
    left_keys = listing_keys(left)
    right_keys = listing_keys(right)

    if left_keys.link and right_keys.link and left_keys.link == right_keys.link:
        return True
    return bool(left_keys.address and right_keys.address and left_keys.address == right_keys.address)
