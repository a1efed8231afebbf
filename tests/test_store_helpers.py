from __future__ import annotations

import threading
from typing import Any

import pytest

from listing_sync import config
from listing_sync.config import MAX_CHUNK_SIZE, clamp_chunk_size, load_settings
from listing_sync.memory_store import InMemoryListingStore
from listing_sync.state import EnrichmentState
from listing_sync.store import chunked, fetch_chunked, unique_keys


def test_chunked_respects_size() -> None:
    assert [len(c) for c in chunked(list(range(450)), 200)] == [200, 200, 50]
    assert list(chunked([], 200)) == []


def test_unique_keys_drops_blanks_and_keeps_order() -> None:
    assert unique_keys(["b", None, "a", "", "b"]) == ["b", "a"]


@pytest.mark.parametrize("workers", [1, 4])
def test_fetch_chunked_merges_every_chunk(workers: int) -> None:
    seen: list[int] = []
    seen_lock = threading.Lock()

    def _fetch(chunk: list[str]) -> dict[str, int]:
        with seen_lock:
            seen.append(len(chunk))
        return {key: int(key) for key in chunk}

    keys = [str(i) for i in range(505)] + ["7", None]
    merged = fetch_chunked(keys, _fetch, size=200, workers=workers)

    assert len(merged) == 505
    assert merged["504"] == 504
    assert sorted(seen) == [105, 200, 200]


def test_memory_store_reads_are_chunked(monkeypatch: Any) -> None:
    store = InMemoryListingStore(chunk_size=3)
    for i in range(8):
        store.states[f"h{i}"] = EnrichmentState(address_hash=f"h{i}")
    sizes: list[int] = []
    original = store._fetch_states

    def _spy(chunk: list[str]) -> dict[str, EnrichmentState]:
        sizes.append(len(chunk))
        return original(chunk)

    monkeypatch.setattr(store, "_fetch_states", _spy)

    states = store.get_enrichment_states([f"h{i}" for i in range(10)])

    assert sizes == [3, 3, 3, 1]
    assert len(states) == 8


def test_clamp_chunk_size() -> None:
    assert clamp_chunk_size(None) == MAX_CHUNK_SIZE
    assert clamp_chunk_size(5000) == MAX_CHUNK_SIZE
    assert clamp_chunk_size(0) == 1
    assert clamp_chunk_size(50) == 50


def test_load_settings_reads_environment(monkeypatch: Any) -> None:
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    monkeypatch.setenv("LISTING_SYNC_PG_DSN", "sqlite:///tmp/listings.db")
    monkeypatch.setenv("LISTING_SYNC_CHUNK_SIZE", "999")
    monkeypatch.setenv("LISTING_SYNC_LOCK_TTL_SECONDS", "900")
    monkeypatch.setenv("LISTING_SYNC_CHUNK_WORKERS", "0")
    load_settings.cache_clear()
    try:
        settings = load_settings()
    finally:
        load_settings.cache_clear()

    assert settings.pg_dsn == "sqlite:///tmp/listings.db"
    assert settings.chunk_size == MAX_CHUNK_SIZE
    assert settings.lock_ttl_seconds == 900
    assert settings.chunk_workers == 1


def test_load_settings_without_ttl(monkeypatch: Any) -> None:
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    monkeypatch.delenv("LISTING_SYNC_LOCK_TTL_SECONDS", raising=False)
    load_settings.cache_clear()
    try:
        assert load_settings().lock_ttl_seconds is None
    finally:
        load_settings.cache_clear()


def test_invalid_integer_setting_is_reported(monkeypatch: Any) -> None:
    monkeypatch.setattr(config, "load_dotenv", lambda: False)
    monkeypatch.setenv("LISTING_SYNC_LEASE_SECONDS", "soon")
    load_settings.cache_clear()
    try:
        with pytest.raises(ValueError, match="LISTING_SYNC_LEASE_SECONDS"):
            load_settings()
    finally:
        load_settings.cache_clear()
