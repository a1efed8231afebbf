"""
Per-address enrichment lock and status bookkeeping.

Lifecycle of one ``address_hash``::

    never_checked -> checking (acquire, locked) -> enriched | no_data | failed (complete)
                          ^                                  |
                          +------------ later acquire -------+

``orphaned`` is set out-of-band by ``mark_orphaned`` when no active listing
references the address. ``register_addresses`` never resets it, but an
explicit ``acquire`` is allowed to move an orphaned row back to ``checking``
(the address was relisted, or an operator retries it by hand).

``acquire`` is a single conditional update in the store, so concurrent callers
on the same address resolve to exactly one Ticket. A lock older than the
configured TTL is reclaimable; without a TTL a crashed holder keeps the lock
until ``release_stale_locks`` is run with an explicit age.

Reported status prefers evidence over bookkeeping: an owner record with any
contact field forces ``enriched``.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

from loguru import logger

from listing_sync.config import Settings, load_settings
from listing_sync.errors import InvalidOutcomeError
from listing_sync.logging import bind_context
from listing_sync.state import (
    TERMINAL_OUTCOMES,
    AcquireResult,
    AlreadyInProgress,
    EnrichmentState,
    EnrichmentStatus,
    EnrichmentView,
    OwnerRecord,
    Ticket,
)
from listing_sync.store import ListingStore, unique_keys
from listing_sync.time import cutoff, now_utc_naive

Clock = Callable[[], datetime]

LOCK_EXPIRED_REASON = "lock_expired"


def effective_status(state: EnrichmentState | None, owner: OwnerRecord | None) -> EnrichmentStatus:
    if owner is not None and owner.has_contact:
        return EnrichmentStatus.ENRICHED
    if state is None:
        return EnrichmentStatus.NEVER_CHECKED
    return state.status


def parse_outcome(outcome: str | EnrichmentStatus) -> EnrichmentStatus:
    try:
        status = EnrichmentStatus.parse(outcome)
    except ValueError:
        raise InvalidOutcomeError(f"Unknown enrichment outcome: {outcome!r}") from None
    if status not in TERMINAL_OUTCOMES:
        raise InvalidOutcomeError(
            f"Enrichment attempts must complete as enriched, no_data or failed, not {status.value!r}"
        )
    return status


class EnrichmentStateManager:
    def __init__(
        self,
        store: ListingStore,
        *,
        lock_ttl_seconds: int | None = None,
        clock: Clock = now_utc_naive,
    ) -> None:
        self.store = store
        self.lock_ttl_seconds = lock_ttl_seconds
        self.clock = clock

    @classmethod
    def from_settings(
        cls, store: ListingStore, settings: Settings | None = None
    ) -> EnrichmentStateManager:
        settings = settings or load_settings()
        return cls(store, lock_ttl_seconds=settings.lock_ttl_seconds)

    # ------------------------------------------------------------------
    # Lock lifecycle
    # ------------------------------------------------------------------

    def acquire(self, address_hash: str, listing_source: str | None = None) -> AcquireResult:
        """Claim ``address_hash`` for one enrichment attempt.

        Returns a Ticket on success, or AlreadyInProgress when another caller
        holds a live lock. Contention is not an error.
        """
        now = self.clock()
        token = uuid.uuid4().hex
        fields = {
            "status": EnrichmentStatus.CHECKING.value,
            "locked": True,
            "lock_token": token,
            "locked_at": now,
            "failure_reason": None,
            "updated_at": now,
        }
        if listing_source:
            fields["listing_source"] = listing_source

        won = self.store.upsert_enrichment_state(
            address_hash,
            fields,
            when_unlocked=True,
            stale_before=cutoff(now, self.lock_ttl_seconds),
        )
        if not won:
            current = self.store.get_enrichment_states([address_hash]).get(address_hash)
            bind_context(address_hash=address_hash).debug("enrichment already in progress")
            return AlreadyInProgress(
                address_hash=address_hash,
                locked_at=current.locked_at if current else None,
            )

        bind_context(address_hash=address_hash).debug("enrichment lock acquired")
        return Ticket(
            address_hash=address_hash,
            token=token,
            acquired_at=now,
            listing_source=listing_source,
        )

    def acquire_next(
        self, listing_source: str | None = None, candidates: int = 25
    ) -> Ticket | None:
        """Claim the oldest never-checked, unlocked address (optionally for one source)."""
        for address_hash in self.store.list_enrichment_candidates(listing_source, candidates):
            result = self.acquire(address_hash, listing_source=listing_source)
            if isinstance(result, Ticket):
                return result
        return None

    def complete(
        self,
        ticket: Ticket,
        outcome: str | EnrichmentStatus,
        reason: str | None = None,
        owner: OwnerRecord | None = None,
        source_used: str | None = None,
    ) -> bool:
        """Finish the attempt held by ``ticket`` and release the lock.

        Returns False (and changes nothing) when the ticket no longer holds
        the lock, e.g. a duplicate completion or a lock that was reclaimed.
        """
        status = parse_outcome(outcome)
        log = bind_context(address_hash=ticket.address_hash)

        if owner is not None:
            if status is EnrichmentStatus.ENRICHED:
                if not self._write_owner(ticket, owner):
                    log.info("stale enrichment ticket ignored")
                    return False
            else:
                log.warning("owner data ignored for outcome {}", status.value)

        now = self.clock()
        fields = {
            "status": status.value,
            "locked": False,
            "lock_token": None,
            "locked_at": None,
            "checked_at": now,
            "failure_reason": reason if status is EnrichmentStatus.FAILED else None,
            "updated_at": now,
        }
        if source_used:
            fields["source_used"] = source_used

        applied = self.store.upsert_enrichment_state(
            ticket.address_hash, fields, lock_token=ticket.token
        )
        if applied:
            log.info("enrichment {} ({})", status.value, reason or "ok")
        else:
            log.info("stale enrichment ticket ignored")
        return applied

    def _write_owner(self, ticket: Ticket, owner: OwnerRecord) -> bool:
        current = self.store.get_enrichment_states([ticket.address_hash]).get(ticket.address_hash)
        if current is None or not current.locked or current.lock_token != ticket.token:
            return False
        record = replace(
            owner,
            address_hash=ticket.address_hash,
            listing_source=owner.listing_source or ticket.listing_source or current.listing_source,
        )
        self.store.upsert_owner_record(record, self.clock())
        return True

    # ------------------------------------------------------------------
    # Status reads
    # ------------------------------------------------------------------

    def current_status(self, address_hash: str) -> EnrichmentStatus:
        return self.statuses([address_hash]).get(address_hash, EnrichmentStatus.NEVER_CHECKED)

    def statuses(self, hashes: Iterable[str]) -> dict[str, EnrichmentStatus]:
        return {h: view.status for h, view in self.lookup(hashes).items()}

    def owner_records(self, hashes: Iterable[str]) -> dict[str, OwnerRecord]:
        return self.store.get_owner_records(unique_keys(hashes))

    def lookup(self, hashes: Iterable[str]) -> dict[str, EnrichmentView]:
        keys = unique_keys(hashes)
        if not keys:
            return {}
        states = self.store.get_enrichment_states(keys)
        owners = self.store.get_owner_records(keys)
        return {h: self._view(h, states.get(h), owners.get(h)) for h in keys}

    def history(self, limit: int = 50, offset: int = 0) -> list[EnrichmentView]:
        """Most recently checked addresses first, with their owner data."""
        states = self.store.list_enrichment_states(limit, offset)
        owners = self.store.get_owner_records([s.address_hash for s in states])
        return [self._view(s.address_hash, s, owners.get(s.address_hash)) for s in states]

    @staticmethod
    def _view(
        address_hash: str, state: EnrichmentState | None, owner: OwnerRecord | None
    ) -> EnrichmentView:
        view = EnrichmentView(
            address_hash=address_hash,
            status=effective_status(state, owner),
            owner=owner,
        )
        if state is not None:
            view.locked = state.locked
            view.checked_at = state.checked_at
            view.failure_reason = state.failure_reason
            view.listing_source = state.listing_source
            view.source_used = state.source_used
        return view

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def register_addresses(self, hashes: Iterable[str], listing_source: str | None = None) -> int:
        """Create never_checked rows for unseen hashes; existing rows are untouched."""
        created = self.store.ensure_enrichment_states(unique_keys(hashes), listing_source, self.clock())
        if created:
            logger.info("registered {} addresses for enrichment", created)
        return created

    def mark_orphaned(self) -> int:
        changed = self.store.mark_orphaned_states(self.clock())
        if changed:
            logger.info("marked {} enrichment rows orphaned", changed)
        return changed

    def _stale_before(self, older_than: timedelta | None) -> datetime | None:
        now = self.clock()
        if older_than is not None:
            return now - older_than
        return cutoff(now, self.lock_ttl_seconds)

    def stale_locks(self, older_than: timedelta | None = None) -> list[EnrichmentState]:
        stale_before = self._stale_before(older_than)
        if stale_before is None:
            return []
        return self.store.list_stale_locks(stale_before)

    def release_stale_locks(self, older_than: timedelta | None = None) -> int:
        """Fail every stale lock with reason ``lock_expired``; returns how many were released."""
        released = 0
        for state in self.stale_locks(older_than):
            if not state.lock_token:
                logger.warning("locked row without token left alone: {}", state.address_hash)
                continue
            ticket = Ticket(
                address_hash=state.address_hash,
                token=state.lock_token,
                acquired_at=state.locked_at or self.clock(),
                listing_source=state.listing_source,
            )
            if self.complete(ticket, EnrichmentStatus.FAILED, LOCK_EXPIRED_REASON):
                released += 1
        if released:
            logger.warning("released {} stale enrichment locks", released)
        return released


__all__ = ["EnrichmentStateManager", "effective_status", "parse_outcome", "LOCK_EXPIRED_REASON"]
