"""Persistence contract for the entitlement engine plus an in-memory store."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

from .errors import ConcurrentChangeError, ConflictError
from .models import (
    CreditLedgerEntry,
    Draw,
    DrawEntry,
    Membership,
    PromoCode,
    RenewalRecord,
    UserAccount,
)


class EntitlementRepository(Protocol):
    """Data access required by the ledger, state machine and draw guard."""

    def transaction(self) -> ContextManager[None]:
        """Atomic unit. Nested calls join the outer transaction."""

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        ...

    def save_user(self, account: UserAccount) -> UserAccount:
        ...

    def get_membership(self, user_id: str) -> Optional[Membership]:
        ...

    def save_membership(self, membership: Membership) -> Membership:
        ...

    def claim_membership_lock(self, user_id: str) -> Membership:
        """Atomically flip ``is_processing_change`` to true or raise ``ConcurrentChangeError``."""

    def release_membership_lock(self, user_id: str) -> None:
        ...

    def list_expired_pauses(self, now: datetime) -> Sequence[Membership]:
        ...

    def append_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        ...

    def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        ...

    def get_draw(self, draw_id: str) -> Optional[Draw]:
        ...

    def save_draw(self, draw: Draw) -> Draw:
        ...

    def increment_draw_entrants(self, draw_id: str) -> Draw:
        ...

    def find_active_entry(self, user_id: str, draw_id: str) -> Optional[DrawEntry]:
        ...

    def find_entry_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[DrawEntry]:
        ...

    def insert_draw_entry(self, entry: DrawEntry) -> DrawEntry:
        """Insert an entry, raising ``ConflictError`` on a duplicate active entry."""

    def invalidate_draw_entries(self, user_id: str, invalidated_at: datetime) -> int:
        ...

    def list_draw_entries(self, user_id: str) -> Sequence[DrawEntry]:
        ...

    def append_renewal(self, record: RenewalRecord) -> RenewalRecord:
        ...

    def list_renewals(self, user_id: str, *, offset: int = 0, limit: int = 20) -> Tuple[Sequence[RenewalRecord], int]:
        ...

    def get_promo_code(self, code: str) -> Optional[PromoCode]:
        ...

    def save_promo_code(self, promo_code: PromoCode) -> PromoCode:
        ...

    def increment_promo_usage(self, code: str) -> Optional[PromoCode]:
        ...


class InMemoryEntitlementRepository:
    """Thread-safe store suitable for tests and local development.

    A single re-entrant lock serializes transactions. Records are immutable
    pydantic models, so rollback restores shallow copies of each table.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self.users: Dict[str, UserAccount] = {}
        self.memberships: Dict[str, Membership] = {}
        self.ledger: List[CreditLedgerEntry] = []
        self.draws: Dict[str, Draw] = {}
        self.entries: Dict[str, DrawEntry] = {}
        self.renewals: List[RenewalRecord] = []
        self.promo_codes: Dict[str, PromoCode] = {}

    def _tables(self) -> tuple:
        return (
            dict(self.users),
            dict(self.memberships),
            list(self.ledger),
            dict(self.draws),
            dict(self.entries),
            list(self.renewals),
            dict(self.promo_codes),
        )

    def _restore(self, tables: tuple) -> None:
        (
            self.users,
            self.memberships,
            self.ledger,
            self.draws,
            self.entries,
            self.renewals,
            self.promo_codes,
        ) = tables

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            outermost = self._depth == 0
            saved = self._tables() if outermost else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if outermost:
                    self._restore(saved)
                raise
            finally:
                self._depth -= 1

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._lock:
            return self.users.get(user_id)

    def save_user(self, account: UserAccount) -> UserAccount:
        with self._lock:
            self.users[account.user_id] = account
            return account

    def get_membership(self, user_id: str) -> Optional[Membership]:
        with self._lock:
            return self.memberships.get(user_id)

    def save_membership(self, membership: Membership) -> Membership:
        with self._lock:
            self.memberships[membership.user_id] = membership
            return membership

    def claim_membership_lock(self, user_id: str) -> Membership:
        with self._lock:
            membership = self.memberships.get(user_id)
            if membership is None:
                raise LookupError(f"No membership for user {user_id}")
            if membership.is_processing_change:
                raise ConcurrentChangeError("Another membership change is already in progress.")
            claimed = membership.model_copy(update={"is_processing_change": True})
            self.memberships[user_id] = claimed
            return claimed

    def release_membership_lock(self, user_id: str) -> None:
        with self._lock:
            membership = self.memberships.get(user_id)
            if membership is not None and membership.is_processing_change:
                self.memberships[user_id] = membership.model_copy(update={"is_processing_change": False})

    def list_expired_pauses(self, now: datetime) -> Sequence[Membership]:
        with self._lock:
            return [
                membership
                for membership in self.memberships.values()
                if membership.is_paused
                and membership.pause_expires_at is not None
                and membership.pause_expires_at <= now
            ]

    def append_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        with self._lock:
            self.ledger.append(entry)
            return entry

    def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        with self._lock:
            matching = [entry for entry in self.ledger if entry.user_id == user_id]
            return list(reversed(matching))[:limit]

    def get_draw(self, draw_id: str) -> Optional[Draw]:
        with self._lock:
            return self.draws.get(draw_id)

    def save_draw(self, draw: Draw) -> Draw:
        with self._lock:
            self.draws[draw.draw_id] = draw
            return draw

    def increment_draw_entrants(self, draw_id: str) -> Draw:
        with self._lock:
            draw = self.draws.get(draw_id)
            if draw is None:
                raise LookupError(f"Draw not found: {draw_id}")
            updated = draw.model_copy(update={"entrants": draw.entrants + 1})
            self.draws[draw_id] = updated
            return updated

    def find_active_entry(self, user_id: str, draw_id: str) -> Optional[DrawEntry]:
        with self._lock:
            for entry in self.entries.values():
                if entry.user_id == user_id and entry.draw_id == draw_id and entry.is_valid:
                    return entry
            return None

    def find_entry_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[DrawEntry]:
        with self._lock:
            for entry in self.entries.values():
                if entry.user_id == user_id and entry.idempotency_key == idempotency_key:
                    return entry
            return None

    def insert_draw_entry(self, entry: DrawEntry) -> DrawEntry:
        with self._lock:
            if self.find_active_entry(entry.user_id, entry.draw_id) is not None:
                raise ConflictError("You have already entered this draw.", detail={"draw_id": entry.draw_id})
            self.entries[entry.entry_id] = entry
            return entry

    def invalidate_draw_entries(self, user_id: str, invalidated_at: datetime) -> int:
        with self._lock:
            count = 0
            for entry_id, entry in list(self.entries.items()):
                if entry.user_id != user_id or not entry.is_valid:
                    continue
                self.entries[entry_id] = entry.model_copy(update={"invalidated_at": invalidated_at})
                draw = self.draws.get(entry.draw_id)
                if draw is not None and draw.entrants > 0:
                    self.draws[draw.draw_id] = draw.model_copy(update={"entrants": draw.entrants - 1})
                count += 1
            return count

    def list_draw_entries(self, user_id: str) -> Sequence[DrawEntry]:
        with self._lock:
            return sorted(
                (entry for entry in self.entries.values() if entry.user_id == user_id),
                key=lambda entry: entry.created_at,
                reverse=True,
            )

    def append_renewal(self, record: RenewalRecord) -> RenewalRecord:
        with self._lock:
            self.renewals.append(record)
            return record

    def list_renewals(self, user_id: str, *, offset: int = 0, limit: int = 20) -> Tuple[Sequence[RenewalRecord], int]:
        with self._lock:
            matching = sorted(
                (record for record in self.renewals if record.user_id == user_id),
                key=lambda record: record.created_at,
                reverse=True,
            )
            return matching[offset : offset + limit], len(matching)

    def get_promo_code(self, code: str) -> Optional[PromoCode]:
        with self._lock:
            return self.promo_codes.get(code)

    def save_promo_code(self, promo_code: PromoCode) -> PromoCode:
        with self._lock:
            self.promo_codes[promo_code.code] = promo_code
            return promo_code

    def increment_promo_usage(self, code: str) -> Optional[PromoCode]:
        with self._lock:
            promo_code = self.promo_codes.get(code)
            if promo_code is None:
                return None
            updated = promo_code.model_copy(update={"used_count": promo_code.used_count + 1})
            self.promo_codes[code] = updated
            return updated


__all__ = ["EntitlementRepository", "InMemoryEntitlementRepository"]
