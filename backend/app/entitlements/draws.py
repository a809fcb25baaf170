"""Draw entry eligibility and the atomic debit that records an entry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence
from uuid import uuid4

from ..feature_gates.context import MembershipAccess
from ..feature_gates.credits import assert_credits
from ..feature_gates.enforcement import require_active_membership, require_unlocked
from .errors import (
    ConflictError,
    DrawClosedError,
    DrawSoldOutError,
    MembershipRequiredError,
    ValidationError,
)
from .ledger import CreditLedger
from .models import CreditBalance, Draw, DrawEntry, EntrySource, LedgerReason
from .state_machine import MembershipStateMachine
from .store import EntitlementRepository

logger = logging.getLogger("draws")


def generate_order_no(now: datetime) -> str:
    return f"E{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


@dataclass(frozen=True)
class DrawEntryResult:
    """Accepted entry plus the balance left after paying for it."""

    entry: DrawEntry
    balance: CreditBalance
    replayed: bool = False


class DrawEntryEligibilityGuard:
    """Accepts at most one entry per user per draw.

    Every check and the debit run inside one repository transaction, so a
    rejected or failed entry never leaves credits debited.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        ledger: CreditLedger,
        memberships: MembershipStateMachine,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._memberships = memberships
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def try_enter(self, user_id: str, draw_id: str, idempotency_key: str) -> DrawEntryResult:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("An idempotency key is required to enter a draw.")
        idempotency_key = idempotency_key.strip()

        # Resolve lapsed pauses before the entry transaction takes its locks.
        self._memberships.get_membership(user_id)

        with self._repository.transaction():
            replay = self._repository.find_entry_by_idempotency_key(user_id, idempotency_key)
            if replay is not None:
                if replay.draw_id != draw_id:
                    raise ConflictError(
                        "This idempotency key was already used for another draw.",
                        detail={"draw_id": replay.draw_id},
                    )
                logger.info("Replayed draw entry %s for user=%s", replay.order_no, user_id)
                return DrawEntryResult(entry=replay, balance=self._ledger.balance(user_id), replayed=True)

            now = self._clock()
            require_unlocked(self._repository.get_user(user_id))

            if self._repository.find_active_entry(user_id, draw_id) is not None:
                raise ConflictError("You have already entered this draw.", detail={"draw_id": draw_id})

            draw = self._repository.get_draw(draw_id)
            if draw is None:
                raise LookupError(f"Draw not found: {draw_id}")

            self._check_membership(user_id, draw, now)
            self._check_open(draw, now)
            balance = self._ledger.balance(user_id)
            assert_credits(balance, draw.cost_per_entry)

            membership_spent = 0
            if draw.cost_per_entry > 0:
                spend = self._ledger.spend(
                    user_id,
                    draw.cost_per_entry,
                    reason=LedgerReason.DRAW_ENTRY,
                    reference_id=f"draw:{draw_id}",
                )
                membership_spent = spend.membership_spent
                balance = spend.balance

            entry = self._repository.insert_draw_entry(
                DrawEntry(
                    entry_id=f"ent_{uuid4().hex}",
                    user_id=user_id,
                    draw_id=draw_id,
                    credits_spent=draw.cost_per_entry,
                    source=EntrySource.MEMBERSHIP_CREDIT if membership_spent else EntrySource.BOOST_CREDIT,
                    order_no=generate_order_no(now),
                    idempotency_key=idempotency_key,
                    created_at=now,
                )
            )
            self._repository.increment_draw_entrants(draw_id)

        logger.info(
            "Accepted draw entry %s user=%s draw=%s credits=%s",
            entry.order_no,
            user_id,
            draw_id,
            entry.credits_spent,
        )
        return DrawEntryResult(entry=entry, balance=balance)

    def list_entries(self, user_id: str) -> Sequence[DrawEntry]:
        """Every entry the user has made, newest first, including invalidated ones."""

        return self._repository.list_draw_entries(user_id)

    def _check_membership(self, user_id: str, draw: Draw, now: datetime) -> None:
        membership = self._repository.get_membership(user_id)
        access = MembershipAccess(membership=membership, now=now)
        if draw.requires_membership:
            require_active_membership(access, action="enter_draw")
        elif access.is_payment_blocked:
            raise MembershipRequiredError(
                "Your last membership payment failed. Update your payment method to enter draws.",
                detail={"reason": "payment_failed", "action": "enter_draw"},
            )

    @staticmethod
    def _check_open(draw: Draw, now: datetime) -> None:
        if draw.is_closed(now):
            raise DrawClosedError(
                "This draw is closed.",
                detail={"draw_id": draw.draw_id, "state": draw.state.value},
            )
        if draw.is_sold_out():
            raise DrawSoldOutError(
                "This draw is sold out.",
                detail={"draw_id": draw.draw_id, "cap": draw.cap, "entrants": draw.entrants},
            )


__all__ = ["DrawEntryEligibilityGuard", "DrawEntryResult", "generate_order_no"]
