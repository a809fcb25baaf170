"""Lifecycle transitions for the single membership held by each user."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from ..feature_gates.enforcement import require_unlocked
from .catalog import Catalog, is_plan_upgrade
from .config import EntitlementConfig
from .errors import (
    ConflictError,
    EntitlementError,
    MembershipRequiredError,
    MembershipTransitionError,
    PendingChangeError,
    ValidationError,
)
from .ledger import CreditLedger
from .models import (
    CreditClass,
    LedgerReason,
    Membership,
    MembershipEvent,
    MembershipEventType,
    MembershipSnapshot,
    MembershipStatus,
    PendingChangeKind,
    Plan,
    RenewalRecord,
    RenewalStatus,
)
from .store import EntitlementRepository

logger = logging.getLogger("entitlements")

Mutation = Callable[[Membership, datetime], Tuple[Membership, Optional[MembershipEvent]]]

_CLEARED_PAUSE = {"is_paused": False, "paused_at": None, "pause_expires_at": None}
_CLEARED_PENDING = {"pending_upgrade_plan_id": None, "pending_downgrade_plan_id": None}


class MembershipEventLogger(Protocol):
    """Captures structured membership audit events."""

    def log(self, event: MembershipEvent) -> None:
        ...


class MembershipStateMachine:
    """Owns every write to a membership record.

    Transitions on an existing membership claim the ``is_processing_change``
    flag before reading the record they mutate and release it in the same
    transaction that commits the new state. A request that finds the flag
    already set fails with ``ConcurrentChangeError`` instead of waiting.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        catalog: Catalog,
        ledger: CreditLedger,
        event_logger: MembershipEventLogger,
        *,
        config: Optional[EntitlementConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._ledger = ledger
        self._event_logger = event_logger
        self._config = config or EntitlementConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_membership(self, user_id: str) -> Optional[Membership]:
        """Return the membership, resuming it first if its pause has lapsed."""

        membership = self._repository.get_membership(user_id)
        if membership is None:
            return None
        if self._pause_lapsed(membership, self._clock()) and not membership.is_processing_change:
            self._resume_lapsed_pause(user_id)
            membership = self._repository.get_membership(user_id)
        return membership

    def snapshot(self, user_id: str) -> MembershipSnapshot:
        membership = self.get_membership(user_id)
        account = self._repository.get_user(user_id)
        plan = self._catalog.find_plan(membership.plan_id) if membership else None
        pending_plan = self._catalog.find_plan(membership.pending_plan_id) if membership else None
        return MembershipSnapshot(
            membership=membership,
            plan=plan,
            pending_plan=pending_plan,
            balance=self._ledger.balance(user_id),
            is_locked=bool(account and account.is_locked),
            taken_at=self._clock(),
        )

    def list_renewals(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[Sequence[RenewalRecord], int]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive.", detail={"page": page, "limit": limit})
        return self._repository.list_renewals(user_id, offset=(page - 1) * limit, limit=limit)

    # ------------------------------------------------------------------
    # Starting a membership
    # ------------------------------------------------------------------
    def subscribe(self, user_id: str, plan_id: str, *, reference_id: Optional[str] = None) -> MembershipSnapshot:
        """Start a membership after its first payment succeeded.

        A user whose previous membership was cancelled or has lapsed is
        reactivated instead.
        """

        existing = self._repository.get_membership(user_id)
        if existing is not None:
            return self.reactivate(user_id, plan_id, reference_id=reference_id)
        plan = self._catalog.get_plan(plan_id)
        require_unlocked(self._repository.get_user(user_id))
        return self._start(user_id, plan, MembershipEventType.SUBSCRIBED, reference_id=reference_id)

    def reactivate(
        self,
        user_id: str,
        plan_id: Optional[str] = None,
        *,
        reference_id: Optional[str] = None,
    ) -> MembershipSnapshot:
        """Replace a cancelled or lapsed membership with a fresh one.

        Without ``plan_id`` the previous plan is used. Stale pending changes
        from the old record are discarded.
        """

        existing = self.get_membership(user_id)
        if existing is None:
            raise MembershipRequiredError(
                "There is no previous membership to reactivate.",
                detail={"reason": "no_membership"},
            )
        now = self._clock()
        if existing.status != MembershipStatus.CANCELED and not existing.is_expired(now):
            raise ValidationError(
                "You already hold a membership.",
                detail={"membership_status": existing.status.value, "plan_id": existing.plan_id},
            )
        plan = self._catalog.get_plan(plan_id or existing.plan_id)
        require_unlocked(self._repository.get_user(user_id))
        return self._start(
            user_id,
            plan,
            MembershipEventType.REACTIVATED,
            reference_id=reference_id,
            previous=existing,
        )

    def _start(
        self,
        user_id: str,
        plan: Plan,
        event_type: MembershipEventType,
        *,
        reference_id: Optional[str],
        previous: Optional[Membership] = None,
    ) -> MembershipSnapshot:
        now = self._clock()
        period_end = now + self._config.billing_period
        with self._repository.transaction():
            if previous is not None:
                # Claiming the flag rejects a start racing another change.
                self._repository.claim_membership_lock(user_id)
            elif self._repository.get_membership(user_id) is not None:
                raise ConflictError("A membership was already started for this account.")
            membership = Membership(
                user_id=user_id,
                plan_id=plan.id,
                status=MembershipStatus.ACTIVE,
                current_period_start=now,
                current_period_end=period_end,
                grand_prize_entries=plan.grand_prize_entries_per_period,
                created_at=previous.created_at if previous else now,
                updated_at=now,
            )
            self._repository.save_membership(membership)
            self._grant_period(user_id, plan, now, period_end, reference_id=reference_id)

        self._event_logger.log(
            MembershipEvent(event_type=event_type, user_id=user_id, plan_id=plan.id, occurred_at=now)
        )
        logger.info("Membership %s user=%s plan=%s", event_type.value, user_id, plan.id)
        return self.snapshot(user_id)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------
    def request_plan_change(self, user_id: str, new_plan_id: str) -> MembershipSnapshot:
        """Schedule an upgrade or downgrade, inferred from the plan ordering."""

        membership = self._require_membership(user_id)
        current = self._catalog.get_plan(membership.plan_id)
        candidate = self._catalog.get_plan(new_plan_id)
        if is_plan_upgrade(current, candidate):
            return self.upgrade(user_id, new_plan_id)
        return self.downgrade(user_id, new_plan_id)

    def upgrade(self, user_id: str, new_plan_id: str) -> MembershipSnapshot:
        return self._schedule_change(user_id, new_plan_id, PendingChangeKind.UPGRADE)

    def downgrade(self, user_id: str, new_plan_id: str) -> MembershipSnapshot:
        return self._schedule_change(user_id, new_plan_id, PendingChangeKind.DOWNGRADE)

    def _schedule_change(self, user_id: str, new_plan_id: str, kind: PendingChangeKind) -> MembershipSnapshot:
        candidate = self._catalog.get_plan(new_plan_id)
        require_unlocked(self._repository.get_user(user_id))

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            self._require_entitled(membership, now, action=kind.value)
            if membership.pending_change is not None:
                raise PendingChangeError(
                    f"A plan {membership.pending_change.value} is already scheduled.",
                    detail={
                        "pending_change": membership.pending_change.value,
                        "pending_plan_id": membership.pending_plan_id,
                    },
                )
            if candidate.id == membership.plan_id:
                raise ValidationError("You are already on this plan.", detail={"plan_id": candidate.id})
            current = self._catalog.get_plan(membership.plan_id)
            if is_plan_upgrade(current, candidate) != (kind == PendingChangeKind.UPGRADE):
                raise ValidationError(
                    f"Moving from {current.name} to {candidate.name} is not an {kind.value}.",
                    detail={"current_plan_id": current.id, "new_plan_id": candidate.id},
                )

            field = "pending_upgrade_plan_id" if kind == PendingChangeKind.UPGRADE else "pending_downgrade_plan_id"
            event_type = (
                MembershipEventType.UPGRADE_SCHEDULED
                if kind == PendingChangeKind.UPGRADE
                else MembershipEventType.DOWNGRADE_SCHEDULED
            )
            return (
                membership.model_copy(update={field: candidate.id}),
                MembershipEvent(
                    event_type=event_type,
                    user_id=user_id,
                    plan_id=candidate.id,
                    metadata={"previous_plan_id": membership.plan_id},
                    occurred_at=now,
                ),
            )

        return self._transition(user_id, kind.value, mutate)

    def cancel_pending_upgrade(self, user_id: str) -> MembershipSnapshot:
        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if membership.pending_upgrade_plan_id is None:
                raise ValidationError("There is no pending upgrade to cancel.")
            return (
                membership.model_copy(update={"pending_upgrade_plan_id": None}),
                MembershipEvent(
                    event_type=MembershipEventType.UPGRADE_CANCELED,
                    user_id=user_id,
                    plan_id=membership.pending_upgrade_plan_id,
                    occurred_at=now,
                ),
            )

        return self._transition(user_id, "cancel_upgrade", mutate)

    # ------------------------------------------------------------------
    # Pause and resume
    # ------------------------------------------------------------------
    def pause(self, user_id: str) -> MembershipSnapshot:
        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if membership.is_paused:
                raise ValidationError("Your membership is already paused.")
            if membership.is_payment_blocked:
                raise ValidationError(
                    "Settle the outstanding payment before pausing.",
                    detail={"membership_status": membership.status.value},
                )
            self._require_entitled(membership, now, action="pause")
            self._ledger.reset_membership_credits(user_id, reference_id=f"pause:{user_id}")
            expires_at = now + self._config.pause_window
            return (
                membership.model_copy(
                    update={
                        "status": MembershipStatus.PAUSED,
                        "is_paused": True,
                        "paused_at": now,
                        "pause_expires_at": expires_at,
                        **_CLEARED_PENDING,
                    }
                ),
                MembershipEvent(
                    event_type=MembershipEventType.PAUSED,
                    user_id=user_id,
                    plan_id=membership.plan_id,
                    metadata={"pause_expires_at": expires_at.isoformat()},
                    occurred_at=now,
                ),
            )

        return self._transition(user_id, "pause", mutate)

    def resume(self, user_id: str) -> MembershipSnapshot:
        require_unlocked(self._repository.get_user(user_id))

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if not membership.is_paused:
                raise ValidationError("Your membership is not paused.")
            return self._resumed(membership, now, MembershipEventType.RESUMED)

        return self._transition(user_id, "resume", mutate)

    def expire_pauses(self, now: Optional[datetime] = None) -> List[str]:
        """Resume every membership whose pause window has elapsed."""

        now = now or self._clock()
        resumed: List[str] = []
        for membership in self._repository.list_expired_pauses(now):
            if membership.is_processing_change:
                logger.info("Skipping pause expiry for user=%s; change in progress", membership.user_id)
                continue
            if self._resume_lapsed_pause(membership.user_id):
                resumed.append(membership.user_id)
        return resumed

    def _resume_lapsed_pause(self, user_id: str) -> bool:
        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if not self._pause_lapsed(membership, now):
                return membership, None
            return self._resumed(membership, membership.pause_expires_at, MembershipEventType.PAUSE_EXPIRED)

        try:
            self._transition(user_id, "pause_expiry", mutate, check_pause=False)
        except EntitlementError as exc:
            logger.warning("Pause expiry skipped for user=%s: %s", user_id, exc.message)
            return False
        return True

    def _resumed(
        self,
        membership: Membership,
        resumed_at: datetime,
        event_type: MembershipEventType,
    ) -> Tuple[Membership, MembershipEvent]:
        paused_for = resumed_at - membership.paused_at if membership.paused_at else timedelta(0)
        period_end = membership.current_period_end + paused_for if membership.current_period_end else None
        return (
            membership.model_copy(
                update={
                    "status": MembershipStatus.ACTIVE,
                    "current_period_end": period_end,
                    **_CLEARED_PAUSE,
                }
            ),
            MembershipEvent(
                event_type=event_type,
                user_id=membership.user_id,
                plan_id=membership.plan_id,
                occurred_at=resumed_at,
            ),
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel(self, user_id: str) -> MembershipSnapshot:
        """Cancel immediately, stripping credits and draw entries."""

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if membership.status == MembershipStatus.CANCELED:
                raise ValidationError("Your membership is already cancelled.")
            if membership.status not in (MembershipStatus.ACTIVE, MembershipStatus.PAUSED):
                raise ValidationError(
                    "Settle the outstanding payment before cancelling.",
                    detail={"membership_status": membership.status.value},
                )
            invalidated = self._repository.invalidate_draw_entries(user_id, now)
            self._ledger.reset_membership_credits(user_id, reference_id=f"cancel:{user_id}")
            period_end = membership.current_period_end
            return (
                membership.model_copy(
                    update={
                        "status": MembershipStatus.CANCELED,
                        "canceled_at": now,
                        "cancel_at_period_end": period_end is not None and period_end > now,
                        "grand_prize_entries": 0,
                        "grace_period_expires_at": None,
                        **_CLEARED_PAUSE,
                        **_CLEARED_PENDING,
                    }
                ),
                MembershipEvent(
                    event_type=MembershipEventType.CANCELED,
                    user_id=user_id,
                    plan_id=membership.plan_id,
                    metadata={"invalidated_entries": str(invalidated)},
                    occurred_at=now,
                ),
            )

        return self._transition(user_id, "cancel", mutate)

    # ------------------------------------------------------------------
    # Billing driven transitions
    # ------------------------------------------------------------------
    def payment_fail(
        self,
        user_id: str,
        *,
        amount: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> MembershipSnapshot:
        """Record a failed renewal invoice.

        The first failure opens a grace period (``past_due``). A failure
        during the grace period marks the membership ``payment_failed``.
        """

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if membership.status == MembershipStatus.CANCELED:
                raise ValidationError("Cancelled memberships are not billed.")
            if membership.is_payment_blocked:
                status, grace = MembershipStatus.PAYMENT_FAILED, membership.grace_period_expires_at
            else:
                status, grace = MembershipStatus.PAST_DUE, now + self._config.grace_period

            plan = self._catalog.get_plan(membership.plan_id)
            self._repository.append_renewal(
                self._renewal(
                    membership,
                    RenewalStatus.FAILED,
                    amount=plan.price_monthly if amount is None else amount,
                    failure_reason=failure_reason or "payment_failed",
                    now=now,
                )
            )
            return (
                membership.model_copy(
                    update={"status": status, "grace_period_expires_at": grace, **_CLEARED_PAUSE, **_CLEARED_PENDING}
                ),
                MembershipEvent(
                    event_type=MembershipEventType.PAYMENT_FAILED,
                    user_id=user_id,
                    plan_id=membership.plan_id,
                    metadata={"status": status.value, "reason": failure_reason or "payment_failed"},
                    occurred_at=now,
                ),
            )

        return self._transition(user_id, "payment_fail", mutate)

    def payment_recover(
        self,
        user_id: str,
        *,
        amount: Optional[int] = None,
        reference_id: Optional[str] = None,
    ) -> MembershipSnapshot:
        """Reinstate a past-due membership and grant the withheld period."""

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if not membership.is_payment_blocked:
                raise ValidationError(
                    "There is no outstanding payment to recover.",
                    detail={"membership_status": membership.status.value},
                )
            plan = self._catalog.get_plan(membership.plan_id)
            period_end = now + self._config.billing_period
            credits = self._grant_period(user_id, plan, now, period_end, reference_id=reference_id)
            updated = membership.model_copy(
                update={
                    "status": MembershipStatus.ACTIVE,
                    "grace_period_expires_at": None,
                    "current_period_start": now,
                    "current_period_end": period_end,
                    "grand_prize_entries": plan.grand_prize_entries_per_period,
                }
            )
            self._repository.append_renewal(
                self._renewal(
                    updated,
                    RenewalStatus.SUCCEEDED,
                    amount=plan.price_monthly if amount is None else amount,
                    credits_granted=credits,
                    entries_granted=plan.grand_prize_entries_per_period,
                    now=now,
                )
            )
            return updated, MembershipEvent(
                event_type=MembershipEventType.PAYMENT_RECOVERED,
                user_id=user_id,
                plan_id=plan.id,
                occurred_at=now,
            )

        return self._transition(user_id, "payment_recover", mutate)

    def renew(
        self,
        user_id: str,
        *,
        amount: Optional[int] = None,
        reference_id: Optional[str] = None,
    ) -> MembershipSnapshot:
        """Roll an active membership into its next billing period.

        A pending upgrade or downgrade takes effect here. Old-period
        membership credits are zeroed before the new plan's allotment is
        granted; boost credits are untouched.
        """

        def mutate(membership: Membership, now: datetime) -> Tuple[Membership, Optional[MembershipEvent]]:
            if membership.status != MembershipStatus.ACTIVE or membership.is_paused:
                raise ValidationError(
                    "Only active memberships can renew.",
                    detail={"membership_status": membership.status.value},
                )
            if membership.current_period_end is not None and membership.current_period_end > now:
                raise ValidationError(
                    "The current billing period has not ended yet.",
                    detail={"current_period_end": membership.current_period_end.isoformat()},
                )
            previous_plan_id = membership.plan_id
            plan = self._catalog.get_plan(membership.pending_plan_id or membership.plan_id)
            start = membership.current_period_end or now
            if start + self._config.billing_period <= now:
                start = now
            period_end = start + self._config.billing_period
            credits = self._grant_period(user_id, plan, start, period_end, reference_id=reference_id)
            updated = membership.model_copy(
                update={
                    "plan_id": plan.id,
                    "current_period_start": start,
                    "current_period_end": period_end,
                    "grand_prize_entries": plan.grand_prize_entries_per_period,
                    **_CLEARED_PENDING,
                }
            )
            self._repository.append_renewal(
                self._renewal(
                    updated,
                    RenewalStatus.SUCCEEDED,
                    amount=plan.price_monthly if amount is None else amount,
                    credits_granted=credits,
                    entries_granted=plan.grand_prize_entries_per_period,
                    now=now,
                )
            )
            metadata: Dict[str, str] = {}
            if previous_plan_id != plan.id:
                metadata["previous_plan_id"] = previous_plan_id
            return updated, MembershipEvent(
                event_type=MembershipEventType.RENEWED,
                user_id=user_id,
                plan_id=plan.id,
                metadata=metadata,
                occurred_at=now,
            )

        return self._transition(user_id, "renew", mutate)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _transition(
        self,
        user_id: str,
        action: str,
        mutate: Mutation,
        *,
        check_pause: bool = True,
    ) -> MembershipSnapshot:
        if check_pause:
            self.get_membership(user_id)
        self._require_membership(user_id)
        claimed = self._repository.claim_membership_lock(user_id)
        event: Optional[MembershipEvent] = None
        try:
            with self._repository.transaction():
                now = self._clock()
                updated, event = mutate(claimed, now)
                self._repository.save_membership(
                    updated.model_copy(update={"is_processing_change": False, "updated_at": now})
                )
        except EntitlementError:
            self._repository.release_membership_lock(user_id)
            raise
        except Exception as exc:
            logger.exception("Membership %s failed for user=%s", action, user_id)
            self._repository.release_membership_lock(user_id)
            raise MembershipTransitionError(
                "We could not update your membership. Please try again.",
                detail={"action": action},
            ) from exc

        if event is not None:
            self._event_logger.log(event)
            logger.info("Membership %s user=%s plan=%s", event.event_type.value, user_id, event.plan_id)
        return self.snapshot(user_id)

    def _grant_period(
        self,
        user_id: str,
        plan: Plan,
        period_start: datetime,
        period_end: datetime,
        *,
        reference_id: Optional[str],
    ) -> int:
        self._ledger.reset_membership_credits(user_id, reference_id=reference_id)
        if plan.free_credits_per_period > 0:
            self._ledger.grant(
                user_id,
                CreditClass.MEMBERSHIP,
                plan.free_credits_per_period,
                LedgerReason.PERIOD_GRANT,
                period_end=period_end,
                reference_id=reference_id or f"period:{period_start.date().isoformat()}",
            )
        return plan.free_credits_per_period

    def _renewal(
        self,
        membership: Membership,
        status: RenewalStatus,
        *,
        amount: int,
        now: datetime,
        credits_granted: int = 0,
        entries_granted: int = 0,
        failure_reason: Optional[str] = None,
    ) -> RenewalRecord:
        return RenewalRecord(
            renewal_id=f"ren_{uuid4().hex}",
            user_id=membership.user_id,
            plan_id=membership.plan_id,
            status=status,
            amount=amount,
            currency=self._config.currency,
            credits_granted=credits_granted,
            grand_prize_entries_granted=entries_granted,
            period_start=membership.current_period_start,
            period_end=membership.current_period_end,
            failure_reason=failure_reason,
            created_at=now,
        )

    def _require_membership(self, user_id: str) -> Membership:
        membership = self._repository.get_membership(user_id)
        if membership is None:
            raise MembershipRequiredError(
                "You do not have a membership.",
                detail={"reason": "no_membership"},
            )
        return membership

    @staticmethod
    def _require_entitled(membership: Membership, now: datetime, *, action: str) -> None:
        if membership.is_entitled(now):
            return
        raise MembershipRequiredError(
            f"An active membership is required to {action}.",
            detail={"reason": membership.status.value, "action": action},
        )

    @staticmethod
    def _pause_lapsed(membership: Membership, now: datetime) -> bool:
        return (
            membership.is_paused
            and membership.pause_expires_at is not None
            and membership.pause_expires_at <= now
        )


__all__ = ["MembershipEventLogger", "MembershipStateMachine"]
