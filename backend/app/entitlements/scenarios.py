"""Checkout scenario resolution and pricing."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .catalog import Catalog, is_plan_upgrade
from .errors import PromoCodeInvalidError, ValidationError
from .models import BoostPack, Membership, MembershipSnapshot, MembershipStatus, PendingChangeKind, Plan
from .promo import PromoCodeEngine


class CheckoutScenario(str, Enum):
    NEW_MEMBERSHIP = "new_membership"
    MEMBERSHIP_PLUS_BOOST = "membership_plus_boost"
    BOOST_ONLY = "boost_only"
    PLAN_CHANGE = "plan_change"
    REACTIVATION = "reactivation"


class CheckoutOrigin(str, Enum):
    """Where the buyer came from before landing on checkout."""

    PURCHASE = "purchase"
    BOOST_REQUIRES_MEMBERSHIP = "boost_requires_membership"
    DRAW_REQUIRES_MEMBERSHIP = "draw_requires_membership"


class CheckoutNotice(str, Enum):
    """Information surfaced to the buyer before payment."""

    MEMBERSHIP_REQUIRED_FOR_BOOST = "membership_required_for_boost"
    MEMBERSHIP_REQUIRED_FOR_DRAW = "membership_required_for_draw"
    PLAN_SELECTION_REQUIRED = "plan_selection_required"
    PREVIOUS_PLAN_PRESELECTED = "previous_plan_preselected"
    PLAN_CHANGE_SCHEDULED = "plan_change_scheduled"
    NO_CHARGE_TODAY = "no_charge_today"
    PROMO_CODE_CLEARED = "promo_code_cleared"


_GUEST_SCENARIOS = {CheckoutScenario.NEW_MEMBERSHIP, CheckoutScenario.MEMBERSHIP_PLUS_BOOST}


class CheckoutRequest(BaseModel):
    plan_id: Optional[str] = None
    boost_pack_id: Optional[str] = None
    origin: CheckoutOrigin = CheckoutOrigin.PURCHASE
    draw_id: Optional[str] = None
    promo_code: Optional[str] = None
    is_guest: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_draw_redirect(self) -> bool:
        return self.origin == CheckoutOrigin.DRAW_REQUIRES_MEMBERSHIP


class CheckoutPricing(BaseModel):
    original_total: int = 0
    discount: int = 0
    final_total: int = 0
    promo_code: Optional[str] = None
    promo_error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PlanChangePreview(BaseModel):
    """Scheduled plan change details. Proration figures are informational."""

    direction: PendingChangeKind
    current_plan_id: str
    new_plan_id: str
    effective_at: Optional[datetime] = None
    days_remaining: int = 0
    prorated_credit_difference: int = 0

    model_config = ConfigDict(frozen=True)


class CheckoutResolution(BaseModel):
    scenario: CheckoutScenario
    plan: Optional[Plan] = None
    boost_pack: Optional[BoostPack] = None
    requires_plan_selection: bool = False
    notices: Tuple[CheckoutNotice, ...] = ()
    pricing: CheckoutPricing = Field(default_factory=CheckoutPricing)
    plan_change: Optional[PlanChangePreview] = None
    return_to_draw_id: Optional[str] = None
    has_active_membership: bool = False
    has_expired_membership: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def charges_today(self) -> bool:
        return self.scenario != CheckoutScenario.PLAN_CHANGE and self.pricing.final_total > 0


class CheckoutScenarioResolver:
    """Turns a checkout request and a membership snapshot into one purchase flow.

    Resolution never mutates anything. It is safe to call on every cart change,
    and callers must do so: pricing and promo validation are recomputed from
    scratch each time.
    """

    def __init__(
        self,
        catalog: Catalog,
        promo_engine: PromoCodeEngine,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._catalog = catalog
        self._promo_engine = promo_engine
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(
        self,
        request: CheckoutRequest,
        snapshot: Optional[MembershipSnapshot] = None,
    ) -> CheckoutResolution:
        now = self._clock()
        plan = self._lookup_plan(request.plan_id)
        boost_pack = self._lookup_boost_pack(request.boost_pack_id)
        membership = snapshot.membership if snapshot else None
        if request.is_guest and membership is not None:
            raise ValidationError("Guest checkout is not available for existing members.")

        has_active = membership is not None and membership.is_entitled(now)
        has_expired = membership is not None and membership.is_expired(now)
        wants_only_boost = boost_pack is not None and plan is None
        requires_membership_first = wants_only_boost and not has_active

        if plan is None and boost_pack is None and not request.is_draw_redirect:
            raise ValidationError("Select a plan or a boost pack.")

        notices: List[CheckoutNotice] = []
        if request.is_draw_redirect:
            notices.append(CheckoutNotice.MEMBERSHIP_REQUIRED_FOR_DRAW)

        if requires_membership_first:
            if request.origin != CheckoutOrigin.BOOST_REQUIRES_MEMBERSHIP:
                raise ValidationError(
                    "Boost packs require an active membership.",
                    detail={"suggested_scenario": CheckoutScenario.MEMBERSHIP_PLUS_BOOST.value},
                )
            notices.append(CheckoutNotice.MEMBERSHIP_REQUIRED_FOR_BOOST)

        plan_change: Optional[PlanChangePreview] = None
        if has_active:
            scenario, plan, plan_change = self._resolve_for_active_member(membership, plan, boost_pack, now)
            if plan_change is not None:
                notices.extend([CheckoutNotice.PLAN_CHANGE_SCHEDULED, CheckoutNotice.NO_CHARGE_TODAY])
        elif membership is not None and not has_expired and membership.status != MembershipStatus.CANCELED:
            raise ValidationError(
                self._blocked_message(membership),
                detail={"membership_status": membership.status.value},
            )
        elif membership is not None:
            scenario = CheckoutScenario.REACTIVATION
            if plan is None:
                plan = self._catalog.find_plan(membership.plan_id)
                if plan is not None:
                    notices.append(CheckoutNotice.PREVIOUS_PLAN_PRESELECTED)
        else:
            scenario = (
                CheckoutScenario.MEMBERSHIP_PLUS_BOOST
                if boost_pack is not None
                else CheckoutScenario.NEW_MEMBERSHIP
            )

        requires_plan_selection = scenario in {
            CheckoutScenario.NEW_MEMBERSHIP,
            CheckoutScenario.MEMBERSHIP_PLUS_BOOST,
            CheckoutScenario.REACTIVATION,
        } and plan is None
        if requires_plan_selection:
            notices.append(CheckoutNotice.PLAN_SELECTION_REQUIRED)

        if request.is_guest and scenario not in _GUEST_SCENARIOS:
            raise ValidationError("Sign in to change an existing membership.")

        pricing = self._price(scenario, plan, boost_pack, request.promo_code)
        if pricing.promo_error is not None:
            notices.append(CheckoutNotice.PROMO_CODE_CLEARED)

        return CheckoutResolution(
            scenario=scenario,
            plan=plan,
            boost_pack=boost_pack,
            requires_plan_selection=requires_plan_selection,
            notices=tuple(notices),
            pricing=pricing,
            plan_change=plan_change,
            return_to_draw_id=request.draw_id if request.is_draw_redirect else None,
            has_active_membership=has_active,
            has_expired_membership=has_expired,
        )

    def _resolve_for_active_member(
        self,
        membership: Membership,
        plan: Optional[Plan],
        boost_pack: Optional[BoostPack],
        now: datetime,
    ) -> Tuple[CheckoutScenario, Optional[Plan], Optional[PlanChangePreview]]:
        if plan is None or plan.id == membership.plan_id:
            if boost_pack is None:
                raise ValidationError(
                    "You already hold this membership.",
                    detail={"plan_id": membership.plan_id},
                )
            return CheckoutScenario.BOOST_ONLY, None, None

        if boost_pack is not None:
            raise ValidationError("Plan changes cannot be combined with a boost pack purchase.")
        current = self._catalog.get_plan(membership.plan_id)
        return CheckoutScenario.PLAN_CHANGE, plan, self._preview_change(membership, current, plan, now)

    def _preview_change(self, membership: Membership, current: Plan, new: Plan, now: datetime) -> PlanChangePreview:
        direction = PendingChangeKind.UPGRADE if is_plan_upgrade(current, new) else PendingChangeKind.DOWNGRADE
        days_remaining = 0
        prorated = 0
        start, end = membership.current_period_start, membership.current_period_end
        if start is not None and end is not None and end > now:
            day = 24 * 60 * 60
            total_days = math.ceil((end - start).total_seconds() / day)
            days_remaining = math.ceil((end - now).total_seconds() / day)
            if total_days > 0:
                difference = new.free_credits_per_period - current.free_credits_per_period
                prorated = math.floor(difference * days_remaining / total_days)
        return PlanChangePreview(
            direction=direction,
            current_plan_id=current.id,
            new_plan_id=new.id,
            effective_at=end,
            days_remaining=days_remaining,
            prorated_credit_difference=prorated,
        )

    def _price(
        self,
        scenario: CheckoutScenario,
        plan: Optional[Plan],
        boost_pack: Optional[BoostPack],
        promo_code: Optional[str],
    ) -> CheckoutPricing:
        original_total = 0
        if plan is not None and scenario != CheckoutScenario.PLAN_CHANGE:
            original_total += plan.price_monthly
        if boost_pack is not None:
            original_total += boost_pack.price

        if not promo_code:
            return CheckoutPricing(original_total=original_total, final_total=original_total)

        try:
            validation = self._promo_engine.validate(promo_code, original_total)
        except PromoCodeInvalidError as exc:
            return CheckoutPricing(
                original_total=original_total,
                final_total=original_total,
                promo_error=exc.message,
            )
        return CheckoutPricing(
            original_total=original_total,
            discount=validation.discount,
            final_total=max(0, original_total - validation.discount),
            promo_code=validation.code,
        )

    def _lookup_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        try:
            return self._catalog.get_plan(plan_id)
        except LookupError as exc:
            raise ValidationError("Unknown plan.", detail={"plan_id": plan_id}) from exc

    def _lookup_boost_pack(self, boost_pack_id: Optional[str]) -> Optional[BoostPack]:
        if not boost_pack_id:
            return None
        try:
            return self._catalog.get_boost_pack(boost_pack_id)
        except LookupError as exc:
            raise ValidationError("Unknown boost pack.", detail={"boost_pack_id": boost_pack_id}) from exc

    @staticmethod
    def _blocked_message(membership: Membership) -> str:
        if membership.is_paused or membership.status == MembershipStatus.PAUSED:
            return "Resume your paused membership before making a purchase."
        if membership.is_payment_blocked:
            return "Update your payment method to settle the outstanding membership invoice."
        return "Your membership cannot be changed right now."


class CheckoutCart:
    """Mutable checkout selection that re-resolves after every change.

    A promo code that no longer validates against the new total is dropped
    from the cart, never carried over.
    """

    def __init__(
        self,
        resolver: CheckoutScenarioResolver,
        request: CheckoutRequest,
        snapshot: Optional[MembershipSnapshot] = None,
    ) -> None:
        self._resolver = resolver
        self._snapshot = snapshot
        self._request = request
        self.resolution = self._resolve(request)

    @property
    def request(self) -> CheckoutRequest:
        return self._request

    def select_plan(self, plan_id: Optional[str]) -> CheckoutResolution:
        return self._update(plan_id=plan_id)

    def select_boost_pack(self, boost_pack_id: Optional[str]) -> CheckoutResolution:
        return self._update(boost_pack_id=boost_pack_id)

    def remove_boost_pack(self) -> CheckoutResolution:
        return self._update(boost_pack_id=None)

    def apply_promo_code(self, code: str) -> CheckoutResolution:
        resolution = self._update(promo_code=code)
        if resolution.pricing.promo_error is not None:
            raise PromoCodeInvalidError(resolution.pricing.promo_error, detail={"code": code})
        return resolution

    def remove_promo_code(self) -> CheckoutResolution:
        return self._update(promo_code=None)

    def _update(self, **changes: object) -> CheckoutResolution:
        self._request = self._request.model_copy(update=changes)
        self.resolution = self._resolve(self._request)
        return self.resolution

    def _resolve(self, request: CheckoutRequest) -> CheckoutResolution:
        resolution = self._resolver.resolve(request, self._snapshot)
        if request.promo_code and resolution.pricing.promo_code is None:
            self._request = request.model_copy(update={"promo_code": None})
        elif resolution.pricing.promo_code is not None:
            self._request = request.model_copy(update={"promo_code": resolution.pricing.promo_code})
        else:
            self._request = request
        return resolution


__all__ = [
    "CheckoutCart",
    "CheckoutNotice",
    "CheckoutOrigin",
    "CheckoutPricing",
    "CheckoutRequest",
    "CheckoutResolution",
    "CheckoutScenario",
    "CheckoutScenarioResolver",
    "PlanChangePreview",
]
