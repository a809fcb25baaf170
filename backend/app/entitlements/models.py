"""Domain models for memberships, credits, draws and checkout."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Membership tiers, declared lowest first."""

    BASIC = "basic"
    PREMIUM = "premium"
    UNI_ONE = "uni_one"
    UNI_PLUS = "uni_plus"
    UNI_MAX = "uni_max"
    ELITE = "elite"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = tuple(PlanTier)


class MembershipStatus(str, Enum):
    """Lifecycle state for a membership record."""

    ACTIVE = "active"
    PAUSED = "paused"
    PAST_DUE = "past_due"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"


class CreditClass(str, Enum):
    """The two credit pools held by every user."""

    MEMBERSHIP = "membership"
    BOOST = "boost"


class LedgerReason(str, Enum):
    """Why a ledger entry was written."""

    PERIOD_GRANT = "period_grant"
    BOOST_PURCHASE = "boost_purchase"
    DRAW_ENTRY = "draw_entry"
    MEMBERSHIP_RESET = "membership_reset"
    MEMBERSHIP_EXPIRED = "membership_expired"
    ADJUSTMENT = "adjustment"


class EntrySource(str, Enum):
    MEMBERSHIP_CREDIT = "membership_credit"
    BOOST_CREDIT = "boost_credit"


class DrawState(str, Enum):
    OPEN = "open"
    SOLD_OUT = "sold_out"
    CLOSED = "closed"
    CANCELED = "canceled"


class RenewalStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class PendingChangeKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class Plan(BaseModel):
    """Catalog entry for a membership plan. Prices are in minor units."""

    id: str
    name: str
    tier: PlanTier
    price_monthly: int = Field(ge=0)
    free_credits_per_period: int = Field(default=0, ge=0)
    grand_prize_entries_per_period: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class BoostPack(BaseModel):
    """One-off credit pack. Boost credits never expire."""

    id: str
    name: str
    price: int = Field(ge=0)
    credits: int = Field(gt=0)

    model_config = ConfigDict(frozen=True)


class UserAccount(BaseModel):
    """User identity plus the cached projection of the credit ledger."""

    user_id: str
    membership_credits: int = Field(default=0, ge=0)
    boost_credits: int = Field(default=0, ge=0)
    is_locked: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def total_credits(self) -> int:
        return self.membership_credits + self.boost_credits


class CreditBalance(BaseModel):
    membership: int = Field(default=0, ge=0)
    boost: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.membership + self.boost

    def of(self, credit_class: CreditClass) -> int:
        return self.membership if credit_class == CreditClass.MEMBERSHIP else self.boost


class Membership(BaseModel):
    """The single membership record held by a user."""

    user_id: str
    plan_id: str
    status: MembershipStatus = MembershipStatus.ACTIVE
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    is_paused: bool = False
    paused_at: Optional[datetime] = None
    pause_expires_at: Optional[datetime] = None
    pending_upgrade_plan_id: Optional[str] = None
    pending_downgrade_plan_id: Optional[str] = None
    is_processing_change: bool = False
    grand_prize_entries: int = Field(default=0, ge=0)
    grace_period_expires_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _single_pending_change(self) -> "Membership":
        if self.pending_upgrade_plan_id and self.pending_downgrade_plan_id:
            raise ValueError("only one of pending upgrade or pending downgrade may be set")
        if self.pending_plan_id and self.status != MembershipStatus.ACTIVE:
            raise ValueError("pending plan changes require an active membership")
        return self

    @property
    def pending_plan_id(self) -> Optional[str]:
        return self.pending_upgrade_plan_id or self.pending_downgrade_plan_id

    @property
    def pending_change(self) -> Optional[PendingChangeKind]:
        if self.pending_upgrade_plan_id:
            return PendingChangeKind.UPGRADE
        if self.pending_downgrade_plan_id:
            return PendingChangeKind.DOWNGRADE
        return None

    def is_entitled(self, now: datetime) -> bool:
        """Single definition of "active" shared by checkout and draw entry."""

        return (
            self.status == MembershipStatus.ACTIVE
            and not self.is_paused
            and self.current_period_end is not None
            and self.current_period_end > now
        )

    def is_expired(self, now: datetime) -> bool:
        return self.current_period_end is None or self.current_period_end <= now

    @property
    def is_payment_blocked(self) -> bool:
        return self.status in {MembershipStatus.PAST_DUE, MembershipStatus.PAYMENT_FAILED}


class CreditLedgerEntry(BaseModel):
    """Immutable ledger row. ``amount`` is signed."""

    entry_id: str
    user_id: str
    credit_class: CreditClass
    amount: int
    reason: LedgerReason
    balance_after: int = Field(ge=0)
    period_end: Optional[datetime] = None
    reference_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("ledger entries must move a non-zero amount")
        return value


class Draw(BaseModel):
    """A capped giveaway. ``cap == -1`` means unlimited entrants."""

    draw_id: str
    title: str = ""
    cost_per_entry: int = Field(ge=0)
    cap: int = -1
    entrants: int = Field(default=0, ge=0)
    requires_membership: bool = False
    closed_at: datetime
    state: DrawState = DrawState.OPEN

    model_config = ConfigDict(frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.cap == -1

    def is_closed(self, now: datetime) -> bool:
        return self.state in {DrawState.CLOSED, DrawState.CANCELED} or now > self.closed_at

    def is_sold_out(self) -> bool:
        if self.is_unlimited:
            return False
        return self.state == DrawState.SOLD_OUT or self.entrants >= self.cap


class DrawEntry(BaseModel):
    entry_id: str
    user_id: str
    draw_id: str
    credits_spent: int = Field(ge=0)
    source: EntrySource
    order_no: str
    idempotency_key: Optional[str] = None
    is_refunded: bool = False
    invalidated_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def is_valid(self) -> bool:
        return not self.is_refunded and self.invalidated_at is None


class RenewalRecord(BaseModel):
    """Append-only history of billing period renewal attempts."""

    renewal_id: str
    user_id: str
    plan_id: str
    status: RenewalStatus
    amount: int = Field(default=0, ge=0)
    currency: str = "AUD"
    credits_granted: int = 0
    grand_prize_entries_granted: int = 0
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class DiscountType(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


class PromoCode(BaseModel):
    """Discount rule. ``discount_value`` is minor units for flat, percent otherwise."""

    code: str
    discount_type: DiscountType
    discount_value: int = Field(gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    min_order_amount: int = Field(default=0, ge=0)
    max_discount_amount: Optional[int] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, gt=0)
    used_count: int = Field(default=0, ge=0)
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _percentage_bounds(self) -> "PromoCode":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discounts cannot exceed 100")
        return self


class PromoValidation(BaseModel):
    """Outcome of a successful promo code validation."""

    code: str
    order_amount: int
    discount: int
    final_amount: int

    model_config = ConfigDict(frozen=True)


class MembershipEventType(str, Enum):
    """Audit events emitted by the membership state machine."""

    SUBSCRIBED = "subscribed"
    REACTIVATED = "reactivated"
    UPGRADE_SCHEDULED = "upgrade_scheduled"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    UPGRADE_CANCELED = "upgrade_canceled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PAUSE_EXPIRED = "pause_expired"
    CANCELED = "canceled"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"


class MembershipEvent(BaseModel):
    event_type: MembershipEventType
    user_id: str
    plan_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class MembershipSnapshot(BaseModel):
    """Authoritative read model returned after every membership mutation."""

    membership: Optional[Membership] = None
    plan: Optional[Plan] = None
    pending_plan: Optional[Plan] = None
    balance: CreditBalance = Field(default_factory=CreditBalance)
    is_locked: bool = False
    taken_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def has_active_membership(self) -> bool:
        return self.membership is not None and self.membership.is_entitled(self.taken_at)

    @property
    def has_expired_membership(self) -> bool:
        return self.membership is not None and self.membership.is_expired(self.taken_at)

    @property
    def is_processing_change(self) -> bool:
        return bool(self.membership and self.membership.is_processing_change)
