"""API schemas for membership and credit endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import (
    BoostPack,
    CreditBalance,
    CreditLedgerEntry,
    Membership,
    MembershipSnapshot,
    Plan,
    RenewalRecord,
)
from ..feature_gates.context import MembershipAccess


class CreditBalanceResponse(BaseModel):
    membership_credits: int = Field(alias="membershipCredits")
    boost_credits: int = Field(alias="boostCredits")
    total_credits: int = Field(alias="totalCredits")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "CreditBalanceResponse":
        return cls(
            membership_credits=balance.membership,
            boost_credits=balance.boost,
            total_credits=balance.total,
        )


class MembershipSnapshotResponse(BaseModel):
    """Full authoritative membership state; clients replace, never merge."""

    membership: Optional[Membership] = None
    plan: Optional[Plan] = None
    pending_plan: Optional[Plan] = Field(alias="pendingPlan", default=None)
    credits: CreditBalanceResponse
    has_active_membership: bool = Field(alias="hasActiveMembership")
    has_expired_membership: bool = Field(alias="hasExpiredMembership")
    is_processing_change: bool = Field(alias="isProcessingChange")
    can_buy_boost_pack: bool = Field(alias="canBuyBoostPack")
    can_enter_bonus_draw: bool = Field(alias="canEnterBonusDraw")
    is_locked: bool = Field(alias="isLocked")
    taken_at: datetime = Field(alias="takenAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: MembershipSnapshot) -> "MembershipSnapshotResponse":
        access = MembershipAccess.from_snapshot(snapshot)
        return cls(
            membership=snapshot.membership,
            plan=snapshot.plan,
            pending_plan=snapshot.pending_plan,
            credits=CreditBalanceResponse.from_balance(snapshot.balance),
            has_active_membership=snapshot.has_active_membership,
            has_expired_membership=snapshot.has_expired_membership,
            is_processing_change=snapshot.is_processing_change,
            can_buy_boost_pack=access.can_buy_boost_pack,
            can_enter_bonus_draw=access.can_enter_bonus_draw,
            is_locked=snapshot.is_locked,
            taken_at=snapshot.taken_at,
        )


class PlanListResponse(BaseModel):
    plans: List[Plan]


class BoostPackListResponse(BaseModel):
    boost_packs: List[BoostPack] = Field(alias="boostPacks")

    model_config = ConfigDict(populate_by_name=True)


class PlanChangeRequest(BaseModel):
    new_plan_id: str = Field(alias="newPlanId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class RenewalListResponse(BaseModel):
    renewals: List[RenewalRecord]
    page: int
    limit: int
    total: int


class CreditsResponse(BaseModel):
    credits: CreditBalanceResponse
    history: List[CreditLedgerEntry] = Field(default_factory=list)
