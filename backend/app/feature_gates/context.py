"""Convenience wrapper around a membership snapshot for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..entitlements.models import Membership, MembershipSnapshot, MembershipStatus


@dataclass(frozen=True)
class MembershipAccess:
    """Facade answering "may this user do X right now" questions."""

    membership: Optional[Membership]
    now: datetime
    is_locked: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: MembershipSnapshot) -> "MembershipAccess":
        return cls(membership=snapshot.membership, now=snapshot.taken_at, is_locked=snapshot.is_locked)

    @property
    def has_active_membership(self) -> bool:
        return self.membership is not None and self.membership.is_entitled(self.now)

    @property
    def is_paused(self) -> bool:
        return bool(self.membership and self.membership.is_paused)

    @property
    def is_canceled(self) -> bool:
        return bool(self.membership and self.membership.status == MembershipStatus.CANCELED)

    @property
    def is_payment_blocked(self) -> bool:
        return bool(self.membership and self.membership.is_payment_blocked)

    @property
    def can_buy_boost_pack(self) -> bool:
        return not self.is_locked and self.has_active_membership

    @property
    def can_enter_bonus_draw(self) -> bool:
        return not self.is_locked and self.has_active_membership

    def denial_reason(self) -> Optional[str]:
        """Short machine readable reason why membership access is denied."""

        if self.has_active_membership:
            return None
        if self.membership is None:
            return "no_membership"
        if self.is_canceled:
            return "canceled"
        if self.is_paused:
            return "paused"
        if self.is_payment_blocked:
            return "payment_failed"
        return "expired"
