"""Helpers for enforcing membership checks on API and service layers."""
from __future__ import annotations

from typing import Optional

from ..entitlements.errors import AccountLockedError, MembershipRequiredError
from ..entitlements.models import UserAccount
from .context import MembershipAccess

_DENIAL_MESSAGES = {
    "no_membership": "An active membership is required.",
    "canceled": "Your membership has been cancelled.",
    "paused": "Your membership is paused. Resume it to continue.",
    "payment_failed": "Your last membership payment failed. Update your payment method to continue.",
    "expired": "Your membership has expired.",
}


def require_active_membership(
    access: MembershipAccess,
    *,
    action: str = "continue",
    message: Optional[str] = None,
) -> None:
    """Ensure the subject holds an entitled membership before proceeding.

    Parameters
    ----------
    access:
        Membership facade evaluated at the time of the request.
    action:
        Short description of the gated action, surfaced in the error detail.
    message:
        Optional human-friendly message. Defaults to one derived from the
        denial reason.
    """

    reason = access.denial_reason()
    if reason is None:
        return
    raise MembershipRequiredError(
        message or _DENIAL_MESSAGES[reason],
        detail={"reason": reason, "action": action},
    )


def require_unlocked(account: Optional[UserAccount]) -> None:
    """Reject accounts flagged for fraud or chargebacks."""

    if account is not None and account.is_locked:
        raise AccountLockedError(
            "This account is locked. Contact support.",
            detail={"user_id": account.user_id},
        )
