"""Feature gating utilities coordinating membership enforcement."""
from .context import MembershipAccess
from .credits import CreditEvaluation, assert_credits, evaluate_credits
from .enforcement import require_active_membership, require_unlocked

__all__ = [
    "CreditEvaluation",
    "MembershipAccess",
    "assert_credits",
    "evaluate_credits",
    "require_active_membership",
    "require_unlocked",
]
