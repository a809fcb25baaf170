"""Credit sufficiency evaluation for feature gating."""
from __future__ import annotations

from dataclasses import dataclass

from ..entitlements.errors import InsufficientCreditsError
from ..entitlements.models import CreditBalance


@dataclass(frozen=True)
class CreditEvaluation:
    """Outcome of comparing a combined balance against a cost."""

    membership_credits: int
    boost_credits: int
    cost: int
    allowed: bool

    @property
    def total_credits(self) -> int:
        return self.membership_credits + self.boost_credits

    @property
    def shortfall(self) -> int:
        return max(0, self.cost - self.total_credits)

    def to_dict(self) -> dict[str, int | bool]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "membership_credits": self.membership_credits,
            "boost_credits": self.boost_credits,
            "total_credits": self.total_credits,
            "cost": self.cost,
            "shortfall": self.shortfall,
            "allowed": self.allowed,
        }


def evaluate_credits(balance: CreditBalance, cost: int) -> CreditEvaluation:
    """Both pools count towards eligibility."""

    return CreditEvaluation(
        membership_credits=balance.membership,
        boost_credits=balance.boost,
        cost=cost,
        allowed=balance.total >= cost,
    )


def assert_credits(balance: CreditBalance, cost: int) -> CreditEvaluation:
    """Raise when the combined balance cannot cover ``cost``."""

    evaluation = evaluate_credits(balance, cost)
    if not evaluation.allowed:
        raise InsufficientCreditsError(
            "Not enough credits.",
            detail={
                "required": cost,
                "available": evaluation.total_credits,
                "shortfall": evaluation.shortfall,
            },
        )
    return evaluation
