"""Plan and boost pack catalog plus the plan ordering rule."""
from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol, Sequence

from .models import BoostPack, Plan, PlanTier


class Catalog(Protocol):
    """Read-only product catalog supplied by the catalog service."""

    def list_plans(self) -> Sequence[Plan]:
        ...

    def list_boost_packs(self) -> Sequence[BoostPack]:
        ...

    def get_plan(self, plan_id: str) -> Plan:
        ...

    def get_boost_pack(self, boost_pack_id: str) -> BoostPack:
        ...

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        ...


class StaticCatalog:
    """Catalog backed by fixed product lists."""

    def __init__(self, plans: Iterable[Plan], boost_packs: Iterable[BoostPack]) -> None:
        self._plans: Dict[str, Plan] = {plan.id: plan for plan in plans}
        self._boost_packs: Dict[str, BoostPack] = {pack.id: pack for pack in boost_packs}

    def list_plans(self) -> Sequence[Plan]:
        return sorted(self._plans.values(), key=lambda plan: (plan.tier.rank, plan.price_monthly))

    def list_boost_packs(self) -> Sequence[BoostPack]:
        return sorted(self._boost_packs.values(), key=lambda pack: pack.price)

    def get_plan(self, plan_id: str) -> Plan:
        try:
            return self._plans[plan_id]
        except KeyError as exc:
            raise LookupError(f"Unknown plan: {plan_id}") from exc

    def get_boost_pack(self, boost_pack_id: str) -> BoostPack:
        try:
            return self._boost_packs[boost_pack_id]
        except KeyError as exc:
            raise LookupError(f"Unknown boost pack: {boost_pack_id}") from exc

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._plans.get(plan_id)


def is_plan_upgrade(current: Plan, candidate: Plan) -> bool:
    """Return whether moving from ``current`` to ``candidate`` is an upgrade.

    Higher tier wins. Within a tier a higher monthly price wins, and at equal
    price more credits per period wins. Everything else is a downgrade.
    """

    if candidate.tier.rank != current.tier.rank:
        return candidate.tier.rank > current.tier.rank
    if candidate.price_monthly != current.price_monthly:
        return candidate.price_monthly > current.price_monthly
    return candidate.free_credits_per_period > current.free_credits_per_period


DEFAULT_PLANS = (
    Plan(
        id="plan_uni_one",
        name="Silver",
        tier=PlanTier.UNI_ONE,
        price_monthly=1000,
        free_credits_per_period=10,
        grand_prize_entries_per_period=1,
    ),
    Plan(
        id="plan_uni_plus",
        name="Gold",
        tier=PlanTier.UNI_PLUS,
        price_monthly=2000,
        free_credits_per_period=25,
        grand_prize_entries_per_period=3,
    ),
    Plan(
        id="plan_uni_max",
        name="Platinum",
        tier=PlanTier.UNI_MAX,
        price_monthly=4000,
        free_credits_per_period=60,
        grand_prize_entries_per_period=8,
    ),
)

DEFAULT_BOOST_PACKS = (
    BoostPack(id="boost_small", name="Boost 10", price=1000, credits=10),
    BoostPack(id="boost_medium", name="Boost 25", price=2000, credits=25),
    BoostPack(id="boost_large", name="Boost 60", price=4000, credits=60),
)


def default_catalog() -> StaticCatalog:
    return StaticCatalog(DEFAULT_PLANS, DEFAULT_BOOST_PACKS)
