"""Application wiring for the entitlement engine."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..entitlements.catalog import StaticCatalog, default_catalog
from ..entitlements.config import EntitlementConfig, load_entitlement_config
from ..entitlements.draws import DrawEntryEligibilityGuard
from ..entitlements.ledger import CreditLedger
from ..entitlements.models import MembershipEvent
from ..entitlements.promo import PromoCodeEngine
from ..entitlements.repository import PostgresEntitlementRepository
from ..entitlements.scenarios import CheckoutScenarioResolver
from ..entitlements.state_machine import MembershipEventLogger, MembershipStateMachine

logger = logging.getLogger("entitlements")


class LoggingMembershipEventLogger(MembershipEventLogger):
    """Event logger forwarding membership audit events to logging."""

    def log(self, event: MembershipEvent) -> None:
        logger.info(
            "Membership event %s user=%s plan=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.plan_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_entitlement_config() -> EntitlementConfig:
    return load_entitlement_config()


@lru_cache(maxsize=1)
def get_catalog() -> StaticCatalog:
    return default_catalog()


@lru_cache(maxsize=1)
def get_entitlement_repository() -> PostgresEntitlementRepository:
    return PostgresEntitlementRepository()


@lru_cache(maxsize=1)
def get_credit_ledger() -> CreditLedger:
    return CreditLedger(get_entitlement_repository())


@lru_cache(maxsize=1)
def get_promo_engine() -> PromoCodeEngine:
    return PromoCodeEngine(get_entitlement_repository())


@lru_cache(maxsize=1)
def get_membership_state_machine() -> MembershipStateMachine:
    return MembershipStateMachine(
        get_entitlement_repository(),
        get_catalog(),
        get_credit_ledger(),
        LoggingMembershipEventLogger(),
        config=get_entitlement_config(),
    )


@lru_cache(maxsize=1)
def get_checkout_resolver() -> CheckoutScenarioResolver:
    return CheckoutScenarioResolver(get_catalog(), get_promo_engine())


@lru_cache(maxsize=1)
def get_draw_entry_guard() -> DrawEntryEligibilityGuard:
    return DrawEntryEligibilityGuard(
        get_entitlement_repository(),
        get_credit_ledger(),
        get_membership_state_machine(),
    )


__all__ = [
    "LoggingMembershipEventLogger",
    "get_catalog",
    "get_checkout_resolver",
    "get_credit_ledger",
    "get_draw_entry_guard",
    "get_entitlement_config",
    "get_entitlement_repository",
    "get_membership_state_machine",
    "get_promo_engine",
]
