"""Entitlement engine: catalog, credit ledger, promo codes and checkout.

The membership state machine and the draw entry guard depend on
``feature_gates`` and are imported from their own modules.
"""

from .catalog import DEFAULT_BOOST_PACKS, DEFAULT_PLANS, Catalog, StaticCatalog, default_catalog, is_plan_upgrade
from .config import EntitlementConfig, load_entitlement_config
from .errors import (
    AccountLockedError,
    ConcurrentChangeError,
    ConflictError,
    DeclineReason,
    DrawClosedError,
    DrawSoldOutError,
    EntitlementError,
    InsufficientCreditsError,
    MembershipRequiredError,
    MembershipTransitionError,
    PaymentDeclinedError,
    PendingChangeError,
    PromoCodeInvalidError,
    ValidationError,
    map_decline_reason,
)
from .ledger import CreditLedger, SpendResult
from .models import (
    BoostPack,
    CreditBalance,
    CreditClass,
    CreditLedgerEntry,
    DiscountType,
    Draw,
    DrawEntry,
    DrawState,
    EntrySource,
    LedgerReason,
    Membership,
    MembershipEvent,
    MembershipEventType,
    MembershipSnapshot,
    MembershipStatus,
    PendingChangeKind,
    Plan,
    PlanTier,
    PromoCode,
    PromoValidation,
    RenewalRecord,
    RenewalStatus,
    UserAccount,
)
from .promo import PromoCodeEngine, compute_discount, normalize_promo_code
from .scenarios import (
    CheckoutCart,
    CheckoutNotice,
    CheckoutOrigin,
    CheckoutRequest,
    CheckoutResolution,
    CheckoutScenario,
    CheckoutScenarioResolver,
)
from .store import EntitlementRepository, InMemoryEntitlementRepository

__all__ = [
    "DEFAULT_BOOST_PACKS",
    "DEFAULT_PLANS",
    "Catalog",
    "StaticCatalog",
    "default_catalog",
    "is_plan_upgrade",
    "EntitlementConfig",
    "load_entitlement_config",
    "AccountLockedError",
    "ConcurrentChangeError",
    "ConflictError",
    "DeclineReason",
    "DrawClosedError",
    "DrawSoldOutError",
    "EntitlementError",
    "InsufficientCreditsError",
    "MembershipRequiredError",
    "MembershipTransitionError",
    "PaymentDeclinedError",
    "PendingChangeError",
    "PromoCodeInvalidError",
    "ValidationError",
    "map_decline_reason",
    "CreditLedger",
    "SpendResult",
    "BoostPack",
    "CreditBalance",
    "CreditClass",
    "CreditLedgerEntry",
    "DiscountType",
    "Draw",
    "DrawEntry",
    "DrawState",
    "EntrySource",
    "LedgerReason",
    "Membership",
    "MembershipEvent",
    "MembershipEventType",
    "MembershipSnapshot",
    "MembershipStatus",
    "PendingChangeKind",
    "Plan",
    "PlanTier",
    "PromoCode",
    "PromoValidation",
    "RenewalRecord",
    "RenewalStatus",
    "UserAccount",
    "PromoCodeEngine",
    "compute_discount",
    "normalize_promo_code",
    "CheckoutCart",
    "CheckoutNotice",
    "CheckoutOrigin",
    "CheckoutRequest",
    "CheckoutResolution",
    "CheckoutScenario",
    "CheckoutScenarioResolver",
    "EntitlementRepository",
    "InMemoryEntitlementRepository",
]
