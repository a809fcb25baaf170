"""Core service coordinating checkout payments and billing events with external providers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol
from uuid import uuid4

from ..entitlements.catalog import Catalog
from ..entitlements.config import EntitlementConfig
from ..entitlements.errors import (
    ConflictError,
    PaymentDeclinedError,
    ValidationError,
    map_decline_reason,
)
from ..entitlements.ledger import CreditLedger
from ..entitlements.models import CreditClass, LedgerReason, MembershipSnapshot
from ..entitlements.promo import PromoCodeEngine
from ..entitlements.scenarios import CheckoutRequest, CheckoutScenario, CheckoutScenarioResolver
from ..entitlements.state_machine import MembershipStateMachine
from ..entitlements.store import EntitlementRepository
from ..feature_gates.context import MembershipAccess
from ..feature_gates.enforcement import require_active_membership, require_unlocked
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingWebhookEvent,
    BillingWebhookEventType,
    CheckoutReceipt,
    ConfirmationStatus,
    PaymentConfirmation,
    PaymentFailure,
    PaymentIntent,
    PaymentIntentStatus,
    PortalSession,
    RenewalSweepResult,
)

logger = logging.getLogger("billing")

_SUBSCRIPTION_CYCLE = "subscription_cycle"


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, object]:
        """Create a provider payment intent and return its id and client secret."""

    def confirm_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        """Confirm a payment intent; ``status`` is ``succeeded`` or carries a ``decline_code``."""

    def refund_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        """Refund a confirmed payment intent in full."""

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        """Create a provider managed billing portal session."""


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        ...

    def notify_payment_succeeded(self, intent: PaymentIntent) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing service."""

    def save_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        ...

    def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        ...

    def claim_confirmation(self, idempotency_key: str, intent_id: str) -> bool:
        """Insert a processing confirmation; ``False`` when the key already exists."""

    def get_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        ...

    def complete_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        ...

    def release_confirmation(self, idempotency_key: str) -> None:
        ...

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        ...

    def forget_webhook_event(self, event_id: str) -> None:
        """Drop a recorded event so a redelivery is applied again."""


@dataclass(slots=True)
class BillingService:
    """Coordinates payment intents, confirmations and provider webhooks."""

    repository: BillingRepository
    provider: PaymentProvider
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    memberships: MembershipStateMachine
    ledger: CreditLedger
    resolver: CheckoutScenarioResolver
    catalog: Catalog
    promo_engine: PromoCodeEngine
    entitlements: EntitlementRepository
    config: EntitlementConfig = field(default_factory=EntitlementConfig)
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def create_payment_intent(self, *, customer_id: str, request: CheckoutRequest) -> PaymentIntent:
        if request.is_guest and not self.config.allow_guest_checkout:
            raise ValidationError("Guest checkout is disabled. Sign in to continue.")

        snapshot = None if request.is_guest else self.memberships.snapshot(customer_id)
        resolution = self.resolver.resolve(request, snapshot)
        if resolution.requires_plan_selection or (
            resolution.plan is None and resolution.scenario != CheckoutScenario.BOOST_ONLY
        ):
            raise ValidationError(
                "Select a membership plan before paying.",
                detail={"scenario": resolution.scenario.value},
            )
        if snapshot is not None:
            self._check_purchase_allowed(customer_id, resolution.scenario, snapshot)

        now = self._now()
        intent = PaymentIntent(
            intent_id=f"pi_{uuid4().hex}",
            customer_id=customer_id,
            is_guest=request.is_guest,
            scenario=resolution.scenario,
            plan_id=resolution.plan.id if resolution.plan else None,
            boost_pack_id=resolution.boost_pack.id if resolution.boost_pack else None,
            promo_code=resolution.pricing.promo_code,
            original_total=resolution.pricing.original_total,
            discount=resolution.pricing.discount,
            final_total=resolution.pricing.final_total,
            currency=self.config.currency,
            return_to_draw_id=resolution.return_to_draw_id,
            created_at=now,
            updated_at=now,
        )

        if intent.requires_provider:
            provider_intent = self.provider.create_payment_intent(
                amount=intent.final_total,
                currency=intent.currency,
                customer_id=customer_id,
                metadata={"payment_intent_id": intent.intent_id, "scenario": intent.scenario.value},
            )
            intent = intent.model_copy(
                update={
                    "provider_intent_id": provider_intent.get("id"),
                    "client_secret": provider_intent.get("client_secret"),
                }
            )

        stored = self.repository.save_payment_intent(intent)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_INTENT_CREATED,
                customer_id=customer_id,
                intent_id=stored.intent_id,
                metadata={"scenario": stored.scenario.value, "final_total": str(stored.final_total)},
            )
        )
        return stored

    def confirm_payment(self, *, intent_id: str, customer_id: str, idempotency_key: str) -> CheckoutReceipt:
        """Confirm a payment intent at most once per idempotency key.

        The key is claimed before the provider is called. A decline releases
        the key so the same request can be retried. A failure while applying
        the purchase refunds the charge, marks the intent failed and releases
        the key as well.
        """

        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationError("An idempotency key is required to confirm a payment.")

        intent = self.repository.get_payment_intent(intent_id)
        if intent is None or intent.customer_id != customer_id:
            raise LookupError("Payment intent not found")

        existing = self.repository.get_confirmation(key)
        if existing is not None:
            return self._replay(existing, intent)
        if intent.status == PaymentIntentStatus.SUCCEEDED:
            return self._receipt(intent, replayed=True)
        if intent.status == PaymentIntentStatus.CANCELED:
            raise ValidationError("This payment intent was cancelled.", detail={"intent_id": intent_id})
        # Membership state may have moved since the intent was priced; never charge first.
        live = self.memberships.snapshot(customer_id)
        if not intent.is_guest:
            self._check_purchase_allowed(customer_id, intent.scenario, live)
        self._check_scenario_current(intent, live)

        if not self.repository.claim_confirmation(key, intent_id):
            return self._replay(self.repository.get_confirmation(key), intent)

        try:
            self._charge(intent)
        except Exception:
            self.repository.release_confirmation(key)
            raise
        try:
            snapshot = self._fulfil(intent)
        except Exception:
            self._refund(intent)
            self.repository.release_confirmation(key)
            raise

        succeeded = self.repository.save_payment_intent(
            intent.model_copy(
                update={"status": PaymentIntentStatus.SUCCEEDED, "failure_reason": None, "updated_at": self._now()}
            )
        )
        self.repository.complete_confirmation(key)
        if succeeded.promo_code:
            self.promo_engine.redeem(succeeded.promo_code)

        self.notifier.notify_payment_succeeded(succeeded)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_SUCCEEDED,
                customer_id=customer_id,
                intent_id=succeeded.intent_id,
                metadata={"scenario": succeeded.scenario.value, "amount": str(succeeded.final_total)},
            )
        )
        logger.info(
            "Confirmed payment intent %s customer=%s scenario=%s amount=%s",
            succeeded.intent_id,
            customer_id,
            succeeded.scenario.value,
            succeeded.final_total,
        )
        return CheckoutReceipt(intent=succeeded, snapshot=snapshot)

    def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        session = self.provider.create_billing_portal_session(customer_id=customer_id, return_url=return_url)
        url = session.get("url")
        if not url:
            raise RuntimeError("Billing provider did not return a portal URL")
        return PortalSession(url=str(url), expires_at=_parse_optional_datetime(session.get("expires_at")))

    def handle_webhook(self, event: BillingWebhookEvent) -> bool:
        """Apply a provider event once. Returns ``False`` for replays."""

        stored = self.repository.record_webhook_event(event)
        if not stored:
            logger.info("Ignoring replayed webhook event %s", event.event_id)
            return False

        try:
            if event.event_type == BillingWebhookEventType.INVOICE_PAYMENT_FAILED:
                self._handle_payment_failed(event)
            elif event.event_type == BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED:
                self._handle_payment_succeeded(event)
        except Exception:
            # An event stays recorded only once it has been applied.
            self.repository.forget_webhook_event(event.event_id)
            logger.warning("Webhook event %s was not applied; awaiting redelivery", event.event_id)
            raise
        return True

    def run_renewal_sweep(self, now: Optional[datetime] = None) -> RenewalSweepResult:
        now = now or self._now()
        resumed = self.memberships.expire_pauses(now)
        if resumed:
            logger.info("Renewal sweep resumed %s paused memberships", len(resumed))
        return RenewalSweepResult(resumed_user_ids=tuple(resumed), ran_at=now)

    def _check_purchase_allowed(
        self,
        customer_id: str,
        scenario: CheckoutScenario,
        snapshot: MembershipSnapshot,
    ) -> None:
        if snapshot.is_locked:
            require_unlocked(self.entitlements.get_user(customer_id))
        if scenario == CheckoutScenario.BOOST_ONLY:
            require_active_membership(MembershipAccess.from_snapshot(snapshot), action="buy_boost_pack")

    def _check_scenario_current(self, intent: PaymentIntent, snapshot: MembershipSnapshot) -> None:
        """Re-resolve the intent against live membership state.

        Two intents priced from the same state (say two new memberships)
        must not both be charged, so the second is rejected here.
        """

        request = CheckoutRequest(
            plan_id=intent.plan_id,
            boost_pack_id=intent.boost_pack_id,
            is_guest=intent.is_guest,
        )
        stale_detail = {"intent_id": intent.intent_id, "scenario": intent.scenario.value}
        try:
            current = self.resolver.resolve(request, snapshot).scenario
        except ValidationError as exc:
            raise ConflictError(
                "This checkout no longer matches your membership. Start a new checkout.",
                detail={**stale_detail, "reason": exc.message},
            ) from exc
        if current != intent.scenario:
            raise ConflictError(
                "This checkout no longer matches your membership. Start a new checkout.",
                detail={**stale_detail, "current_scenario": current.value},
            )

    def _charge(self, intent: PaymentIntent) -> None:
        if not intent.requires_provider:
            return
        if not intent.provider_intent_id:
            raise RuntimeError(f"Payment intent {intent.intent_id} has no provider reference")

        result = self.provider.confirm_payment_intent(intent.provider_intent_id)
        if result.get("status") == "succeeded":
            return

        error = PaymentDeclinedError.from_provider_code(_optional_str(result.get("decline_code")))
        self.repository.save_payment_intent(
            intent.model_copy(
                update={
                    "status": PaymentIntentStatus.FAILED,
                    "failure_reason": error.reason.value,
                    "updated_at": self._now(),
                }
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_DECLINED,
                customer_id=intent.customer_id,
                intent_id=intent.intent_id,
                metadata={"reason": error.reason.value},
            )
        )
        logger.warning("Payment intent %s declined: %s", intent.intent_id, error.reason.value)
        raise error

    def _refund(self, intent: PaymentIntent) -> None:
        """Return a captured charge whose purchase could not be applied."""

        logger.error("Applying payment intent %s failed; refunding the charge", intent.intent_id)
        if intent.requires_provider and intent.provider_intent_id:
            self.provider.refund_payment_intent(intent.provider_intent_id)
        self.repository.save_payment_intent(
            intent.model_copy(
                update={
                    "status": PaymentIntentStatus.FAILED,
                    "failure_reason": "fulfilment_failed",
                    "updated_at": self._now(),
                }
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_REFUNDED,
                customer_id=intent.customer_id,
                intent_id=intent.intent_id,
                metadata={"amount": str(intent.final_total)},
            )
        )

    def _fulfil(self, intent: PaymentIntent) -> MembershipSnapshot:
        customer_id = intent.customer_id
        with self.entitlements.transaction():
            if intent.scenario == CheckoutScenario.PLAN_CHANGE:
                return self.memberships.request_plan_change(customer_id, intent.plan_id)

            if intent.scenario in {
                CheckoutScenario.NEW_MEMBERSHIP,
                CheckoutScenario.MEMBERSHIP_PLUS_BOOST,
                CheckoutScenario.REACTIVATION,
            }:
                self.memberships.subscribe(customer_id, intent.plan_id, reference_id=intent.intent_id)
            else:
                snapshot = self.memberships.snapshot(customer_id)
                require_unlocked(self.entitlements.get_user(customer_id))
                require_active_membership(MembershipAccess.from_snapshot(snapshot), action="buy_boost_pack")

            if intent.boost_pack_id:
                pack = self.catalog.get_boost_pack(intent.boost_pack_id)
                self.ledger.grant(
                    customer_id,
                    CreditClass.BOOST,
                    pack.credits,
                    LedgerReason.BOOST_PURCHASE,
                    reference_id=intent.intent_id,
                )
                self.event_logger.log(
                    BillingAuditEvent(
                        event_type=BillingAuditEventType.BOOST_PACK_PURCHASED,
                        customer_id=customer_id,
                        intent_id=intent.intent_id,
                        metadata={"boost_pack_id": pack.id, "credits": str(pack.credits)},
                    )
                )
            return self.memberships.snapshot(customer_id)

    def _replay(self, confirmation: Optional[PaymentConfirmation], intent: PaymentIntent) -> CheckoutReceipt:
        if confirmation is None:
            raise ConflictError("This payment is already being confirmed.")
        if confirmation.intent_id != intent.intent_id:
            raise ConflictError(
                "This idempotency key was already used for another payment.",
                detail={"intent_id": confirmation.intent_id},
            )
        if confirmation.status != ConfirmationStatus.COMPLETED:
            raise ConflictError("This payment is already being confirmed.", detail={"intent_id": intent.intent_id})
        return self._receipt(intent, replayed=True)

    def _receipt(self, intent: PaymentIntent, *, replayed: bool) -> CheckoutReceipt:
        snapshot = None if intent.is_guest else self.memberships.snapshot(intent.customer_id)
        return CheckoutReceipt(intent=intent, snapshot=snapshot, replayed=replayed)

    def _handle_payment_failed(self, event: BillingWebhookEvent) -> None:
        invoice = _invoice_payload(event)
        user_id = str(invoice["user_id"])
        reason = map_decline_reason(_optional_str(invoice.get("decline_code")))
        amount = _optional_int(invoice.get("amount_due"))

        snapshot = self.memberships.payment_fail(user_id, amount=amount, failure_reason=reason.value)
        membership = snapshot.membership
        failure = PaymentFailure(
            user_id=user_id,
            plan_id=membership.plan_id if membership else None,
            amount_due=amount or 0,
            currency=str(invoice.get("currency") or self.config.currency),
            reason=reason.value,
            occurred_at=self._now(),
            grace_period_expires_at=membership.grace_period_expires_at if membership else None,
        )
        self.notifier.notify_payment_failure(failure)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                customer_id=user_id,
                metadata={"event_id": event.event_id, "reason": reason.value},
            )
        )

    def _handle_payment_succeeded(self, event: BillingWebhookEvent) -> None:
        invoice = _invoice_payload(event)
        user_id = str(invoice["user_id"])
        amount = _optional_int(invoice.get("amount_paid"))
        membership = self.memberships.get_membership(user_id)
        if membership is None:
            raise LookupError(f"No membership for invoice user {user_id}")

        if membership.is_payment_blocked:
            self.memberships.payment_recover(user_id, amount=amount, reference_id=event.event_id)
            audit_type = BillingAuditEventType.PAYMENT_RECOVERED
        elif invoice.get("billing_reason") == _SUBSCRIPTION_CYCLE:
            period_end = membership.current_period_end
            if period_end is not None and period_end > self._now():
                raise ConflictError(
                    "The billing period has not ended yet. Deliver this renewal again later.",
                    detail={"event_id": event.event_id, "current_period_end": period_end.isoformat()},
                )
            self.memberships.renew(user_id, amount=amount, reference_id=event.event_id)
            audit_type = BillingAuditEventType.RENEWAL_SUCCEEDED
        else:
            logger.info("Invoice %s needs no membership change for user=%s", event.event_id, user_id)
            return

        self.event_logger.log(
            BillingAuditEvent(
                event_type=audit_type,
                customer_id=user_id,
                metadata={"event_id": event.event_id},
            )
        )


def _invoice_payload(event: BillingWebhookEvent) -> Dict[str, object]:
    payload = event.payload.get("invoice")
    if not isinstance(payload, dict):
        raise ValueError("invoice payload missing from webhook")
    if not payload.get("user_id"):
        raise ValueError("user_id missing from invoice payload")
    return payload


def _optional_str(value: object) -> Optional[str]:
    return str(value) if value else None


def _optional_int(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")
