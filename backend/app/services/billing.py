"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict
from uuid import uuid4

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    BillingService,
    PaymentFailure,
    PaymentIntent,
    PaymentProvider,
)
from ..billing.repository import PostgresBillingRepository
from .entitlements import (
    get_catalog,
    get_checkout_resolver,
    get_credit_ledger,
    get_entitlement_config,
    get_entitlement_repository,
    get_membership_state_machine,
    get_promo_engine,
)


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        logger.warning(
            "Payment failure for user %s plan=%s amount=%s %s reason=%s grace_until=%s",
            failure.user_id,
            failure.plan_id,
            failure.amount_due,
            failure.currency,
            failure.reason,
            failure.grace_period_expires_at,
        )

    def notify_payment_succeeded(self, intent: PaymentIntent) -> None:
        logger.info(
            "Payment received for customer %s intent=%s amount=%s %s",
            intent.customer_id,
            intent.intent_id,
            intent.final_total,
            intent.currency,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s customer=%s intent=%s metadata=%s",
            event.event_type.value,
            event.customer_id,
            event.intent_id,
            event.metadata,
        )


class LocalSandboxPaymentProvider(PaymentProvider):
    """Minimal provider implementation for local development and tests."""

    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, object]:
        intent_id = f"sandbox_pi_{uuid4().hex}"
        return {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_{uuid4().hex[:12]}",
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
        }

    def confirm_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        return {"id": provider_intent_id, "status": "succeeded"}

    def refund_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        return {"id": f"sandbox_re_{uuid4().hex}", "payment_intent": provider_intent_id, "status": "succeeded"}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session_id = f"ps_{uuid4().hex}"
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=15)
        url = f"https://billing.local/portal/{customer_id}"
        return {"id": session_id, "url": url, "expires_at": expires_at, "return_url": return_url}


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    service = BillingService(
        repository=PostgresBillingRepository(),
        provider=LocalSandboxPaymentProvider(),
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        memberships=get_membership_state_machine(),
        ledger=get_credit_ledger(),
        resolver=get_checkout_resolver(),
        catalog=get_catalog(),
        promo_engine=get_promo_engine(),
        entitlements=get_entitlement_repository(),
        config=get_entitlement_config(),
    )
    return service


__all__ = [
    "get_billing_service",
    "LocalSandboxPaymentProvider",
    "LoggingBillingNotifier",
    "LoggingBillingEventLogger",
]
