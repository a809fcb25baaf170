"""Billing domain package providing checkout payments and provider webhooks."""

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
from .service import (
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    BillingService,
    PaymentProvider,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "BillingService",
    "BillingWebhookEvent",
    "BillingWebhookEventType",
    "CheckoutReceipt",
    "ConfirmationStatus",
    "PaymentConfirmation",
    "PaymentFailure",
    "PaymentIntent",
    "PaymentIntentStatus",
    "PaymentProvider",
    "PortalSession",
    "RenewalSweepResult",
]
