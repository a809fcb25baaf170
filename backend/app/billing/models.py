"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import MembershipSnapshot
from ..entitlements.scenarios import CheckoutScenario


class PaymentIntentStatus(str, Enum):
    """Lifecycle status for a checkout payment intent."""

    REQUIRES_CONFIRMATION = "requires_confirmation"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ConfirmationStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"


class BillingWebhookEventType(str, Enum):
    """Webhook event types that the application reacts to."""

    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class PaymentIntent(BaseModel):
    """A priced checkout awaiting payment confirmation. Amounts are in minor units."""

    intent_id: str = Field(description="Public identifier shared with the client")
    customer_id: str = Field(description="Authenticated user id or a guest identifier")
    is_guest: bool = False
    scenario: CheckoutScenario
    plan_id: Optional[str] = None
    boost_pack_id: Optional[str] = None
    promo_code: Optional[str] = None
    original_total: int = Field(default=0, ge=0)
    discount: int = Field(default=0, ge=0)
    final_total: int = Field(default=0, ge=0)
    currency: str = Field(default="AUD", min_length=3, max_length=3)
    status: PaymentIntentStatus = PaymentIntentStatus.REQUIRES_CONFIRMATION
    provider_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    return_to_draw_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def requires_provider(self) -> bool:
        return self.final_total > 0


class PaymentConfirmation(BaseModel):
    """Idempotency record claimed before a payment intent is confirmed."""

    idempotency_key: str
    intent_id: str
    status: ConfirmationStatus = ConfirmationStatus.PROCESSING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutReceipt(BaseModel):
    """Return value of a confirmed checkout."""

    intent: PaymentIntent
    snapshot: Optional[MembershipSnapshot] = None
    replayed: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingWebhookEvent(BaseModel):
    """Normalized webhook payload stored for idempotency tracking."""

    event_id: str
    event_type: BillingWebhookEventType
    payload: Dict[str, object]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    PAYMENT_INTENT_CREATED = "payment_intent_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_DECLINED = "payment_declined"
    PAYMENT_REFUNDED = "payment_refunded"
    BOOST_PACK_PURCHASED = "boost_pack_purchased"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    customer_id: Optional[str] = None
    intent_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentFailure(BaseModel):
    """Represents a renewal payment failure that opened or extended a grace period."""

    user_id: str
    plan_id: Optional[str] = None
    amount_due: int = 0
    currency: str = "AUD"
    reason: str = "processing_error"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    grace_period_expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PortalSession(BaseModel):
    """Provider hosted page for updating stored payment methods."""

    url: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RenewalSweepResult(BaseModel):
    """Outcome of a periodic renewal sweep."""

    resumed_user_ids: Tuple[str, ...] = ()
    ran_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
