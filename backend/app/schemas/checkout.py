"""API schemas for checkout endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..billing import CheckoutReceipt, PaymentIntent
from ..entitlements.models import BoostPack, Plan
from ..entitlements.scenarios import (
    CheckoutNotice,
    CheckoutOrigin,
    CheckoutPricing,
    CheckoutRequest,
    CheckoutResolution,
    CheckoutScenario,
    PlanChangePreview,
)
from .membership import MembershipSnapshotResponse


class CheckoutResolveRequest(BaseModel):
    plan_id: Optional[str] = Field(alias="planId", default=None)
    boost_pack_id: Optional[str] = Field(alias="boostPackId", default=None)
    origin: CheckoutOrigin = CheckoutOrigin.PURCHASE
    draw_id: Optional[str] = Field(alias="drawId", default=None)
    promo_code: Optional[str] = Field(alias="promoCode", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def to_request(self, *, is_guest: bool) -> CheckoutRequest:
        return CheckoutRequest(
            plan_id=self.plan_id,
            boost_pack_id=self.boost_pack_id,
            origin=self.origin,
            draw_id=self.draw_id,
            promo_code=self.promo_code,
            is_guest=is_guest,
        )


class PricingResponse(BaseModel):
    original_total: int = Field(alias="originalTotal")
    discount: int
    final_total: int = Field(alias="finalTotal")
    promo_code: Optional[str] = Field(alias="promoCode", default=None)
    promo_error: Optional[str] = Field(alias="promoError", default=None)
    currency: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_pricing(cls, pricing: CheckoutPricing, *, currency: str) -> "PricingResponse":
        return cls(
            original_total=pricing.original_total,
            discount=pricing.discount,
            final_total=pricing.final_total,
            promo_code=pricing.promo_code,
            promo_error=pricing.promo_error,
            currency=currency,
        )


class CheckoutResolutionResponse(BaseModel):
    scenario: CheckoutScenario
    plan: Optional[Plan] = None
    boost_pack: Optional[BoostPack] = Field(alias="boostPack", default=None)
    requires_plan_selection: bool = Field(alias="requiresPlanSelection")
    notices: List[CheckoutNotice] = Field(default_factory=list)
    pricing: PricingResponse
    plan_change: Optional[PlanChangePreview] = Field(alias="planChange", default=None)
    return_to_draw_id: Optional[str] = Field(alias="returnToDrawId", default=None)
    charges_today: bool = Field(alias="chargesToday")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_resolution(cls, resolution: CheckoutResolution, *, currency: str) -> "CheckoutResolutionResponse":
        return cls(
            scenario=resolution.scenario,
            plan=resolution.plan,
            boost_pack=resolution.boost_pack,
            requires_plan_selection=resolution.requires_plan_selection,
            notices=list(resolution.notices),
            pricing=PricingResponse.from_pricing(resolution.pricing, currency=currency),
            plan_change=resolution.plan_change,
            return_to_draw_id=resolution.return_to_draw_id,
            charges_today=resolution.charges_today,
        )


class PaymentIntentRequest(CheckoutResolveRequest):
    guest_email: Optional[EmailStr] = Field(alias="guestEmail", default=None)


class PaymentIntentResponse(BaseModel):
    intent: PaymentIntent
    client_secret: Optional[str] = Field(alias="clientSecret", default=None)
    requires_payment: bool = Field(alias="requiresPayment")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_intent(cls, intent: PaymentIntent) -> "PaymentIntentResponse":
        return cls(
            intent=intent.model_copy(update={"client_secret": None}),
            client_secret=intent.client_secret,
            requires_payment=intent.requires_provider,
        )


class ConfirmPaymentRequest(BaseModel):
    intent_id: str = Field(alias="intentId", min_length=1)
    guest_email: Optional[EmailStr] = Field(alias="guestEmail", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutReceiptResponse(BaseModel):
    intent: PaymentIntent
    membership: Optional[MembershipSnapshotResponse] = None
    replayed: bool = False
    return_to_draw_id: Optional[str] = Field(alias="returnToDrawId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_receipt(cls, receipt: CheckoutReceipt) -> "CheckoutReceiptResponse":
        return cls(
            intent=receipt.intent.model_copy(update={"client_secret": None}),
            membership=MembershipSnapshotResponse.from_snapshot(receipt.snapshot) if receipt.snapshot else None,
            replayed=receipt.replayed,
            return_to_draw_id=receipt.intent.return_to_draw_id,
        )


class PortalSessionRequest(BaseModel):
    return_url: str = Field(alias="returnUrl")

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)


class BillingWebhookPayload(BaseModel):
    id: str
    type: str
    payload: Dict[str, object]
    received_at: datetime = Field(alias="receivedAt")

    model_config = ConfigDict(populate_by_name=True)
