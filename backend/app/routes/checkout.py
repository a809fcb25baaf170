"""API routes for checkout resolution, payments and provider webhooks."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status

from ..billing import BillingWebhookEvent, BillingWebhookEventType
from ..entitlements.errors import EntitlementError
from ..schemas.checkout import (
    BillingWebhookPayload,
    CheckoutReceiptResponse,
    CheckoutResolutionResponse,
    CheckoutResolveRequest,
    ConfirmPaymentRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PortalSessionRequest,
    PortalSessionResponse,
)
from ..services.billing import get_billing_service
from ..services.entitlements import (
    get_checkout_resolver,
    get_entitlement_config,
    get_membership_state_machine,
)
from .dependencies import get_current_user, get_optional_current_user

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


def _customer_id(current_user, guest_email: Optional[str]) -> str:
    if current_user is not None:
        return str(current_user.id)
    if not guest_email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Sign in or provide an email to continue")
    return f"guest:{guest_email.strip().lower()}"


@router.post("/resolve", response_model=CheckoutResolutionResponse)
def resolve_checkout(
    payload: CheckoutResolveRequest,
    *,
    current_user=Depends(get_optional_current_user),
) -> CheckoutResolutionResponse:
    is_guest = current_user is None
    snapshot = None if is_guest else get_membership_state_machine().snapshot(str(current_user.id))
    try:
        resolution = get_checkout_resolver().resolve(payload.to_request(is_guest=is_guest), snapshot)
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResolutionResponse.from_resolution(resolution, currency=get_entitlement_config().currency)


@router.post("/payment-intent", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    payload: PaymentIntentRequest,
    *,
    current_user=Depends(get_optional_current_user),
) -> PaymentIntentResponse:
    customer_id = _customer_id(current_user, payload.guest_email)
    service = get_billing_service()
    try:
        intent = service.create_payment_intent(
            customer_id=customer_id,
            request=payload.to_request(is_guest=current_user is None),
        )
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    return PaymentIntentResponse.from_intent(intent)


@router.post("/confirm", response_model=CheckoutReceiptResponse)
def confirm_payment(
    payload: ConfirmPaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="idempotency-key"),
    *,
    current_user=Depends(get_optional_current_user),
) -> CheckoutReceiptResponse:
    if not idempotency_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="idempotency-key header is required")

    customer_id = _customer_id(current_user, payload.guest_email)
    service = get_billing_service()
    try:
        receipt = service.confirm_payment(
            intent_id=payload.intent_id,
            customer_id=customer_id,
            idempotency_key=idempotency_key,
        )
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CheckoutReceiptResponse.from_receipt(receipt)


@router.post("/portal-session", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user=Depends(get_current_user),
) -> PortalSessionResponse:
    service = get_billing_service()
    session = service.create_portal_session(customer_id=str(current_user.id), return_url=payload.return_url)
    return PortalSessionResponse(url=session.url, expires_at=session.expires_at)


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
def receive_webhook(payload: BillingWebhookPayload) -> Response:
    service = get_billing_service()
    try:
        event = BillingWebhookEvent(
            event_id=payload.id,
            event_type=BillingWebhookEventType(payload.type),
            payload=payload.payload,
            received_at=payload.received_at,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        service.handle_webhook(event)
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
