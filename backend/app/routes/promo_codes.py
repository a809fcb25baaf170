"""API routes for promo code validation."""
from __future__ import annotations

from fastapi import APIRouter

from ..entitlements.errors import PromoCodeInvalidError
from ..schemas.promo_codes import PromoCodeValidateRequest, PromoCodeValidateResponse
from ..services.entitlements import get_promo_engine

router = APIRouter(prefix="/api/promo-codes", tags=["promo-codes"])


@router.post("/validate", response_model=PromoCodeValidateResponse)
def validate_promo_code(payload: PromoCodeValidateRequest) -> PromoCodeValidateResponse:
    try:
        validation = get_promo_engine().validate(payload.code, payload.order_amount)
    except PromoCodeInvalidError as exc:
        raise exc.to_http_exception() from exc
    return PromoCodeValidateResponse.from_validation(validation)
