"""API schemas for promo code validation."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import PromoValidation


class PromoCodeValidateRequest(BaseModel):
    code: str
    order_amount: int = Field(alias="orderAmount")

    model_config = ConfigDict(populate_by_name=True)


class PromoCodeValidateResponse(BaseModel):
    code: str
    order_amount: int = Field(alias="orderAmount")
    discount: int
    final_amount: int = Field(alias="finalAmount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_validation(cls, validation: PromoValidation) -> "PromoCodeValidateResponse":
        return cls(
            code=validation.code,
            order_amount=validation.order_amount,
            discount=validation.discount,
            final_amount=validation.final_amount,
        )
