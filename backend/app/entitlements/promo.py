"""Promo code validation against a live order total."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .errors import PromoCodeInvalidError
from .models import DiscountType, PromoCode, PromoValidation

logger = logging.getLogger("entitlements")

_PROMO_NORMALIZE_PATTERN = re.compile(r"[\s-]+")


def normalize_promo_code(raw_code: str) -> str:
    normalized = raw_code.strip().upper()
    return _PROMO_NORMALIZE_PATTERN.sub("", normalized)


class PromoCodeRepository(Protocol):
    def get_promo_code(self, code: str) -> Optional[PromoCode]:
        ...

    def increment_promo_usage(self, code: str) -> Optional[PromoCode]:
        ...


def compute_discount(promo_code: PromoCode, order_amount: int) -> int:
    """Discount in minor units, never more than the order itself."""

    if promo_code.discount_type == DiscountType.FLAT:
        discount = promo_code.discount_value
    else:
        discount = order_amount * promo_code.discount_value // 100
    if promo_code.max_discount_amount is not None:
        discount = min(discount, promo_code.max_discount_amount)
    return max(0, min(discount, order_amount))


class PromoCodeEngine:
    """Stateless validator; every call reads the code and the total afresh."""

    def __init__(
        self,
        repository: PromoCodeRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def validate(self, code: str, order_amount: int) -> PromoValidation:
        normalized = normalize_promo_code(code or "")
        if not normalized:
            raise PromoCodeInvalidError("Enter a promo code.", detail={"reason": "empty"})
        if order_amount <= 0:
            raise PromoCodeInvalidError(
                "Promo codes apply only to orders with a positive total.",
                detail={"reason": "invalid_amount", "code": normalized},
            )

        promo_code = self._repository.get_promo_code(normalized)
        if promo_code is None:
            raise PromoCodeInvalidError("Invalid promo code.", detail={"reason": "not_found", "code": normalized})
        self._check_usable(promo_code)

        if order_amount < promo_code.min_order_amount:
            raise PromoCodeInvalidError(
                "Order total is below the minimum for this promo code.",
                detail={
                    "reason": "minimum_order",
                    "code": normalized,
                    "min_order_amount": promo_code.min_order_amount,
                },
            )

        discount = compute_discount(promo_code, order_amount)
        return PromoValidation(
            code=normalized,
            order_amount=order_amount,
            discount=discount,
            final_amount=max(0, order_amount - discount),
        )

    def redeem(self, code: str) -> Optional[PromoCode]:
        """Count a confirmed use of ``code``."""

        normalized = normalize_promo_code(code)
        updated = self._repository.increment_promo_usage(normalized)
        if updated is None:
            logger.warning("Redeemed unknown promo code %s", normalized)
        return updated

    def _check_usable(self, promo_code: PromoCode) -> None:
        now = self._clock()
        if not promo_code.is_active:
            raise PromoCodeInvalidError(
                "This promo code is no longer active.",
                detail={"reason": "inactive", "code": promo_code.code},
            )
        if promo_code.valid_from is not None and now < promo_code.valid_from:
            raise PromoCodeInvalidError(
                "This promo code is not active yet.",
                detail={"reason": "not_started", "code": promo_code.code},
            )
        if promo_code.valid_until is not None and now > promo_code.valid_until:
            raise PromoCodeInvalidError(
                "This promo code has expired.",
                detail={"reason": "expired", "code": promo_code.code},
            )
        if promo_code.max_uses is not None and promo_code.used_count >= promo_code.max_uses:
            raise PromoCodeInvalidError(
                "This promo code has reached its usage limit.",
                detail={"reason": "usage_exhausted", "code": promo_code.code},
            )


__all__ = ["PromoCodeEngine", "PromoCodeRepository", "compute_discount", "normalize_promo_code"]
