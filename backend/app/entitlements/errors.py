"""Error taxonomy surfaced by the entitlement engine."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class EntitlementError(Exception):
    """Expected, user-recoverable failure surfaced verbatim to API callers."""

    message: str
    detail: Optional[Mapping[str, Any]] = None

    code: ClassVar[str] = "entitlement_error"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ValidationError(EntitlementError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class AccountLockedError(EntitlementError):
    code = "account_locked"
    status_code = status.HTTP_403_FORBIDDEN


class MembershipRequiredError(EntitlementError):
    code = "membership_required"
    status_code = status.HTTP_403_FORBIDDEN


class PendingChangeError(EntitlementError):
    code = "pending_change"
    status_code = status.HTTP_409_CONFLICT


class ConcurrentChangeError(EntitlementError):
    code = "concurrent_change"
    status_code = status.HTTP_409_CONFLICT


class InsufficientCreditsError(EntitlementError):
    code = "insufficient_credits"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class PromoCodeInvalidError(EntitlementError):
    code = "promo_code_invalid"
    status_code = status.HTTP_400_BAD_REQUEST


class DrawClosedError(EntitlementError):
    code = "draw_closed"
    status_code = status.HTTP_409_CONFLICT


class DrawSoldOutError(EntitlementError):
    code = "draw_sold_out"
    status_code = status.HTTP_409_CONFLICT


class ConflictError(EntitlementError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class DeclineReason(str, Enum):
    """Stable decline reasons exposed regardless of the payment provider."""

    DECLINED = "declined"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    EXPIRED_CARD = "expired_card"
    PROCESSING_ERROR = "processing_error"


_PROVIDER_DECLINE_CODES: Dict[str, DeclineReason] = {
    "card_declined": DeclineReason.DECLINED,
    "generic_decline": DeclineReason.DECLINED,
    "do_not_honor": DeclineReason.DECLINED,
    "lost_card": DeclineReason.DECLINED,
    "stolen_card": DeclineReason.DECLINED,
    "fraudulent": DeclineReason.DECLINED,
    "insufficient_funds": DeclineReason.INSUFFICIENT_FUNDS,
    "expired_card": DeclineReason.EXPIRED_CARD,
    "processing_error": DeclineReason.PROCESSING_ERROR,
}


def map_decline_reason(provider_code: Optional[str]) -> DeclineReason:
    """Collapse a provider specific decline code into a :class:`DeclineReason`."""

    if not provider_code:
        return DeclineReason.PROCESSING_ERROR
    return _PROVIDER_DECLINE_CODES.get(provider_code.strip().lower(), DeclineReason.PROCESSING_ERROR)


class PaymentDeclinedError(EntitlementError):
    code = "payment_declined"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    @classmethod
    def from_provider_code(cls, provider_code: Optional[str]) -> "PaymentDeclinedError":
        reason = map_decline_reason(provider_code)
        return cls("Payment was declined.", detail={"reason": reason.value})

    @property
    def reason(self) -> DeclineReason:
        return DeclineReason(self.payload["reason"])


class MembershipTransitionError(EntitlementError):
    """Unexpected failure inside a locked transition, raised after the lock is released."""

    code = "membership_transition_failed"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
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
]
