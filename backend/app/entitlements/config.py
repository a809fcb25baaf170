"""Configuration for the entitlement engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class EntitlementConfig:
    """Tunable durations and checkout behaviour."""

    billing_period_days: int = 30
    pause_days: int = 30
    grace_period_days: int = 7
    currency: str = "AUD"
    allow_guest_checkout: bool = True

    @property
    def billing_period(self) -> timedelta:
        return timedelta(days=self.billing_period_days)

    @property
    def pause_window(self) -> timedelta:
        return timedelta(days=self.pause_days)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(name: str, value: Optional[str], *, default: int, minimum: int = 1) -> int:
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return parsed


def load_entitlement_config(env: Optional[Mapping[str, str]] = None) -> EntitlementConfig:
    """Load :class:`EntitlementConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    currency = (env_mapping.get("ENTITLEMENT_CURRENCY") or "AUD").strip().upper()
    if len(currency) != 3:
        raise ValueError("ENTITLEMENT_CURRENCY must be a three letter ISO code")

    return EntitlementConfig(
        billing_period_days=_to_int(
            "ENTITLEMENT_BILLING_PERIOD_DAYS",
            env_mapping.get("ENTITLEMENT_BILLING_PERIOD_DAYS"),
            default=30,
        ),
        pause_days=_to_int("ENTITLEMENT_PAUSE_DAYS", env_mapping.get("ENTITLEMENT_PAUSE_DAYS"), default=30),
        grace_period_days=_to_int(
            "ENTITLEMENT_GRACE_PERIOD_DAYS",
            env_mapping.get("ENTITLEMENT_GRACE_PERIOD_DAYS"),
            default=7,
            minimum=0,
        ),
        currency=currency,
        allow_guest_checkout=_to_bool(env_mapping.get("ENTITLEMENT_ALLOW_GUEST_CHECKOUT"), default=True),
    )
