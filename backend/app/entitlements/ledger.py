"""Append-only credit ledger with two expiry policies."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence, Tuple
from uuid import uuid4

from .errors import InsufficientCreditsError, ValidationError
from .models import CreditBalance, CreditClass, CreditLedgerEntry, LedgerReason, UserAccount
from .store import EntitlementRepository

logger = logging.getLogger("entitlements")

# Membership credits expire, so they are consumed before boost credits.
SPEND_ORDER: Tuple[CreditClass, ...] = (CreditClass.MEMBERSHIP, CreditClass.BOOST)


@dataclass(frozen=True)
class SpendResult:
    """Ledger rows written by a single spend plus the resulting balance."""

    entries: Tuple[CreditLedgerEntry, ...]
    membership_spent: int
    boost_spent: int
    balance: CreditBalance

    @property
    def total_spent(self) -> int:
        return self.membership_spent + self.boost_spent


class CreditLedger:
    """Writes ledger entries and keeps the user's cached balances in step."""

    def __init__(
        self,
        repository: EntitlementRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def balance(self, user_id: str) -> CreditBalance:
        account = self._repository.get_user(user_id)
        if account is None:
            return CreditBalance()
        membership_credits = account.membership_credits
        if membership_credits and self._membership_period_over(user_id):
            membership_credits = 0
        return CreditBalance(membership=membership_credits, boost=account.boost_credits)

    def history(self, user_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        return self._repository.list_ledger_entries(user_id, limit=limit)

    def grant(
        self,
        user_id: str,
        credit_class: CreditClass,
        amount: int,
        reason: LedgerReason,
        *,
        period_end: Optional[datetime] = None,
        reference_id: Optional[str] = None,
    ) -> CreditLedgerEntry:
        if amount <= 0:
            raise ValidationError("Credit grants must be positive.", detail={"amount": amount})
        if credit_class == CreditClass.BOOST and period_end is not None:
            raise ValidationError("Boost credits never expire and cannot carry a period.")

        with self._repository.transaction():
            account = self._account(user_id)
            entry, account = self._write(
                account,
                credit_class,
                amount,
                reason,
                period_end=period_end,
                reference_id=reference_id,
            )
            self._repository.save_user(account)

        logger.info(
            "Granted %s %s credits to user=%s reason=%s",
            amount,
            credit_class.value,
            user_id,
            reason.value,
        )
        return entry

    def spend(
        self,
        user_id: str,
        amount: int,
        *,
        allowed_classes: Iterable[CreditClass] = (CreditClass.BOOST, CreditClass.MEMBERSHIP),
        reason: LedgerReason = LedgerReason.DRAW_ENTRY,
        reference_id: Optional[str] = None,
    ) -> SpendResult:
        """Debit ``amount`` credits, expiring pool first, all or nothing."""

        if amount <= 0:
            raise ValidationError("Credit spends must be positive.", detail={"amount": amount})
        allowed = set(allowed_classes)
        if not allowed:
            raise ValidationError("At least one credit class must be allowed.")

        with self._repository.transaction():
            account = self._account(user_id)
            if account.membership_credits and self._membership_period_over(user_id):
                _, account = self._write(
                    account,
                    CreditClass.MEMBERSHIP,
                    -account.membership_credits,
                    LedgerReason.MEMBERSHIP_EXPIRED,
                    reference_id=reference_id,
                )
            balance = CreditBalance(membership=account.membership_credits, boost=account.boost_credits)
            available = sum(balance.of(credit_class) for credit_class in allowed)
            if available < amount:
                raise InsufficientCreditsError(
                    "Not enough credits.",
                    detail={"required": amount, "available": available},
                )

            remaining = amount
            spent = {CreditClass.MEMBERSHIP: 0, CreditClass.BOOST: 0}
            entries = []
            for credit_class in SPEND_ORDER:
                if remaining == 0:
                    break
                if credit_class not in allowed:
                    continue
                debit = min(remaining, balance.of(credit_class))
                if debit == 0:
                    continue
                entry, account = self._write(
                    account,
                    credit_class,
                    -debit,
                    reason,
                    reference_id=reference_id,
                )
                entries.append(entry)
                spent[credit_class] = debit
                remaining -= debit

            self._repository.save_user(account)

        return SpendResult(
            entries=tuple(entries),
            membership_spent=spent[CreditClass.MEMBERSHIP],
            boost_spent=spent[CreditClass.BOOST],
            balance=CreditBalance(membership=account.membership_credits, boost=account.boost_credits),
        )

    def reset_membership_credits(
        self,
        user_id: str,
        *,
        reference_id: Optional[str] = None,
    ) -> Optional[CreditLedgerEntry]:
        """Zero the membership pool. Boost credits are untouched."""

        with self._repository.transaction():
            account = self._account(user_id)
            if account.membership_credits == 0:
                return None
            entry, account = self._write(
                account,
                CreditClass.MEMBERSHIP,
                -account.membership_credits,
                LedgerReason.MEMBERSHIP_RESET,
                reference_id=reference_id,
            )
            self._repository.save_user(account)
        return entry

    def _membership_period_over(self, user_id: str) -> bool:
        # Membership credits belong to the current period and lapse with it.
        membership = self._repository.get_membership(user_id)
        if membership is None or membership.current_period_end is None:
            return False
        return membership.current_period_end <= self._clock()

    def _account(self, user_id: str) -> UserAccount:
        account = self._repository.get_user(user_id)
        if account is None:
            account = self._repository.save_user(UserAccount(user_id=user_id))
        return account

    def _write(
        self,
        account: UserAccount,
        credit_class: CreditClass,
        amount: int,
        reason: LedgerReason,
        *,
        period_end: Optional[datetime] = None,
        reference_id: Optional[str] = None,
    ) -> Tuple[CreditLedgerEntry, UserAccount]:
        field = "membership_credits" if credit_class == CreditClass.MEMBERSHIP else "boost_credits"
        balance_after = getattr(account, field) + amount
        if balance_after < 0:
            raise InsufficientCreditsError(
                "Credit balance cannot go negative.",
                detail={"credit_class": credit_class.value},
            )
        entry = CreditLedgerEntry(
            entry_id=f"cle_{uuid4().hex}",
            user_id=account.user_id,
            credit_class=credit_class,
            amount=amount,
            reason=reason,
            balance_after=balance_after,
            period_end=period_end,
            reference_id=reference_id,
            created_at=self._clock(),
        )
        self._repository.append_ledger_entry(entry)
        return entry, account.model_copy(update={field: balance_after})


__all__ = ["CreditLedger", "SpendResult", "SPEND_ORDER"]
