from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.entitlements import (
    CreditClass,
    CreditLedger,
    InMemoryEntitlementRepository,
    InsufficientCreditsError,
    LedgerReason,
    Membership,
    MembershipStatus,
    ValidationError,
)


@pytest.fixture
def ledger_components(clock):
    repository = InMemoryEntitlementRepository()
    return repository, CreditLedger(repository, clock=clock)


def test_balance_is_empty_for_unknown_user(ledger_components):
    _, ledger = ledger_components

    balance = ledger.balance("nobody")

    assert balance.membership == 0
    assert balance.boost == 0
    assert balance.total == 0


def test_grant_updates_cached_balance_and_writes_entry(ledger_components, clock):
    repository, ledger = ledger_components
    period_end = clock() + timedelta(days=30)

    entry = ledger.grant(
        "user-1",
        CreditClass.MEMBERSHIP,
        10,
        LedgerReason.PERIOD_GRANT,
        period_end=period_end,
    )
    ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE, reference_id="pi_1")

    assert entry.balance_after == 10
    assert entry.period_end == period_end
    assert repository.get_user("user-1").membership_credits == 10
    assert ledger.balance("user-1").total == 15


def test_spend_consumes_membership_credits_first(ledger_components):
    _, ledger = ledger_components
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 3, LedgerReason.PERIOD_GRANT)
    ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE)

    result = ledger.spend("user-1", 4, reference_id="draw:d1")

    assert result.membership_spent == 3
    assert result.boost_spent == 1
    assert result.total_spent == 4
    assert [entry.credit_class for entry in result.entries] == [CreditClass.MEMBERSHIP, CreditClass.BOOST]
    assert all(entry.amount < 0 for entry in result.entries)
    assert result.balance.membership == 0
    assert result.balance.boost == 4


def test_spend_is_all_or_nothing_when_short(ledger_components):
    repository, ledger = ledger_components
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 2, LedgerReason.PERIOD_GRANT)
    ledger.grant("user-1", CreditClass.BOOST, 1, LedgerReason.BOOST_PURCHASE)
    entries_before = len(repository.ledger)

    with pytest.raises(InsufficientCreditsError) as exc:
        ledger.spend("user-1", 4)

    assert exc.value.payload["required"] == 4
    assert exc.value.payload["available"] == 3
    assert len(repository.ledger) == entries_before
    assert ledger.balance("user-1").total == 3


def test_spend_respects_allowed_classes(ledger_components):
    _, ledger = ledger_components
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 10, LedgerReason.PERIOD_GRANT)
    ledger.grant("user-1", CreditClass.BOOST, 2, LedgerReason.BOOST_PURCHASE)

    with pytest.raises(InsufficientCreditsError):
        ledger.spend("user-1", 3, allowed_classes=[CreditClass.BOOST])

    result = ledger.spend("user-1", 2, allowed_classes=[CreditClass.BOOST])
    assert result.boost_spent == 2
    assert result.balance.membership == 10


def test_reset_membership_credits_keeps_boost_credits(ledger_components):
    _, ledger = ledger_components
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 10, LedgerReason.PERIOD_GRANT)
    ledger.grant("user-1", CreditClass.BOOST, 7, LedgerReason.BOOST_PURCHASE)

    entry = ledger.reset_membership_credits("user-1")

    assert entry.amount == -10
    assert entry.reason == LedgerReason.MEMBERSHIP_RESET
    assert ledger.balance("user-1").membership == 0
    assert ledger.balance("user-1").boost == 7
    assert ledger.reset_membership_credits("user-1") is None


def test_boost_credits_cannot_carry_an_expiry(ledger_components, clock):
    _, ledger = ledger_components

    with pytest.raises(ValidationError):
        ledger.grant(
            "user-1",
            CreditClass.BOOST,
            5,
            LedgerReason.BOOST_PURCHASE,
            period_end=clock() + timedelta(days=30),
        )


@pytest.mark.parametrize("amount", [0, -3])
def test_non_positive_amounts_are_rejected(ledger_components, amount):
    _, ledger = ledger_components

    with pytest.raises(ValidationError):
        ledger.grant("user-1", CreditClass.BOOST, amount, LedgerReason.ADJUSTMENT)
    with pytest.raises(ValidationError):
        ledger.spend("user-1", amount)


def test_history_is_newest_first_and_sums_to_balance(ledger_components):
    _, ledger = ledger_components
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 10, LedgerReason.PERIOD_GRANT)
    ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE)
    ledger.spend("user-1", 12)
    ledger.grant("user-2", CreditClass.BOOST, 1, LedgerReason.BOOST_PURCHASE)

    history = ledger.history("user-1")

    assert history[0].credit_class == CreditClass.BOOST
    assert history[0].amount == -2
    assert all(entry.user_id == "user-1" for entry in history)
    assert sum(entry.amount for entry in history) == ledger.balance("user-1").total
    assert len(ledger.history("user-1", limit=2)) == 2


def test_membership_pool_lapses_at_period_end(ledger_components, clock):
    repository, ledger = ledger_components
    period_end = clock() + timedelta(days=30)
    repository.save_membership(
        Membership(
            user_id="user-1",
            plan_id="plan_uni_one",
            status=MembershipStatus.ACTIVE,
            current_period_start=clock(),
            current_period_end=period_end,
        )
    )
    ledger.grant("user-1", CreditClass.MEMBERSHIP, 10, LedgerReason.PERIOD_GRANT, period_end=period_end)
    ledger.grant("user-1", CreditClass.BOOST, 3, LedgerReason.BOOST_PURCHASE)
    assert ledger.balance("user-1").membership == 10

    clock.advance(days=30)

    balance = ledger.balance("user-1")
    assert balance.membership == 0
    assert balance.boost == 3
    with pytest.raises(InsufficientCreditsError):
        ledger.spend("user-1", 5)

    result = ledger.spend("user-1", 2)

    assert result.membership_spent == 0
    assert result.boost_spent == 2
    assert repository.get_user("user-1").membership_credits == 0
    assert LedgerReason.MEMBERSHIP_EXPIRED in [entry.reason for entry in ledger.history("user-1")]
