from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from backend.app.entitlements import (
    AccountLockedError,
    ConcurrentChangeError,
    CreditClass,
    LedgerReason,
    MembershipRequiredError,
    MembershipStatus,
    MembershipTransitionError,
    PendingChangeError,
    RenewalStatus,
    UserAccount,
    ValidationError,
)
from backend.app.feature_gates import MembershipAccess


def test_subscribe_starts_a_period_and_grants_credits(engine):
    start = engine.clock()
    snapshot = engine.machine.subscribe("user-1", "plan_uni_one")

    membership = snapshot.membership
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.current_period_start == start
    assert membership.current_period_end == start + timedelta(days=30)
    assert membership.grand_prize_entries == 1
    assert membership.is_processing_change is False
    assert snapshot.balance.membership == 10
    assert snapshot.has_active_membership is True
    assert engine.events.types == ["subscribed"]

    grant = engine.ledger.history("user-1")[0]
    assert grant.reason == LedgerReason.PERIOD_GRANT
    assert grant.period_end == membership.current_period_end


def test_subscribe_twice_is_rejected(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")

    with pytest.raises(ValidationError):
        engine.machine.subscribe("user-1", "plan_uni_plus")


def test_locked_account_cannot_subscribe(engine):
    engine.repository.save_user(UserAccount(user_id="user-1", is_locked=True))

    with pytest.raises(AccountLockedError):
        engine.machine.subscribe("user-1", "plan_uni_one")

    assert engine.repository.get_membership("user-1") is None


def test_upgrade_is_scheduled_and_applied_at_renewal(engine):
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE)
    engine.ledger.spend("user-1", 4)

    snapshot = engine.machine.request_plan_change("user-1", "plan_uni_plus")

    assert snapshot.membership.plan_id == "plan_uni_one"
    assert snapshot.membership.pending_upgrade_plan_id == "plan_uni_plus"
    assert snapshot.pending_plan.id == "plan_uni_plus"
    assert snapshot.balance.membership == 6

    engine.clock.advance(days=30)
    renewed = engine.machine.renew("user-1", reference_id="inv_1")

    membership = renewed.membership
    assert membership.plan_id == "plan_uni_plus"
    assert membership.pending_plan_id is None
    assert membership.current_period_start == start + timedelta(days=30)
    assert membership.current_period_end == start + timedelta(days=60)
    assert membership.grand_prize_entries == 3
    assert renewed.balance.membership == 25
    assert renewed.balance.boost == 5
    assert engine.events.types[-1] == "renewed"

    records, total = engine.machine.list_renewals("user-1")
    assert total == 1
    assert records[0].status == RenewalStatus.SUCCEEDED
    assert records[0].plan_id == "plan_uni_plus"
    assert records[0].credits_granted == 25


def test_downgrade_while_upgrade_pending_is_rejected(engine):
    engine.machine.subscribe("user-1", "plan_uni_plus")
    engine.machine.upgrade("user-1", "plan_uni_max")

    with pytest.raises(PendingChangeError) as exc:
        engine.machine.downgrade("user-1", "plan_uni_one")

    assert exc.value.payload["pending_change"] == "upgrade"
    assert exc.value.payload["pending_plan_id"] == "plan_uni_max"
    membership = engine.repository.get_membership("user-1")
    assert membership.pending_upgrade_plan_id == "plan_uni_max"
    assert membership.pending_downgrade_plan_id is None
    assert membership.is_processing_change is False


def test_downgrade_is_scheduled(engine):
    engine.machine.subscribe("user-1", "plan_uni_max")

    snapshot = engine.machine.request_plan_change("user-1", "plan_uni_one")

    assert snapshot.membership.pending_downgrade_plan_id == "plan_uni_one"
    assert engine.events.types[-1] == "downgrade_scheduled"


def test_plan_change_direction_must_match_plan_order(engine):
    engine.machine.subscribe("user-1", "plan_uni_plus")

    with pytest.raises(ValidationError):
        engine.machine.upgrade("user-1", "plan_uni_one")
    with pytest.raises(ValidationError):
        engine.machine.upgrade("user-1", "plan_uni_plus")


def test_cancel_pending_upgrade_clears_it(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.upgrade("user-1", "plan_uni_max")

    snapshot = engine.machine.cancel_pending_upgrade("user-1")

    assert snapshot.membership.pending_upgrade_plan_id is None
    with pytest.raises(ValidationError):
        engine.machine.cancel_pending_upgrade("user-1")


def test_renew_before_period_end_is_rejected(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=29)

    with pytest.raises(ValidationError):
        engine.machine.renew("user-1")


def test_pause_blocks_draws_until_it_lapses(engine):
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE)
    engine.add_draw("bonus", cost=2, requires_membership=True)

    paused = engine.machine.pause("user-1")
    assert paused.membership.status == MembershipStatus.PAUSED
    assert paused.membership.pause_expires_at == start + timedelta(days=30)
    assert paused.balance.membership == 0
    assert paused.balance.boost == 5

    engine.clock.advance(days=15)
    with pytest.raises(MembershipRequiredError) as exc:
        engine.guard.try_enter("user-1", "bonus", "key-1")
    assert exc.value.payload["reason"] == "paused"
    assert engine.ledger.balance("user-1").boost == 5

    engine.clock.advance(days=16)
    membership = engine.machine.get_membership("user-1")
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.is_paused is False
    assert membership.current_period_end == start + timedelta(days=60)
    assert engine.events.types[-1] == "pause_expired"

    result = engine.guard.try_enter("user-1", "bonus", "key-2")
    assert result.entry.credits_spent == 2


def test_resume_extends_period_by_time_paused(engine):
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.pause("user-1")
    engine.clock.advance(days=10)

    snapshot = engine.machine.resume("user-1")

    assert snapshot.membership.status == MembershipStatus.ACTIVE
    assert snapshot.membership.current_period_end == start + timedelta(days=40)
    assert snapshot.balance.membership == 0
    with pytest.raises(ValidationError):
        engine.machine.resume("user-1")


def test_pause_clears_pending_plan_change(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.upgrade("user-1", "plan_uni_plus")

    snapshot = engine.machine.pause("user-1")

    assert snapshot.membership.pending_plan_id is None


def test_expire_pauses_resumes_lapsed_memberships(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.subscribe("user-2", "plan_uni_one")
    engine.machine.pause("user-1")
    engine.clock.advance(days=5)
    engine.machine.pause("user-2")
    engine.clock.advance(days=26)

    resumed = engine.machine.expire_pauses()

    assert resumed == ["user-1"]
    assert engine.repository.get_membership("user-2").is_paused is True


def test_cancel_revokes_access_and_invalidates_entries(engine):
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.ledger.grant("user-1", CreditClass.BOOST, 5, LedgerReason.BOOST_PURCHASE)
    engine.add_draw("d1", cost=2)
    engine.guard.try_enter("user-1", "d1", "key-1")

    snapshot = engine.machine.cancel("user-1")

    membership = snapshot.membership
    assert membership.status == MembershipStatus.CANCELED
    assert membership.canceled_at == start
    assert membership.cancel_at_period_end is True
    assert membership.grand_prize_entries == 0
    assert snapshot.balance.membership == 0
    assert snapshot.balance.boost == 5
    assert snapshot.has_active_membership is False

    access = MembershipAccess.from_snapshot(snapshot)
    assert access.can_buy_boost_pack is False
    assert access.can_enter_bonus_draw is False

    entries = engine.repository.list_draw_entries("user-1")
    assert len(entries) == 1
    assert entries[0].invalidated_at == start
    assert engine.repository.get_draw("d1").entrants == 0
    assert engine.events.events[-1].metadata["invalidated_entries"] == "1"

    with pytest.raises(ValidationError):
        engine.machine.cancel("user-1")


def test_reactivate_after_cancel_uses_previous_plan(engine):
    engine.machine.subscribe("user-1", "plan_uni_plus")
    engine.machine.cancel("user-1")
    engine.clock.advance(days=3)

    snapshot = engine.machine.reactivate("user-1")

    assert snapshot.membership.plan_id == "plan_uni_plus"
    assert snapshot.membership.status == MembershipStatus.ACTIVE
    assert snapshot.membership.canceled_at is None
    assert snapshot.membership.current_period_end == engine.clock() + timedelta(days=30)
    assert snapshot.balance.membership == 25
    assert engine.events.types[-1] == "reactivated"


def test_payment_failure_opens_grace_then_blocks(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=30)

    first = engine.machine.payment_fail("user-1", failure_reason="insufficient_funds")
    assert first.membership.status == MembershipStatus.PAST_DUE
    grace = first.membership.grace_period_expires_at
    assert grace == engine.clock() + timedelta(days=7)
    assert first.has_active_membership is False

    engine.clock.advance(days=2)
    second = engine.machine.payment_fail("user-1")
    assert second.membership.status == MembershipStatus.PAYMENT_FAILED
    assert second.membership.grace_period_expires_at == grace

    recovered = engine.machine.payment_recover("user-1", reference_id="inv_2")
    assert recovered.membership.status == MembershipStatus.ACTIVE
    assert recovered.membership.grace_period_expires_at is None
    assert recovered.membership.current_period_end == engine.clock() + timedelta(days=30)
    assert recovered.balance.membership == 10

    records, total = engine.machine.list_renewals("user-1")
    assert total == 3
    assert [record.status for record in records].count(RenewalStatus.FAILED) == 2
    assert records[-1].failure_reason == "insufficient_funds"


def test_payment_recover_requires_outstanding_payment(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")

    with pytest.raises(ValidationError):
        engine.machine.payment_recover("user-1")


def test_transition_without_membership_is_rejected(engine):
    with pytest.raises(MembershipRequiredError):
        engine.machine.pause("user-1")


def test_concurrent_change_flag_rejects_second_writer(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.repository.claim_membership_lock("user-1")

    with pytest.raises(ConcurrentChangeError):
        engine.machine.pause("user-1")

    membership = engine.repository.get_membership("user-1")
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.is_processing_change is True


def test_failed_mutation_releases_the_change_flag(engine, monkeypatch):
    engine.machine.subscribe("user-1", "plan_uni_one")

    def explode(*args, **kwargs):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(engine.ledger, "reset_membership_credits", explode)

    with pytest.raises(MembershipTransitionError) as exc:
        engine.machine.pause("user-1")

    assert exc.value.payload["action"] == "pause"
    membership = engine.repository.get_membership("user-1")
    assert membership.is_processing_change is False
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.is_paused is False


def test_rejected_mutation_releases_the_change_flag(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.pause("user-1")

    with pytest.raises(ValidationError):
        engine.machine.pause("user-1")

    assert engine.repository.get_membership("user-1").is_processing_change is False


def test_parallel_pauses_apply_once(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    barrier = threading.Barrier(6)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            engine.machine.pause("user-1")
            outcome = "ok"
        except (ConcurrentChangeError, ValidationError) as exc:
            outcome = exc.code
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert len(outcomes) == 6
    assert engine.events.types.count("paused") == 1
    membership = engine.repository.get_membership("user-1")
    assert membership.is_paused is True
    assert membership.is_processing_change is False


def test_list_renewals_validates_paging(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")

    with pytest.raises(ValidationError):
        engine.machine.list_renewals("user-1", page=0)


def test_cancel_is_refused_while_a_payment_is_outstanding(engine):
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=30)
    engine.machine.payment_fail("user-1")

    with pytest.raises(ValidationError) as exc:
        engine.machine.cancel("user-1")

    assert exc.value.payload["membership_status"] == "past_due"
    assert engine.repository.get_membership("user-1").status == MembershipStatus.PAST_DUE
    assert engine.repository.get_membership("user-1").is_processing_change is False
