"""Unit tests for checkout payments and billing webhooks."""
from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingService,
    BillingWebhookEvent,
    BillingWebhookEventType,
    ConfirmationStatus,
    PaymentConfirmation,
    PaymentFailure,
    PaymentIntent,
    PaymentIntentStatus,
)
from backend.app.billing.service import BillingEventLogger, BillingNotifier, BillingRepository, PaymentProvider
from backend.app.entitlements import (
    CheckoutOrigin,
    CheckoutRequest,
    CheckoutScenario,
    ConflictError,
    DeclineReason,
    DiscountType,
    EntitlementConfig,
    LedgerReason,
    MembershipRequiredError,
    MembershipStatus,
    PaymentDeclinedError,
    PromoCode,
    ValidationError,
    map_decline_reason,
)


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.intents: Dict[str, PaymentIntent] = {}
        self.confirmations: Dict[str, PaymentConfirmation] = {}
        self.webhook_events: set[str] = set()

    def save_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        self.intents[intent.intent_id] = intent
        return intent

    def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        return self.intents.get(intent_id)

    def claim_confirmation(self, idempotency_key: str, intent_id: str) -> bool:
        if idempotency_key in self.confirmations:
            return False
        self.confirmations[idempotency_key] = PaymentConfirmation(idempotency_key=idempotency_key, intent_id=intent_id)
        return True

    def get_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        return self.confirmations.get(idempotency_key)

    def complete_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        confirmation = self.confirmations.get(idempotency_key)
        if confirmation is None:
            return None
        updated = confirmation.model_copy(update={"status": ConfirmationStatus.COMPLETED})
        self.confirmations[idempotency_key] = updated
        return updated

    def release_confirmation(self, idempotency_key: str) -> None:
        self.confirmations.pop(idempotency_key, None)

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        if event.event_id in self.webhook_events:
            return False
        self.webhook_events.add(event.event_id)
        return True

    def forget_webhook_event(self, event_id: str) -> None:
        self.webhook_events.discard(event_id)


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.created: List[Dict[str, object]] = []
        self.confirmed: List[str] = []
        self.refunded: List[str] = []
        self.decline_code: Optional[str] = None

    def create_payment_intent(self, *, amount, currency, customer_id, metadata) -> Dict[str, object]:
        provider_id = f"prov_{len(self.created) + 1}"
        self.created.append({"id": provider_id, "amount": amount, "currency": currency, "metadata": metadata})
        return {"id": provider_id, "client_secret": f"{provider_id}_secret"}

    def confirm_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        self.confirmed.append(provider_intent_id)
        if self.decline_code:
            return {"status": "failed", "decline_code": self.decline_code}
        return {"status": "succeeded"}

    def refund_payment_intent(self, provider_intent_id: str) -> Dict[str, object]:
        self.refunded.append(provider_intent_id)
        return {"id": f"re_{provider_intent_id}", "status": "succeeded"}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        return {"url": f"https://billing.test/portal/{customer_id}?return={return_url}", "expires_at": 1735732800}


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.failures: List[PaymentFailure] = []
        self.successes: List[PaymentIntent] = []

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        self.failures.append(failure)

    def notify_payment_succeeded(self, intent: PaymentIntent) -> None:
        self.successes.append(intent)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[BillingAuditEventType]:
        return [event.event_type for event in self.events]


def _build_service(engine, repository, provider, notifier, event_logger, config=None) -> BillingService:
    return BillingService(
        repository=repository,
        provider=provider,
        notifier=notifier,
        event_logger=event_logger,
        memberships=engine.machine,
        ledger=engine.ledger,
        resolver=engine.resolver,
        catalog=engine.catalog,
        promo_engine=engine.promo_engine,
        entitlements=engine.repository,
        config=config or engine.config,
        clock=engine.clock,
    )


@pytest.fixture
def billing_components(engine):
    repository = InMemoryBillingRepository()
    provider = FakePaymentProvider()
    notifier = FakeNotifier()
    event_logger = FakeEventLogger()
    service = _build_service(engine, repository, provider, notifier, event_logger)
    return repository, provider, notifier, event_logger, service


def _webhook(event_id: str, event_type: BillingWebhookEventType, **invoice: object) -> BillingWebhookEvent:
    return BillingWebhookEvent(event_id=event_id, event_type=event_type, payload={"invoice": invoice})


def test_create_payment_intent_prices_and_registers_with_provider(billing_components):
    repository, provider, _, event_logger, service = billing_components

    intent = service.create_payment_intent(
        customer_id="user-1",
        request=CheckoutRequest(plan_id="plan_uni_one", boost_pack_id="boost_small"),
    )

    assert intent.scenario == CheckoutScenario.MEMBERSHIP_PLUS_BOOST
    assert intent.final_total == 2000
    assert intent.currency == "AUD"
    assert intent.status == PaymentIntentStatus.REQUIRES_CONFIRMATION
    assert intent.provider_intent_id == "prov_1"
    assert intent.client_secret == "prov_1_secret"
    assert provider.created[0]["amount"] == 2000
    assert provider.created[0]["metadata"]["payment_intent_id"] == intent.intent_id
    assert repository.get_payment_intent(intent.intent_id) == intent
    assert event_logger.types == [BillingAuditEventType.PAYMENT_INTENT_CREATED]


def test_create_payment_intent_requires_plan_selection(billing_components):
    _, provider, _, _, service = billing_components

    with pytest.raises(ValidationError):
        service.create_payment_intent(
            customer_id="user-1",
            request=CheckoutRequest(boost_pack_id="boost_small", origin=CheckoutOrigin.BOOST_REQUIRES_MEMBERSHIP),
        )

    assert provider.created == []


def test_confirm_payment_starts_membership_and_grants_boost(billing_components, engine):
    repository, provider, notifier, event_logger, service = billing_components
    intent = service.create_payment_intent(
        customer_id="user-1",
        request=CheckoutRequest(plan_id="plan_uni_one", boost_pack_id="boost_small"),
    )

    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert receipt.replayed is False
    assert receipt.intent.status == PaymentIntentStatus.SUCCEEDED
    assert receipt.snapshot.has_active_membership is True
    assert receipt.snapshot.balance.membership == 10
    assert receipt.snapshot.balance.boost == 10
    assert provider.confirmed == ["prov_1"]
    assert repository.get_confirmation("idem-1").status == ConfirmationStatus.COMPLETED
    assert notifier.successes[0].intent_id == intent.intent_id
    assert BillingAuditEventType.BOOST_PACK_PURCHASED in event_logger.types
    assert event_logger.types[-1] == BillingAuditEventType.PAYMENT_SUCCEEDED

    boost_grants = [entry for entry in engine.ledger.history("user-1") if entry.reason == LedgerReason.BOOST_PURCHASE]
    assert boost_grants[0].reference_id == intent.intent_id


def test_confirm_payment_replays_for_same_key(billing_components, engine):
    _, provider, notifier, _, service = billing_components
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    replay = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert replay.replayed is True
    assert replay.intent.status == PaymentIntentStatus.SUCCEEDED
    assert provider.confirmed == ["prov_1"]
    assert len(notifier.successes) == 1
    period_grants = [entry for entry in engine.ledger.history("user-1") if entry.reason == LedgerReason.PERIOD_GRANT]
    assert len(period_grants) == 1


def test_confirm_payment_key_cannot_cover_another_intent(billing_components):
    _, _, _, _, service = billing_components
    first = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    service.confirm_payment(intent_id=first.intent_id, customer_id="user-1", idempotency_key="idem-1")
    second = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(boost_pack_id="boost_small"))

    with pytest.raises(ConflictError):
        service.confirm_payment(intent_id=second.intent_id, customer_id="user-1", idempotency_key="idem-1")


def test_confirm_payment_in_progress_conflicts(billing_components):
    repository, _, _, _, service = billing_components
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    repository.claim_confirmation("idem-1", intent.intent_id)

    with pytest.raises(ConflictError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")


def test_declined_payment_maps_reason_and_allows_retry(billing_components, engine):
    repository, provider, _, event_logger, service = billing_components
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    provider.decline_code = "insufficient_funds"

    with pytest.raises(PaymentDeclinedError) as exc:
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert exc.value.reason == DeclineReason.INSUFFICIENT_FUNDS
    assert exc.value.payload["reason"] == "insufficient_funds"
    assert repository.get_payment_intent(intent.intent_id).status == PaymentIntentStatus.FAILED
    assert repository.get_confirmation("idem-1") is None
    assert engine.repository.get_membership("user-1") is None
    assert BillingAuditEventType.PAYMENT_DECLINED in event_logger.types

    provider.decline_code = None
    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")
    assert receipt.intent.status == PaymentIntentStatus.SUCCEEDED
    assert receipt.intent.failure_reason is None
    assert receipt.snapshot.has_active_membership is True


@pytest.mark.parametrize(
    ("provider_code", "expected"),
    [
        ("card_declined", DeclineReason.DECLINED),
        ("do_not_honor", DeclineReason.DECLINED),
        ("EXPIRED_CARD", DeclineReason.EXPIRED_CARD),
        ("something_new", DeclineReason.PROCESSING_ERROR),
        (None, DeclineReason.PROCESSING_ERROR),
    ],
)
def test_map_decline_reason(provider_code, expected):
    assert map_decline_reason(provider_code) == expected


def test_confirm_payment_checks_owner_and_key(billing_components):
    _, _, _, _, service = billing_components
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))

    with pytest.raises(ValidationError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key=" ")
    with pytest.raises(LookupError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-2", idempotency_key="idem-1")
    with pytest.raises(LookupError):
        service.confirm_payment(intent_id="pi_missing", customer_id="user-1", idempotency_key="idem-1")


def test_fully_discounted_order_skips_provider_and_redeems_promo(billing_components, engine):
    _, provider, _, _, service = billing_components
    engine.repository.save_promo_code(
        PromoCode(code="FREEMONTH", discount_type=DiscountType.PERCENTAGE, discount_value=100)
    )

    intent = service.create_payment_intent(
        customer_id="user-1",
        request=CheckoutRequest(plan_id="plan_uni_one", promo_code="free-month"),
    )
    assert intent.final_total == 0
    assert intent.discount == 1000
    assert intent.promo_code == "FREEMONTH"
    assert intent.provider_intent_id is None

    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert receipt.snapshot.has_active_membership is True
    assert provider.created == []
    assert provider.confirmed == []
    assert engine.repository.get_promo_code("FREEMONTH").used_count == 1


def test_boost_only_purchase_for_active_member(billing_components, engine):
    _, _, _, _, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")

    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(boost_pack_id="boost_medium"))
    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert intent.scenario == CheckoutScenario.BOOST_ONLY
    assert intent.plan_id is None
    assert receipt.snapshot.balance.boost == 25
    assert receipt.snapshot.balance.membership == 10


def test_boost_only_confirmation_rechecks_membership_before_charging(billing_components, engine):
    repository, provider, _, _, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(boost_pack_id="boost_small"))
    engine.machine.cancel("user-1")

    with pytest.raises(MembershipRequiredError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert provider.confirmed == []
    assert repository.get_confirmation("idem-1") is None
    assert engine.ledger.balance("user-1").boost == 0


def test_second_membership_intent_is_rejected_before_charging(billing_components, engine):
    repository, provider, _, _, service = billing_components
    first = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    second = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    service.confirm_payment(intent_id=first.intent_id, customer_id="user-1", idempotency_key="idem-1")

    with pytest.raises(ConflictError) as exc:
        service.confirm_payment(intent_id=second.intent_id, customer_id="user-1", idempotency_key="idem-2")

    assert exc.value.payload["scenario"] == "new_membership"
    assert provider.confirmed == ["prov_1"]
    assert repository.get_confirmation("idem-2") is None
    assert repository.get_payment_intent(second.intent_id).status == PaymentIntentStatus.REQUIRES_CONFIRMATION
    period_grants = [entry for entry in engine.ledger.history("user-1") if entry.reason == LedgerReason.PERIOD_GRANT]
    assert len(period_grants) == 1


def test_reactivation_intent_is_rejected_once_membership_is_back(billing_components, engine):
    _, provider, _, _, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.cancel("user-1")
    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_one"))
    assert intent.scenario == CheckoutScenario.REACTIVATION
    engine.machine.reactivate("user-1", "plan_uni_one")

    with pytest.raises(ConflictError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert provider.confirmed == []


def test_failed_fulfilment_refunds_the_charge(billing_components, engine, monkeypatch):
    repository, provider, notifier, event_logger, service = billing_components
    intent = service.create_payment_intent(
        customer_id="user-1",
        request=CheckoutRequest(plan_id="plan_uni_one", boost_pack_id="boost_small"),
    )

    def unavailable(*args, **kwargs):
        raise RuntimeError("membership store unavailable")

    monkeypatch.setattr(engine.machine, "subscribe", unavailable)

    with pytest.raises(RuntimeError):
        service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert provider.confirmed == ["prov_1"]
    assert provider.refunded == ["prov_1"]
    stored = repository.get_payment_intent(intent.intent_id)
    assert stored.status == PaymentIntentStatus.FAILED
    assert stored.failure_reason == "fulfilment_failed"
    assert repository.get_confirmation("idem-1") is None
    assert engine.ledger.balance("user-1").boost == 0
    assert notifier.successes == []
    assert event_logger.types[-1] == BillingAuditEventType.PAYMENT_REFUNDED


def test_plan_change_checkout_schedules_upgrade_without_charge(billing_components, engine):
    _, provider, _, _, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")

    intent = service.create_payment_intent(customer_id="user-1", request=CheckoutRequest(plan_id="plan_uni_plus"))
    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id="user-1", idempotency_key="idem-1")

    assert intent.scenario == CheckoutScenario.PLAN_CHANGE
    assert intent.final_total == 0
    assert provider.created == []
    assert receipt.snapshot.membership.pending_upgrade_plan_id == "plan_uni_plus"
    assert receipt.snapshot.membership.plan_id == "plan_uni_one"


def test_guest_checkout_can_be_disabled(engine):
    service = _build_service(
        engine,
        InMemoryBillingRepository(),
        FakePaymentProvider(),
        FakeNotifier(),
        FakeEventLogger(),
        config=EntitlementConfig(allow_guest_checkout=False),
    )

    with pytest.raises(ValidationError):
        service.create_payment_intent(
            customer_id="guest:someone@example.com",
            request=CheckoutRequest(plan_id="plan_uni_one", is_guest=True),
        )


def test_guest_checkout_creates_membership(billing_components):
    _, _, _, _, service = billing_components
    customer_id = "guest:someone@example.com"

    intent = service.create_payment_intent(
        customer_id=customer_id,
        request=CheckoutRequest(plan_id="plan_uni_one", is_guest=True),
    )
    receipt = service.confirm_payment(intent_id=intent.intent_id, customer_id=customer_id, idempotency_key="idem-1")

    assert intent.is_guest is True
    assert receipt.snapshot.membership.user_id == customer_id


def test_payment_failed_webhook_opens_grace_period_once(billing_components, engine):
    _, _, notifier, event_logger, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=30)
    event = _webhook(
        "evt_1",
        BillingWebhookEventType.INVOICE_PAYMENT_FAILED,
        user_id="user-1",
        amount_due=1000,
        decline_code="expired_card",
    )

    assert service.handle_webhook(event) is True
    assert service.handle_webhook(event) is False

    membership = engine.repository.get_membership("user-1")
    assert membership.status == MembershipStatus.PAST_DUE
    assert len(notifier.failures) == 1
    failure = notifier.failures[0]
    assert failure.reason == "expired_card"
    assert failure.amount_due == 1000
    assert failure.grace_period_expires_at == engine.clock() + timedelta(days=7)
    assert event_logger.types == [BillingAuditEventType.PAYMENT_FAILED]


def test_payment_succeeded_webhook_recovers_past_due_membership(billing_components, engine):
    _, _, _, event_logger, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=30)
    service.handle_webhook(_webhook("evt_1", BillingWebhookEventType.INVOICE_PAYMENT_FAILED, user_id="user-1"))

    service.handle_webhook(
        _webhook("evt_2", BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED, user_id="user-1", amount_paid=1000)
    )

    snapshot = engine.machine.snapshot("user-1")
    assert snapshot.membership.status == MembershipStatus.ACTIVE
    assert snapshot.has_active_membership is True
    assert event_logger.types[-1] == BillingAuditEventType.PAYMENT_RECOVERED


def test_subscription_cycle_webhook_renews(billing_components, engine):
    _, _, _, event_logger, service = billing_components
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.upgrade("user-1", "plan_uni_max")
    engine.clock.advance(days=30)

    service.handle_webhook(
        _webhook(
            "evt_1",
            BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED,
            user_id="user-1",
            amount_paid=4000,
            billing_reason="subscription_cycle",
        )
    )

    membership = engine.repository.get_membership("user-1")
    assert membership.plan_id == "plan_uni_max"
    assert membership.current_period_end == start + timedelta(days=60)
    assert engine.ledger.balance("user-1").membership == 60
    assert event_logger.types[-1] == BillingAuditEventType.RENEWAL_SUCCEEDED


def test_early_cycle_invoice_is_applied_on_redelivery(billing_components, engine):
    repository, _, _, _, service = billing_components
    start = engine.clock()
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.upgrade("user-1", "plan_uni_max")
    engine.clock.advance(days=29, hours=23)
    event = _webhook(
        "evt_1",
        BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED,
        user_id="user-1",
        amount_paid=4000,
        billing_reason="subscription_cycle",
    )

    with pytest.raises(ConflictError):
        service.handle_webhook(event)
    assert "evt_1" not in repository.webhook_events
    assert engine.repository.get_membership("user-1").plan_id == "plan_uni_one"

    engine.clock.advance(hours=2)
    assert service.handle_webhook(event) is True
    assert service.handle_webhook(event) is False

    membership = engine.repository.get_membership("user-1")
    assert membership.plan_id == "plan_uni_max"
    assert membership.pending_upgrade_plan_id is None
    assert membership.current_period_end == start + timedelta(days=60)
    assert engine.ledger.balance("user-1").membership == 60


def test_webhook_that_fails_is_not_recorded(billing_components, engine):
    repository, _, _, event_logger, service = billing_components
    event = _webhook("evt_1", BillingWebhookEventType.INVOICE_PAYMENT_SUCCEEDED, user_id="user-1", amount_paid=1000)

    with pytest.raises(LookupError):
        service.handle_webhook(event)
    assert repository.webhook_events == set()

    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.clock.advance(days=30)
    service.handle_webhook(_webhook("evt_0", BillingWebhookEventType.INVOICE_PAYMENT_FAILED, user_id="user-1"))

    assert service.handle_webhook(event) is True
    assert engine.repository.get_membership("user-1").status == MembershipStatus.ACTIVE
    assert event_logger.types[-1] == BillingAuditEventType.PAYMENT_RECOVERED


def test_webhook_without_user_is_rejected(billing_components):
    repository, _, _, _, service = billing_components

    with pytest.raises(ValueError):
        service.handle_webhook(_webhook("evt_1", BillingWebhookEventType.INVOICE_PAYMENT_FAILED))
    assert repository.webhook_events == set()


def test_renewal_sweep_resumes_lapsed_pauses(billing_components, engine):
    _, _, _, _, service = billing_components
    engine.machine.subscribe("user-1", "plan_uni_one")
    engine.machine.pause("user-1")
    engine.clock.advance(days=31)

    result = service.run_renewal_sweep()

    assert result.resumed_user_ids == ("user-1",)
    assert result.ran_at == engine.clock()
    assert engine.repository.get_membership("user-1").status == MembershipStatus.ACTIVE


def test_create_portal_session_returns_provider_url(billing_components):
    _, _, _, _, service = billing_components

    session = service.create_portal_session(customer_id="user-1", return_url="https://app.test/account")

    assert session.url.startswith("https://billing.test/portal/user-1")
    assert session.expires_at is not None
    assert session.expires_at.tzinfo is not None

