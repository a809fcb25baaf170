from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from backend.app.entitlements.catalog import StaticCatalog, default_catalog
from backend.app.entitlements.config import EntitlementConfig
from backend.app.entitlements.draws import DrawEntryEligibilityGuard
from backend.app.entitlements.ledger import CreditLedger
from backend.app.entitlements.models import Draw, MembershipEvent
from backend.app.entitlements.promo import PromoCodeEngine
from backend.app.entitlements.scenarios import CheckoutScenarioResolver
from backend.app.entitlements.state_machine import MembershipStateMachine
from backend.app.entitlements.store import InMemoryEntitlementRepository

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[MembershipEvent] = []

    def log(self, event: MembershipEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


@dataclass
class Engine:
    clock: FakeClock
    repository: InMemoryEntitlementRepository
    catalog: StaticCatalog
    config: EntitlementConfig
    ledger: CreditLedger
    promo_engine: PromoCodeEngine
    machine: MembershipStateMachine
    resolver: CheckoutScenarioResolver
    guard: DrawEntryEligibilityGuard
    events: RecordingEventLogger = field(default_factory=RecordingEventLogger)

    def add_draw(
        self,
        draw_id: str,
        *,
        cost: int = 1,
        cap: int = -1,
        entrants: int = 0,
        requires_membership: bool = False,
        closes_in: timedelta = timedelta(days=90),
    ) -> Draw:
        return self.repository.save_draw(
            Draw(
                draw_id=draw_id,
                title=f"Draw {draw_id}",
                cost_per_entry=cost,
                cap=cap,
                entrants=entrants,
                requires_membership=requires_membership,
                closed_at=self.clock() + closes_in,
            )
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def engine(clock: FakeClock) -> Engine:
    repository = InMemoryEntitlementRepository()
    catalog = default_catalog()
    config = EntitlementConfig()
    events = RecordingEventLogger()
    ledger = CreditLedger(repository, clock=clock)
    promo_engine = PromoCodeEngine(repository, clock=clock)
    machine = MembershipStateMachine(repository, catalog, ledger, events, config=config, clock=clock)
    return Engine(
        clock=clock,
        repository=repository,
        catalog=catalog,
        config=config,
        ledger=ledger,
        promo_engine=promo_engine,
        machine=machine,
        resolver=CheckoutScenarioResolver(catalog, promo_engine, clock=clock),
        guard=DrawEntryEligibilityGuard(repository, ledger, machine, clock=clock),
        events=events,
    )
