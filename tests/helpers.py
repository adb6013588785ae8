from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from runic_market.config import MarketSettings
from runic_market.events import InMemoryEventBus
from runic_market.ledger import InMemoryPaymentLedger
from runic_market.market import Market
from runic_market.schemas import Offer, OfferStatus, PaymentRef
from runic_market.store import InMemoryStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class ManualTimer:
    """Timer that only fires when the test says so."""

    def __init__(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self, *, force: bool = False) -> None:
        # force=True models a timer thread that was already running when cancel() landed.
        if not self.started:
            raise RuntimeError("timer was never started")
        if self.cancelled and not force:
            return
        self.callback()


class ManualTimerFactory:
    def __init__(self) -> None:
        self.timers: list[ManualTimer] = []

    def __call__(self, delay_seconds: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(delay_seconds, callback)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


class StepClock:
    """Wall clock that advances one second per reading."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)) -> None:
        self._now = start
        self._step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self._now
            self._now = now + self._step
            return now


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FlakyStore(InMemoryStore):
    """InMemoryStore whose selected methods raise on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_on: set[str] = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"store unavailable: {name}")

    def list_offers(self, task_id: str, **kw: Any) -> list[Offer]:
        self._maybe_fail("list_offers")
        return super().list_offers(task_id, **kw)

    def create_execution(self, execution: Any) -> Any:
        self._maybe_fail("create_execution")
        return super().create_execution(execution)

    def update_offer_status(self, offer_id: str, status: OfferStatus, **kw: Any) -> Offer:
        self._maybe_fail(f"update_offer_status:{status.value}")
        return super().update_offer_status(offer_id, status, **kw)


class FailingLedger:
    def __init__(self) -> None:
        self.calls = 0

    def create_pending_payment(
        self, task_id: str, agent_id: str, amount: int, token_symbol: str
    ) -> PaymentRef:
        self.calls += 1
        raise RuntimeError("ledger offline")


class ExplodingBus:
    def publish(self, event_type: Any, payload: dict[str, Any]) -> None:
        raise RuntimeError("bus down")


def make_market(
    *,
    settings: MarketSettings | None = None,
    store: InMemoryStore | None = None,
    ledger: Any = None,
    bus: Any = None,
    dispatcher: Any = None,
) -> tuple[Market, ManualTimerFactory, FakeMonotonic]:
    timers = ManualTimerFactory()
    mono = FakeMonotonic()
    market = Market(
        settings or MarketSettings(),
        store=store or InMemoryStore(),
        ledger=ledger if ledger is not None else InMemoryPaymentLedger(),
        bus=bus if bus is not None else InMemoryEventBus(),
        timer_factory=timers,
        dispatcher=dispatcher,
        clock=StepClock(),
        monotonic=mono,
    )
    return market, timers, mono
