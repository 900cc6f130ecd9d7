import heapq
import inspect
import itertools
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from courier_dispatch.application.interfaces import (
    DispatchBackend,
    NotificationsService,
    Scheduler,
    TimerCallback,
    TimerHandle,
)
from courier_dispatch.domain.models import DelivererSession, Offer, Order, ShopOrder, ShopOrderStatus
from courier_dispatch.infrastructure.key_value_store import InMemoryKeyValueStore

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeTimer(TimerHandle):
    def __init__(self, callback: TimerCallback):
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class FakeScheduler(Scheduler):
    """
    Manual clock: timers fire only when the test calls advance().
    Awaitable callbacks are awaited inline so assertions see their effects.
    """

    def __init__(self, start: datetime = START):
        self._now = start
        self._queue: list = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        timer = FakeTimer(callback)
        when = self._now + timedelta(seconds=max(delay, 0))
        heapq.heappush(self._queue, (when, next(self._seq), timer))
        return timer

    def pending(self) -> int:
        return sum(1 for _, _, timer in self._queue if not timer.cancelled())

    async def advance(self, seconds: float = 0) -> None:
        target = self._now + timedelta(seconds=seconds)
        while self._queue and self._queue[0][0] <= target:
            when, _, timer = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._now = max(self._now, when)
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def backend() -> AsyncMock:
    mock = AsyncMock(spec=DispatchBackend)
    mock.poll_assignments.return_value = []
    mock.get_current_order.return_value = None
    mock.get_shop_orders.return_value = []
    mock.get_job_credit.return_value = 500.0
    return mock


@pytest.fixture
def notifications() -> AsyncMock:
    mock = AsyncMock(spec=NotificationsService)
    mock.send.return_value = True
    return mock


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def session() -> DelivererSession:
    return DelivererSession(deliverer_id="courier-1", is_online=True, job_credit=500.0)


@pytest.fixture
def make_offer(scheduler: FakeScheduler):
    def _make_offer(assignment_id: str = "a-1", distance_km=0.05, age: float = 0, **kwargs) -> Offer:
        data = {
            "assignment_id": assignment_id,
            "order_id": f"order-{assignment_id}",
            "shop_id": "shop-1",
            "shop_name": "Pizza Place",
            "created_at": scheduler.now() - timedelta(seconds=age),
            "distance_km": distance_km,
            "delivery_fee": 4.5,
            "order_status": ShopOrderStatus.PREPARING,
        }
        data.update(kwargs)
        return Offer(**data)

    return _make_offer


@pytest.fixture
def make_order(scheduler: FakeScheduler):
    def _make_order(order_id: str = "order-0001", age: float = 0, status=ShopOrderStatus.PENDING, **kwargs) -> Order:
        shop_order = ShopOrder(shop_id="shop-1", status=status, subtotal=20.0, **kwargs)
        return Order(
            id=order_id,
            created_at=scheduler.now() - timedelta(seconds=age),
            total_amount=25.0,
            shop_orders=[shop_order],
        )

    return _make_order
