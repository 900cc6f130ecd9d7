from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from courier_dispatch.application.order_tracker import AUTO_CANCEL_REASON, ShopOrderTracker
from courier_dispatch.domain.exceptions import BackendServiceError, InvalidTransitionError, OrderNotFoundError
from courier_dispatch.domain.models import Order, ShopOrder, ShopOrderStatus
from courier_dispatch.infrastructure.scheduler import AsyncioScheduler


@pytest.fixture
def tracker(backend, scheduler) -> ShopOrderTracker:
    return ShopOrderTracker(
        backend, scheduler, "shop-1", on_status_changed=MagicMock(), on_delivered=MagicMock()
    )


@pytest.mark.asyncio
async def test_pending_order_auto_cancelled_after_five_minutes(tracker, backend, scheduler, make_order) -> None:
    tracker.track(make_order("order-0001"))
    tracker.start()

    await scheduler.advance(299)
    backend.cancel_order.assert_not_awaited()
    assert tracker.countdown_display("order-0001") == "0:01"

    await scheduler.advance(1)
    backend.cancel_order.assert_awaited_once_with("order-0001", "shop-1", AUTO_CANCEL_REASON)
    shop_order = tracker.shop_order("order-0001")
    assert shop_order.status == ShopOrderStatus.CANCELLED
    assert shop_order.cancel_reason == AUTO_CANCEL_REASON

    # no further cancel calls on later ticks
    await scheduler.advance(10)
    backend.cancel_order.assert_awaited_once()
    assert tracker.countdown_display("order-0001") == ""


@pytest.mark.asyncio
async def test_auto_cancel_uses_creation_time_after_reload(tracker, backend, scheduler, make_order) -> None:
    # the panel reloaded four and a half minutes after the order came in
    tracker.track(make_order("order-0001", age=270))
    tracker.start()

    assert tracker.countdown_display("order-0001") == "0:30"
    await scheduler.advance(30)
    backend.cancel_order.assert_awaited_once()


@pytest.mark.asyncio
async def test_accepted_order_is_not_auto_cancelled(tracker, backend, scheduler, make_order) -> None:
    tracker.track(make_order("order-0001"))
    tracker.start()
    await scheduler.advance(60)

    await tracker.accept("order-0001")
    backend.update_order_status.assert_awaited_once_with("order-0001", "shop-1", ShopOrderStatus.PREPARING)

    await scheduler.advance(600)
    backend.cancel_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_auto_cancel_retries_on_next_tick(tracker, backend, scheduler, make_order) -> None:
    tracker.track(make_order("order-0001", age=300))
    backend.cancel_order.side_effect = [BackendServiceError("down"), None]

    await tracker.tick()
    assert tracker.shop_order("order-0001").status == ShopOrderStatus.PENDING
    assert tracker.countdown_display("order-0001") == "0:00"

    await tracker.tick()
    assert tracker.shop_order("order-0001").status == ShopOrderStatus.CANCELLED
    assert backend.cancel_order.await_count == 2


@pytest.mark.asyncio
async def test_preparing_countdown_goes_into_overtime(tracker, scheduler, make_order) -> None:
    tracker.track(make_order("order-0001"))
    await tracker.accept("order-0001")
    assert tracker.countdown_display("order-0001") == "10:00"
    assert not tracker.is_overtime("order-0001")

    await scheduler.advance(250)
    assert tracker.countdown_display("order-0001") == "5:50"

    await scheduler.advance(350)
    assert tracker.countdown_display("order-0001") == "+0:00"
    assert tracker.is_overtime("order-0001")

    await scheduler.advance(75)
    assert tracker.countdown_display("order-0001") == "+1:15"


@pytest.mark.asyncio
async def test_status_changes_only_move_forward(tracker, make_order) -> None:
    tracker.track(make_order("order-0001", status=ShopOrderStatus.OUT_FOR_DELIVERY))

    assert tracker.apply_status("order-0001", ShopOrderStatus.PREPARING) is False
    assert tracker.apply_status("order-0001", ShopOrderStatus.CANCELLED) is False
    assert tracker.apply_status("order-0001", ShopOrderStatus.OUT_FOR_DELIVERY) is False
    assert tracker.apply_status("order-0001", ShopOrderStatus.DELIVERED) is True

    shop_order = tracker.shop_order("order-0001")
    assert shop_order.status == ShopOrderStatus.DELIVERED
    assert shop_order.delivered_at is not None
    tracker.on_delivered.assert_called_once()
    assert tracker.apply_status("unknown", ShopOrderStatus.DELIVERED) is False


@pytest.mark.asyncio
async def test_pushed_preparing_sets_start_time(tracker, scheduler, make_order) -> None:
    tracker.track(make_order("order-0001"))
    started = scheduler.now() - timedelta(minutes=3)
    assert tracker.apply_status("order-0001", ShopOrderStatus.PREPARING, at=started)
    assert tracker.countdown_display("order-0001") == "7:00"
    tracker.on_status_changed.assert_called_once()


@pytest.mark.asyncio
async def test_shop_commands_validate_state(tracker, backend, make_order) -> None:
    tracker.track(make_order("order-0001", status=ShopOrderStatus.OUT_FOR_DELIVERY))

    with pytest.raises(InvalidTransitionError):
        await tracker.accept("order-0001")
    with pytest.raises(InvalidTransitionError):
        await tracker.cancel("order-0001", "changed my mind")
    with pytest.raises(OrderNotFoundError):
        await tracker.mark_ready("missing")
    backend.update_order_status.assert_not_awaited()
    backend.cancel_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_backend_failure_leaves_local_status(tracker, backend, make_order) -> None:
    tracker.track(make_order("order-0001"))
    backend.update_order_status.side_effect = BackendServiceError("down")

    with pytest.raises(BackendServiceError):
        await tracker.accept("order-0001")
    assert tracker.shop_order("order-0001").status == ShopOrderStatus.PENDING


@pytest.mark.asyncio
async def test_ready_and_manual_cancel(tracker, backend, make_order) -> None:
    tracker.track(make_order("order-0001", status=ShopOrderStatus.PREPARING))
    tracker.track(make_order("order-0002"))

    await tracker.mark_ready("order-0001")
    assert tracker.shop_order("order-0001").status == ShopOrderStatus.OUT_FOR_DELIVERY

    await tracker.cancel("order-0002", "out of stock")
    backend.cancel_order.assert_awaited_once_with("order-0002", "shop-1", "out of stock")
    assert tracker.shop_order("order-0002").cancel_reason == "out of stock"
    assert tracker.pending_order_ids() == set()


def test_foreign_orders_are_not_tracked(tracker, scheduler) -> None:
    order = Order(id="order-x", created_at=scheduler.now(), shop_orders=[ShopOrder(shop_id="shop-2")])
    tracker.track(order)
    assert tracker.orders() == []


@pytest.mark.asyncio
async def test_auto_cancel_with_wall_clock(backend) -> None:
    with freeze_time("2025-01-01 12:00:00", real_asyncio=True) as frozen:
        tracker = ShopOrderTracker(backend, AsyncioScheduler(), "shop-1")
        tracker.track(
            Order(
                id="order-1234",
                created_at=datetime(2025, 1, 1, 12, 0, 0, tzinfo=UTC),
                shop_orders=[ShopOrder(shop_id="shop-1")],
            )
        )
        assert tracker.countdown_display("order-1234") == "5:00"

        frozen.tick(delta=timedelta(minutes=4, seconds=59))
        await tracker.tick()
        backend.cancel_order.assert_not_awaited()

        frozen.tick(delta=timedelta(seconds=1))
        await tracker.tick()
        backend.cancel_order.assert_awaited_once_with("order-1234", "shop-1", AUTO_CANCEL_REASON)
        assert tracker.shop_order("order-1234").status == ShopOrderStatus.CANCELLED
