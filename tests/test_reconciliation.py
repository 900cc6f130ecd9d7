import pytest

from courier_dispatch.application.reconciliation import CourierOfferAlerts, ShopAlertLoop


def _messages(notifications) -> list:
    return [c.kwargs["message"] for c in notifications.send.await_args_list]


@pytest.fixture
def shop_alerts(notifications, scheduler) -> ShopAlertLoop:
    return ShopAlertLoop(notifications, scheduler, "shop-1", interval=5)


@pytest.fixture
def courier_alerts(notifications, scheduler, session) -> CourierOfferAlerts:
    return CourierOfferAlerts(notifications, scheduler, session)


@pytest.mark.asyncio
async def test_new_order_rings_until_viewed(shop_alerts, notifications, scheduler) -> None:
    assert shop_alerts.new_order("order-0001") is True
    await scheduler.advance(0)
    assert _messages(notifications) == ["You have new orders!"]
    assert shop_alerts.ringing

    await scheduler.advance(10)
    assert _messages(notifications)[1:] == ["You have new orders! Please check."] * 2

    shop_alerts.view_order("order-0001")
    assert not shop_alerts.ringing
    await scheduler.advance(30)
    assert notifications.send.await_count == 3


@pytest.mark.asyncio
async def test_push_and_poll_for_same_order_alert_once(shop_alerts, notifications, scheduler) -> None:
    shop_alerts.new_order("order-0001")
    shop_alerts.sync_pending({"order-0001"})
    assert shop_alerts.new_order("order-0001") is False

    await scheduler.advance(0)
    assert notifications.send.await_count == 1
    assert shop_alerts.unacknowledged == {"order-0001"}


@pytest.mark.asyncio
async def test_order_already_open_gets_single_notice(shop_alerts, notifications, scheduler) -> None:
    shop_alerts.view_order("order-0042")
    shop_alerts.new_order("order-0042")

    await scheduler.advance(20)
    assert _messages(notifications) == ["New Order 0042 received!"]
    assert notifications.send.await_args.kwargs["kind"] == "success"
    assert not shop_alerts.ringing


@pytest.mark.asyncio
async def test_loop_stops_when_orders_leave_pending(shop_alerts, notifications, scheduler) -> None:
    shop_alerts.sync_pending({"order-0001", "order-0002"})
    await scheduler.advance(0)
    assert shop_alerts.ringing

    shop_alerts.sync_pending({"order-0002"})
    assert shop_alerts.ringing
    shop_alerts.order_left_pending("order-0002")
    assert not shop_alerts.ringing

    await scheduler.advance(20)
    assert notifications.send.await_count == 1


@pytest.mark.asyncio
async def test_stop_cancels_loop(shop_alerts, scheduler) -> None:
    shop_alerts.new_order("order-0001")
    shop_alerts.stop()
    await scheduler.advance(0)
    assert not shop_alerts.ringing
    assert scheduler.pending() == 0


@pytest.mark.asyncio
async def test_one_notification_per_reveal(courier_alerts, notifications, scheduler, make_offer) -> None:
    offer = make_offer("a-1", delivery_fee=4.5)
    assert courier_alerts.offer_revealed(offer) is True
    assert courier_alerts.offer_revealed(offer) is False

    await scheduler.advance(0)
    notifications.send.assert_awaited_once_with(
        message="New delivery job available! Earnings: 4.50 - Pickup at Pizza Place",
        reference_id="a-1",
        recipient_id="courier-1",
        kind="delivery_assignment",
    )
    assert courier_alerts.unread_count == 1

    # it left the visible set, so a later reveal is a new event
    courier_alerts.offer_gone("a-1")
    assert courier_alerts.offer_revealed(offer) is True
    assert courier_alerts.unread_count == 2

    courier_alerts.mark_read()
    assert courier_alerts.unread_count == 0


@pytest.mark.asyncio
async def test_alerts_suppressed(courier_alerts, notifications, scheduler, session, make_offer) -> None:
    courier_alerts.view_offer("a-1")
    assert courier_alerts.offer_revealed(make_offer("a-1")) is False

    courier_alerts.enabled = False
    assert courier_alerts.offer_revealed(make_offer("a-2")) is False

    courier_alerts.enabled = True
    session.current_order_id = "order-busy"
    assert courier_alerts.offer_revealed(make_offer("a-3")) is False

    await scheduler.advance(0)
    notifications.send.assert_not_awaited()
    assert courier_alerts.unread_count == 0


@pytest.mark.asyncio
async def test_failed_notification_does_not_raise(courier_alerts, notifications, scheduler, make_offer) -> None:
    notifications.send.return_value = False
    courier_alerts.offer_revealed(make_offer("a-1"))
    await scheduler.advance(0)
    notifications.send.assert_awaited_once()
