import logging
from typing import Optional

from courier_dispatch.application.interfaces import DispatchBackend, NotificationsService, Scheduler, TimerHandle
from courier_dispatch.application.order_tracker import ShopOrderTracker
from courier_dispatch.application.reconciliation import ShopAlertLoop
from courier_dispatch.config import settings
from courier_dispatch.domain.events import DeliveryOrderCancelled, NewOrder, OrderStatusChanged, PushEvent
from courier_dispatch.domain.exceptions import BackendServiceError
from courier_dispatch.domain.models import Order, ShopOrder, ShopOrderStatus

logger = logging.getLogger(__name__)


class ShopEngine:
    """Движок панели магазина: заказы, таймеры автоотмены и сигнал о новых заказах"""

    def __init__(
        self,
        backend: DispatchBackend,
        notifications: NotificationsService,
        scheduler: Scheduler,
        shop_id: str,
        refresh_interval: int = settings.POLL_INTERVAL_SECONDS,
    ):
        self._backend = backend
        self._scheduler = scheduler
        self._refresh_interval = refresh_interval
        self._refresher: TimerHandle | None = None
        self.shop_id = shop_id
        self.orders = ShopOrderTracker(backend, scheduler, shop_id, on_status_changed=self._status_changed)
        self.alerts = ShopAlertLoop(notifications, scheduler, shop_id)

    async def start(self) -> None:
        await self.refresh()
        self.orders.start()
        if self._refresher is None:
            self._refresher = self._scheduler.call_every(self._refresh_interval, self.refresh)

    def stop(self) -> None:
        if self._refresher is not None:
            self._refresher.cancel()
            self._refresher = None
        self.orders.stop()
        self.alerts.stop()

    async def refresh(self) -> None:
        """Список заказов с бэкенда заменяет локальный"""
        known = {order.id for order in self.orders.orders()}
        try:
            orders = await self._backend.get_shop_orders(self.shop_id)
        except BackendServiceError as e:
            logger.error(f"Ошибка загрузки заказов магазина {self.shop_id}: {e}")
            return
        fresh = {order.id for order in orders}
        # заказы, пришедшие push-событием во время запроса, не трогаем
        for order_id in known - fresh:
            self.orders.untrack(order_id)
        for order in orders:
            self.orders.track(order)
        self.alerts.sync_pending(self.orders.pending_order_ids())

    async def handle_event(self, event: PushEvent) -> None:
        if isinstance(event, NewOrder):
            if event.order is not None:
                self.orders.track(event.order)
            self.alerts.new_order(event.order_id)
        elif isinstance(event, OrderStatusChanged):
            if event.shop_id is None or event.shop_id == self.shop_id:
                self.orders.apply_status(event.order_id, event.status)
                if event.status != ShopOrderStatus.PENDING:
                    # заказ мог прийти без тела и не попасть в учёт
                    self.alerts.order_left_pending(event.order_id)
        elif isinstance(event, DeliveryOrderCancelled):
            self.orders.apply_status(event.order_id, ShopOrderStatus.CANCELLED, reason=event.reason)
            self.alerts.order_left_pending(event.order_id)

    def view_order(self, order_id: str) -> None:
        self.alerts.view_order(order_id)

    def leave_order_view(self) -> None:
        self.alerts.leave_order_view()

    def countdown_display(self, order_id: str) -> str:
        return self.orders.countdown_display(order_id)

    def _status_changed(self, order: Order, shop_order: ShopOrder) -> None:
        if shop_order.status != ShopOrderStatus.PENDING:
            self.alerts.order_left_pending(order.id)

    def order(self, order_id: str) -> Optional[ShopOrder]:
        return next((o.shop_order(self.shop_id) for o in self.orders.orders() if o.id == order_id), None)
