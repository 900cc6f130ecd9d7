import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from courier_dispatch.application.interfaces import DispatchBackend, Scheduler, TimerHandle, invoke_callback
from courier_dispatch.config import settings
from courier_dispatch.domain.exceptions import BackendServiceError, InvalidTransitionError, OrderNotFoundError
from courier_dispatch.domain.models import Order, ShopOrder, ShopOrderStatus, as_utc, countdown_text

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "not accepted — auto-cancelled"


class ShopOrderTracker:
    """Жизненный цикл заказов одного магазина.

    Таймеры не хранят обратный отсчёт: на каждом тике всё пересчитывается от
    времени создания заказа, поэтому перезагрузка не сбивает дедлайны.
    Статус в бэкенде меняется только через вызовы, локально отражаем его
    после успешного ответа.
    """

    def __init__(
        self,
        backend: DispatchBackend,
        scheduler: Scheduler,
        shop_id: str,
        auto_cancel_after: int = settings.AUTO_CANCEL_SECONDS,
        preparing_deadline: int = settings.PREPARING_DEADLINE_SECONDS,
        tick_interval: int = settings.ORDER_TICK_SECONDS,
        on_status_changed: Optional[Callable[[Order, ShopOrder], None]] = None,
        on_delivered: Optional[Callable[[Order, ShopOrder], None]] = None,
    ):
        self._backend = backend
        self._scheduler = scheduler
        self._shop_id = shop_id
        self._auto_cancel_after = timedelta(seconds=auto_cancel_after)
        self._preparing_deadline = timedelta(seconds=preparing_deadline)
        self._tick_interval = tick_interval
        self.on_status_changed = on_status_changed
        self.on_delivered = on_delivered

        self._orders: Dict[str, Order] = {}
        self._cancelling: Set[str] = set()
        self._ticker: TimerHandle | None = None

    # --- учёт заказов ---

    def track(self, order: Order) -> None:
        if order.shop_order(self._shop_id) is None:
            logger.warning(f"Заказ {order.id} не относится к магазину {self._shop_id}")
            return
        self._orders[order.id] = order

    def untrack(self, order_id: str) -> None:
        self._orders.pop(order_id, None)

    def orders(self) -> List[Order]:
        return list(self._orders.values())

    def pending_order_ids(self) -> Set[str]:
        return {
            order.id for order in self._orders.values()
            if order.shop_order(self._shop_id).status == ShopOrderStatus.PENDING
        }

    def shop_order(self, order_id: str) -> ShopOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")
        return order.shop_order(self._shop_id)

    # --- таймеры ---

    def start(self) -> None:
        if self._ticker is None:
            self._ticker = self._scheduler.call_every(self._tick_interval, self.tick)

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def tick(self) -> None:
        """Проверка дедлайна автоотмены для всех pending заказов"""
        now = self._scheduler.now()
        for order in list(self._orders.values()):
            shop_order = order.shop_order(self._shop_id)
            if shop_order.status != ShopOrderStatus.PENDING:
                continue
            if now - as_utc(order.created_at) >= self._auto_cancel_after:
                await self._auto_cancel(order, shop_order)

    async def _auto_cancel(self, order: Order, shop_order: ShopOrder) -> None:
        if order.id in self._cancelling:
            return
        self._cancelling.add(order.id)
        try:
            await self._backend.cancel_order(order.id, self._shop_id, AUTO_CANCEL_REASON)
        except BackendServiceError as e:
            # локально не отменяем, повторим на следующем тике
            logger.error(f"Не удалось автоматически отменить заказ {order.id}: {e}")
            return
        finally:
            self._cancelling.discard(order.id)

        if shop_order.status == ShopOrderStatus.CANCELLED:
            return
        self._apply_cancel(order, shop_order, AUTO_CANCEL_REASON)
        logger.info(f"Заказ {order.id} автоматически отменён: магазин не принял его вовремя")

    # --- команды магазина ---

    async def accept(self, order_id: str) -> ShopOrder:
        """Магазин принял заказ: pending -> preparing"""
        order, shop_order = self._get(order_id)
        if not shop_order.can_be_prepared():
            raise InvalidTransitionError(order_id, shop_order.status.value, "accept")
        await self._backend.update_order_status(order_id, self._shop_id, ShopOrderStatus.PREPARING)
        shop_order.status = ShopOrderStatus.PREPARING
        shop_order.preparing_started_at = self._scheduler.now()
        logger.info(f"Заказ {order_id} принят в работу")
        invoke_callback(self.on_status_changed, order, shop_order)
        return shop_order

    async def mark_ready(self, order_id: str) -> ShopOrder:
        """Заказ готов к передаче курьеру: preparing -> out_for_delivery"""
        order, shop_order = self._get(order_id)
        if not shop_order.can_be_sent_out():
            raise InvalidTransitionError(order_id, shop_order.status.value, "mark_ready")
        await self._backend.update_order_status(order_id, self._shop_id, ShopOrderStatus.OUT_FOR_DELIVERY)
        shop_order.status = ShopOrderStatus.OUT_FOR_DELIVERY
        logger.info(f"Заказ {order_id} готов к доставке")
        invoke_callback(self.on_status_changed, order, shop_order)
        return shop_order

    async def cancel(self, order_id: str, reason: str) -> ShopOrder:
        order, shop_order = self._get(order_id)
        if not shop_order.can_be_cancelled():
            raise InvalidTransitionError(order_id, shop_order.status.value, "cancel")
        await self._backend.cancel_order(order_id, self._shop_id, reason)
        self._apply_cancel(order, shop_order, reason)
        logger.info(f"Заказ {order_id} отменён магазином. Причина: {reason}")
        return shop_order

    # --- наблюдение за бэкендом ---

    def apply_status(
        self,
        order_id: str,
        status: ShopOrderStatus,
        at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Отражает статус, пришедший из push или опроса"""
        order = self._orders.get(order_id)
        if order is None:
            return False
        shop_order = order.shop_order(self._shop_id)
        if shop_order.status == status:
            return False
        if not shop_order.can_advance_to(status):
            logger.warning(
                f"Заказ {order_id}: переход {shop_order.status.value} -> {status.value} проигнорирован"
            )
            return False

        at = at or self._scheduler.now()
        if status == ShopOrderStatus.CANCELLED:
            self._apply_cancel(order, shop_order, reason)
            return True

        shop_order.status = status
        if status == ShopOrderStatus.PREPARING and shop_order.preparing_started_at is None:
            shop_order.preparing_started_at = at
        elif status == ShopOrderStatus.DELIVERED:
            shop_order.delivered_at = at
        logger.info(f"Заказ {order_id} перешёл в {status.value}")
        invoke_callback(self.on_status_changed, order, shop_order)
        if status == ShopOrderStatus.DELIVERED:
            invoke_callback(self.on_delivered, order, shop_order)
        return True

    # --- отображение ---

    def countdown_display(self, order_id: str) -> str:
        order = self._orders.get(order_id)
        if order is None:
            return ""
        shop_order = order.shop_order(self._shop_id)
        now = self._scheduler.now()

        if shop_order.status == ShopOrderStatus.PENDING:
            remaining = self._auto_cancel_after - (now - as_utc(order.created_at))
            if remaining.total_seconds() <= 0:
                return "0:00"
            return countdown_text(remaining)

        if shop_order.status == ShopOrderStatus.PREPARING:
            return countdown_text(self._preparing_remaining(order, shop_order, now))

        return ""

    def is_overtime(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None:
            return False
        shop_order = order.shop_order(self._shop_id)
        if shop_order.status != ShopOrderStatus.PREPARING:
            return False
        return self._preparing_remaining(order, shop_order, self._scheduler.now()).total_seconds() <= 0

    # --- внутреннее ---

    def _preparing_remaining(self, order: Order, shop_order: ShopOrder, now: datetime) -> timedelta:
        started = shop_order.preparing_started_at or order.created_at
        return self._preparing_deadline - (now - as_utc(started))

    def _apply_cancel(self, order: Order, shop_order: ShopOrder, reason: Optional[str]) -> None:
        shop_order.status = ShopOrderStatus.CANCELLED
        shop_order.cancel_reason = reason
        invoke_callback(self.on_status_changed, order, shop_order)

    def _get(self, order_id: str):
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")
        return order, order.shop_order(self._shop_id)
