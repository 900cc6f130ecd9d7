import logging
from typing import Iterable, Optional, Set

from courier_dispatch.application.interfaces import NotificationsService, Scheduler, TimerHandle
from courier_dispatch.config import settings
from courier_dispatch.domain.models import DelivererSession, Offer

logger = logging.getLogger(__name__)


class ShopAlertLoop:
    """Сигнал магазину о новых заказах.

    Одно и то же событие может прийти и через push, и через опрос, поэтому
    храним множество уже учтённых order_id. Пока есть непросмотренные новые
    заказы, сигнал повторяется каждые 5 секунд.
    """

    def __init__(
        self,
        notifications: NotificationsService,
        scheduler: Scheduler,
        shop_id: str,
        interval: int = settings.REALERT_INTERVAL_SECONDS,
    ):
        self._notifications = notifications
        self._scheduler = scheduler
        self._shop_id = shop_id
        self._interval = interval

        self._notified: Set[str] = set()
        self._unacknowledged: Set[str] = set()
        self._viewing_order_id: Optional[str] = None
        self._loop: TimerHandle | None = None

    @property
    def unacknowledged(self) -> Set[str]:
        return set(self._unacknowledged)

    @property
    def ringing(self) -> bool:
        return self._loop is not None

    def new_order(self, order_id: str) -> bool:
        """Возвращает True, если событие учтено впервые"""
        if order_id in self._notified:
            return False
        self._notified.add(order_id)

        if self._viewing_order_id == order_id:
            # магазин уже смотрит этот заказ: одно уведомление без повтора
            self._scheduler.call_soon(
                lambda: self._send(f"New Order {order_id[-4:]} received!", order_id, "success")
            )
            return True

        self._unacknowledged.add(order_id)
        self._ensure_loop()
        return True

    def sync_pending(self, pending_order_ids: Iterable[str]) -> None:
        """Сверка с текущим списком pending заказов из опроса"""
        pending = set(pending_order_ids)
        for order_id in pending:
            self.new_order(order_id)
        for order_id in list(self._unacknowledged):
            if order_id not in pending:
                self.order_left_pending(order_id)

    def view_order(self, order_id: str) -> None:
        self._viewing_order_id = order_id
        self.acknowledge(order_id)

    def leave_order_view(self) -> None:
        self._viewing_order_id = None

    def acknowledge(self, order_id: str) -> None:
        self._unacknowledged.discard(order_id)
        self._stop_if_idle()

    def order_left_pending(self, order_id: str) -> None:
        self._unacknowledged.discard(order_id)
        self._stop_if_idle()

    def stop(self) -> None:
        if self._loop is not None:
            self._loop.cancel()
            self._loop = None

    def _ensure_loop(self) -> None:
        if self._loop is not None or not self._unacknowledged:
            return
        self._scheduler.call_soon(lambda: self._send("You have new orders!", self._shop_id, "warning"))
        self._loop = self._scheduler.call_every(self._interval, self._repeat)
        logger.info(f"Магазин {self._shop_id}: сигнал о новых заказах включён")

    def _repeat(self):
        if not self._unacknowledged:
            self.stop()
            return None
        return self._send("You have new orders! Please check.", self._shop_id, "warning")

    def _stop_if_idle(self) -> None:
        if not self._unacknowledged and self._loop is not None:
            self.stop()
            logger.info(f"Магазин {self._shop_id}: сигнал о новых заказах выключен")

    async def _send(self, message: str, reference_id: str, kind: str) -> None:
        sent = await self._notifications.send(
            message=message, reference_id=reference_id, recipient_id=self._shop_id, kind=kind
        )
        if not sent:
            logger.info(f"Не отправлено уведомление '{message}' для магазина {self._shop_id}")


class CourierOfferAlerts:
    """Уведомления курьера о новых предложениях: ровно одно на появление в видимом наборе"""

    def __init__(self, notifications: NotificationsService, scheduler: Scheduler, session: DelivererSession):
        self._notifications = notifications
        self._scheduler = scheduler
        self._session = session

        self._notified: Set[str] = set()
        self._viewing_assignment_id: Optional[str] = None
        self.enabled = True
        self.unread_count = 0

    def offer_revealed(self, offer: Offer) -> bool:
        assignment_id = offer.assignment_id
        if assignment_id in self._notified:
            return False
        self._notified.add(assignment_id)

        if self._suppressed(assignment_id):
            logger.info(f"Уведомление о {assignment_id} подавлено")
            return False

        self.unread_count += 1
        shop_name = offer.shop_name or "Restaurant"
        message = f"New delivery job available! Earnings: {offer.delivery_fee:.2f} - Pickup at {shop_name}"
        self._scheduler.call_soon(lambda: self._send(message, assignment_id))
        return True

    def offer_gone(self, assignment_id: str) -> None:
        """Предложение ушло из видимого набора, следующее появление снова новое"""
        self._notified.discard(assignment_id)
        if self._viewing_assignment_id == assignment_id:
            self._viewing_assignment_id = None

    def view_offer(self, assignment_id: Optional[str]) -> None:
        self._viewing_assignment_id = assignment_id

    def mark_read(self) -> None:
        self.unread_count = 0

    def reset(self) -> None:
        self._notified.clear()
        self._viewing_assignment_id = None
        self.unread_count = 0

    def _suppressed(self, assignment_id: str) -> bool:
        if not self.enabled:
            return True
        if self._session.has_active_job():
            return True
        return self._viewing_assignment_id == assignment_id

    async def _send(self, message: str, assignment_id: str) -> None:
        sent = await self._notifications.send(
            message=message,
            reference_id=assignment_id,
            recipient_id=self._session.deliverer_id,
            kind="delivery_assignment",
        )
        if sent:
            logger.info(f"Курьер {self._session.deliverer_id} уведомлён о {assignment_id}")
        else:
            logger.info(f"Не отправлено уведомление о {assignment_id}")
