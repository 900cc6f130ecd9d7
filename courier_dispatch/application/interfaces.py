import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Union

from courier_dispatch.domain.models import Offer, Order, ShopOrderStatus

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Union[None, Awaitable[Any]]]


class DispatchBackend(ABC):
    """Источник истины по заказам и назначениям"""

    @abstractmethod
    async def poll_assignments(self) -> List[Offer]:
        pass

    @abstractmethod
    async def accept_offer(self, assignment_id: str) -> None:
        """Единственная атомарная точка решения: OfferUnavailableError, если опоздали"""
        pass

    @abstractmethod
    async def get_current_order(self) -> Optional[Order]:
        pass

    @abstractmethod
    async def confirm_pickup(self, order_id: str, shop_id: str) -> None:
        pass

    @abstractmethod
    async def confirm_delivery(self, order_id: str, shop_id: str) -> None:
        pass

    @abstractmethod
    async def cancel_job(self, order_id: str, shop_id: str) -> None:
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str, shop_id: str, reason: str) -> None:
        pass

    @abstractmethod
    async def update_order_status(self, order_id: str, shop_id: str, status: ShopOrderStatus) -> None:
        pass

    @abstractmethod
    async def get_shop_orders(self, shop_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def set_online_status(self, is_online: bool) -> None:
        pass

    @abstractmethod
    async def get_job_credit(self) -> float:
        pass


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class NotificationsService(ABC):
    @abstractmethod
    async def send(self, message: str, reference_id: str, recipient_id: str, kind: str = "info") -> bool:
        pass


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        pass

    @abstractmethod
    def cancelled(self) -> bool:
        pass


class Scheduler(ABC):
    """Единый источник времени и таймеров для движка.

    Колбэк таймера может вернуть awaitable: реализация обязана его дождаться
    (или запустить задачей), не блокируя остальные таймеры.
    """

    @abstractmethod
    def now(self) -> datetime:
        pass

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        pass

    def call_soon(self, callback: TimerCallback) -> TimerHandle:
        return self.call_later(0, callback)

    def call_every(self, interval: float, callback: TimerCallback) -> TimerHandle:
        return _RepeatingTimer(self, interval, callback)


class _RepeatingTimer(TimerHandle):
    def __init__(self, scheduler: Scheduler, interval: float, callback: TimerCallback):
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._current: TimerHandle | None = None
        self._arm()

    def _arm(self):
        self._current = self._scheduler.call_later(self._interval, self._fire)

    def _fire(self):
        if self._cancelled:
            return None
        self._arm()
        return self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        if self._current is not None:
            self._current.cancel()
            self._current = None

    def cancelled(self) -> bool:
        return self._cancelled


def invoke_callback(callback: Optional[Callable], *args) -> None:
    """Вызов внешнего колбэка: ошибки подписчика не ломают движок"""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.error(f"Ошибка в колбэке {callback}: {e}", exc_info=True)
