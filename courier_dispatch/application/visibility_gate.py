import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from courier_dispatch.application.interfaces import Scheduler, TimerHandle, invoke_callback
from courier_dispatch.config import settings
from courier_dispatch.domain.models import Offer, VisibleOffer, as_utc

logger = logging.getLogger(__name__)


def reveal_delay(distance_km: Optional[float], unknown_delay: int = settings.UNKNOWN_DISTANCE_REVEAL_SECONDS) -> int:
    """Задержка показа предложения в секундах в зависимости от расстояния.

    Ближние курьеры видят заказ раньше, чтобы их не обгоняли из-за задержки
    доставки уведомлений. Неизвестное расстояние даёт максимальную задержку.
    """
    if distance_km is None or not math.isfinite(distance_km) or distance_km < 0:
        return unknown_delay
    if distance_km <= 0.1:
        return 1
    if distance_km <= 1:
        return 10
    return 10 + math.ceil((distance_km - 1) * 10)


class OfferVisibilityGate:
    """Решает, когда предложение становится видно курьеру и когда исчезает.

    Три пула по assignment_id:
      * known: все кандидаты из последнего опроса и push-событий;
      * scheduled: ждут отложенного показа;
      * visible: показаны, у каждого свой 30-секундный дедлайн.
    Снятые с показа (таймаут, удаление, принятие) запоминаются в retired и
    не возвращаются, пока бэкенд не предложит их заново с более новым created_at.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        accept_window: int = settings.OFFER_ACCEPT_WINDOW_SECONDS,
        unknown_delay: int = settings.UNKNOWN_DISTANCE_REVEAL_SECONDS,
        on_revealed: Optional[Callable[[Offer], None]] = None,
        on_timeout: Optional[Callable[[str], None]] = None,
        on_removed: Optional[Callable[[str], None]] = None,
    ):
        self._scheduler = scheduler
        self._accept_window = accept_window
        self._unknown_delay = unknown_delay
        self.on_revealed = on_revealed
        self.on_timeout = on_timeout
        self.on_removed = on_removed

        self._active = False
        self._known: Dict[str, Offer] = {}
        self._scheduled: Dict[str, TimerHandle] = {}
        self._visible: Dict[str, VisibleOffer] = {}
        self._countdowns: Dict[str, TimerHandle] = {}
        # assignment_id -> created_at снятого предложения (None, если снято без данных)
        self._retired: Dict[str, Optional[datetime]] = {}

    # --- состояние ---

    @property
    def active(self) -> bool:
        return self._active

    @property
    def visible_offers(self) -> List[Offer]:
        entries = sorted(self._visible.values(), key=lambda v: v.revealed_at)
        return [entry.offer for entry in entries]

    def get_visible(self, assignment_id: str) -> Optional[VisibleOffer]:
        return self._visible.get(assignment_id)

    def is_visible(self, assignment_id: str) -> bool:
        return assignment_id in self._visible

    def is_scheduled(self, assignment_id: str) -> bool:
        return assignment_id in self._scheduled

    def seconds_left(self, assignment_id: str) -> Optional[float]:
        entry = self._visible.get(assignment_id)
        if entry is None:
            return None
        return entry.seconds_left(self._scheduler.now())

    # --- жизненный цикл ---

    def activate(self) -> None:
        if not self._active:
            logger.info("Гейт предложений активирован")
        self._active = True

    def deactivate(self) -> None:
        """Курьер ушёл с линии или взял заказ: всё очищается синхронно"""
        self._active = False
        self.clear()
        logger.info("Гейт предложений деактивирован")

    def clear(self) -> None:
        for handle in self._scheduled.values():
            handle.cancel()
        for handle in self._countdowns.values():
            handle.cancel()
        self._scheduled.clear()
        self._countdowns.clear()
        self._visible.clear()
        self._known.clear()
        self._retired.clear()

    # --- входящие данные ---

    def sync(self, offers: Iterable[Offer]) -> None:
        """Слияние свежего результата опроса с текущим состоянием"""
        if not self._active:
            logger.info("Гейт неактивен, результат опроса проигнорирован")
            return

        fresh = {offer.assignment_id: offer for offer in offers}

        for assignment_id in list(self._scheduled):
            if assignment_id not in fresh:
                # заказ забрали или отозвали до показа
                self._scheduled.pop(assignment_id).cancel()
                self._known.pop(assignment_id, None)

        for assignment_id in list(self._visible):
            if assignment_id not in fresh:
                self._drop_visible(assignment_id)
                self._retire(assignment_id, self._known.pop(assignment_id, None))
                logger.info(f"Предложение {assignment_id} пропало из опроса, снято с показа")
                invoke_callback(self.on_removed, assignment_id)

        for offer in fresh.values():
            self._consider(offer, reoffered=False)

    def offer_received(self, offer: Offer, reoffered: bool = True) -> None:
        """Предложение пришло push-событием: это явное (повторное) предложение"""
        if not self._active:
            return
        self._consider(offer, reoffered=reoffered)

    def remove(self, assignment_id: str) -> bool:
        """Push "assignment removed": убираем сразу, независимо от таймеров"""
        offer = self._known.pop(assignment_id, None)
        was_scheduled = assignment_id in self._scheduled
        if was_scheduled:
            self._scheduled.pop(assignment_id).cancel()
        was_visible = self._drop_visible(assignment_id)
        self._retire(assignment_id, offer)

        if was_visible:
            logger.info(f"Предложение {assignment_id} удалено")
            invoke_callback(self.on_removed, assignment_id)
        return was_visible or was_scheduled

    def consume(self, assignment_id: str) -> Optional[Offer]:
        """Предложение принято этим курьером"""
        offer = self._known.pop(assignment_id, None)
        if assignment_id in self._scheduled:
            self._scheduled.pop(assignment_id).cancel()
        entry = self._visible.get(assignment_id)
        self._drop_visible(assignment_id)
        self._retire(assignment_id, offer)
        if entry is not None:
            return entry.offer
        return offer

    # --- внутреннее ---

    def _consider(self, offer: Offer, reoffered: bool) -> None:
        assignment_id = offer.assignment_id

        if assignment_id in self._visible:
            # дедлайн не сбрасываем, только обновляем данные
            self._known[assignment_id] = offer
            self._visible[assignment_id].offer = offer
            return

        if assignment_id in self._scheduled:
            self._known[assignment_id] = offer
            return

        if self._is_retired(offer, reoffered):
            return
        self._retired.pop(assignment_id, None)
        self._known[assignment_id] = offer

        now = self._scheduler.now()
        delay = reveal_delay(offer.distance_km, self._unknown_delay)
        remaining = delay - offer.age(now)

        if remaining <= 0:
            self._reveal(assignment_id)
            return

        self._scheduled[assignment_id] = self._scheduler.call_later(
            remaining, lambda: self._reveal_due(assignment_id)
        )
        logger.info(f"Предложение {assignment_id} будет показано через {remaining:.1f} с")

    def _is_retired(self, offer: Offer, reoffered: bool) -> bool:
        if offer.assignment_id not in self._retired:
            return False
        retired_created_at = self._retired[offer.assignment_id]
        if retired_created_at is None:
            # снято без данных: вернуть может только push
            return not reoffered
        # повторная доставка того же push не считается новым предложением,
        # бэкенд пересоздал предложение, только если created_at новее
        return as_utc(offer.created_at) <= retired_created_at

    def _retire(self, assignment_id: str, offer: Optional[Offer]) -> None:
        self._retired[assignment_id] = as_utc(offer.created_at) if offer else None

    def _reveal_due(self, assignment_id: str) -> None:
        self._scheduled.pop(assignment_id, None)
        if not self._active:
            return
        if assignment_id not in self._known or assignment_id in self._visible:
            return
        if assignment_id in self._retired:
            return
        self._reveal(assignment_id)

    def _reveal(self, assignment_id: str) -> None:
        offer = self._known[assignment_id]
        now = self._scheduler.now()
        self._visible[assignment_id] = VisibleOffer(
            offer=offer,
            revealed_at=now,
            deadline=now + timedelta(seconds=self._accept_window),
        )
        self._countdowns[assignment_id] = self._scheduler.call_later(
            self._accept_window, lambda: self._countdown_expired(assignment_id)
        )
        logger.info(f"Предложение {assignment_id} показано курьеру")
        invoke_callback(self.on_revealed, offer)

    def _countdown_expired(self, assignment_id: str) -> None:
        self._countdowns.pop(assignment_id, None)
        entry = self._visible.pop(assignment_id, None)
        if entry is None:
            return
        self._known.pop(assignment_id, None)
        self._retire(assignment_id, entry.offer)
        logger.info(f"Время на принятие {assignment_id} истекло")
        invoke_callback(self.on_timeout, assignment_id)

    def _drop_visible(self, assignment_id: str) -> bool:
        handle = self._countdowns.pop(assignment_id, None)
        if handle is not None:
            handle.cancel()
        return self._visible.pop(assignment_id, None) is not None
