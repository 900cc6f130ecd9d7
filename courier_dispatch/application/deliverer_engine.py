import logging
from typing import Callable, List, Optional

from courier_dispatch.application.acceptance import AcceptanceArbiter
from courier_dispatch.application.interfaces import (
    DispatchBackend,
    KeyValueStore,
    NotificationsService,
    Scheduler,
    TimerHandle,
    invoke_callback,
)
from courier_dispatch.application.job_stage import JobStageMachine
from courier_dispatch.application.reconciliation import CourierOfferAlerts
from courier_dispatch.application.visibility_gate import OfferVisibilityGate
from courier_dispatch.config import settings
from courier_dispatch.domain.events import (
    AssignmentOffered,
    AssignmentRemoved,
    DeliveryOrderCancelled,
    JobCancelled,
    OrderStatusChanged,
    PushEvent,
)
from courier_dispatch.domain.exceptions import BackendServiceError, DelivererNotEligibleError
from courier_dispatch.domain.geo import distance_km
from courier_dispatch.domain.models import DelivererSession, JobStage, Offer

logger = logging.getLogger(__name__)


class DelivererEngine:
    """Движок курьера: один экземпляр на залогиненного курьера.

    Связывает гейт видимости, арбитр принятия, стадии доставки и уведомления,
    принимает push-события и периодически опрашивает бэкенд.
    """

    def __init__(
        self,
        backend: DispatchBackend,
        store: KeyValueStore,
        notifications: NotificationsService,
        scheduler: Scheduler,
        session: DelivererSession,
        poll_interval: int = settings.POLL_INTERVAL_SECONDS,
        min_work_credit: float = settings.MIN_WORK_CREDIT,
    ):
        self._backend = backend
        self._scheduler = scheduler
        self._poll_interval = poll_interval
        self._min_work_credit = min_work_credit
        self._poll_timer: TimerHandle | None = None
        self.session = session

        # внешние подписчики (UI)
        self.on_offer_timeout: Optional[Callable[[str], None]] = None
        self.on_offer_accepted: Optional[Callable[[Offer], None]] = None
        self.on_offer_rejected: Optional[Callable[[str], None]] = None
        self.on_stage_changed: Optional[Callable[[Optional[JobStage]], None]] = None

        self.alerts = CourierOfferAlerts(notifications, scheduler, session)
        self.gate = OfferVisibilityGate(
            scheduler,
            on_revealed=self.alerts.offer_revealed,
            on_timeout=self._offer_timed_out,
            on_removed=self.alerts.offer_gone,
        )
        self.jobs = JobStageMachine(
            backend,
            store,
            session,
            on_stage_changed=self._stage_changed,
            on_job_finished=self._job_finished,
        )
        self.arbiter = AcceptanceArbiter(
            backend,
            self.gate,
            self.jobs,
            session,
            on_accepted=self._offer_accepted,
            on_rejected=self._offer_rejected,
        )

    # --- реактивное состояние ---

    @property
    def visible_offers(self) -> List[Offer]:
        return self.gate.visible_offers

    @property
    def job_stage(self) -> Optional[JobStage]:
        return self.session.job_stage

    # --- жизненный цикл ---

    async def start(self) -> None:
        """Старт после логина или перезагрузки"""
        try:
            await self.jobs.resume()
        except BackendServiceError as e:
            logger.error(f"Не удалось восстановить текущий заказ: {e}")
        if self.session.is_online:
            self._start_polling()
            if self.session.can_receive_offers():
                self.gate.activate()
                await self.refresh()

    async def go_online(self) -> None:
        self.session.job_credit = await self._backend.get_job_credit()
        if not self.session.has_enough_credit(self._min_work_credit):
            raise DelivererNotEligibleError(
                f"Недостаточно кредитов: {self.session.job_credit}, требуется {self._min_work_credit}"
            )
        await self._backend.set_online_status(True)
        self.session.is_online = True
        logger.info(f"Курьер {self.session.deliverer_id} на линии")
        self._start_polling()
        if self.session.can_receive_offers():
            self.gate.activate()
            await self.refresh()

    async def go_offline(self) -> None:
        await self._backend.set_online_status(False)
        self.session.is_online = False
        self._stop_polling()
        self.gate.deactivate()
        self.alerts.reset()
        logger.info(f"Курьер {self.session.deliverer_id} ушёл с линии")

    def teardown(self) -> None:
        """Выход из аккаунта: все таймеры отменяются синхронно"""
        self._stop_polling()
        self.gate.deactivate()
        self.alerts.reset()

    async def refresh(self) -> None:
        if not self.session.can_receive_offers():
            return
        try:
            offers = await self._backend.poll_assignments()
        except BackendServiceError as e:
            # при сетевой ошибке текущий набор не трогаем
            logger.error(f"Ошибка опроса назначений: {e}")
            return
        if not self.session.can_receive_offers():
            return
        self.gate.sync(self._with_distance(offer) for offer in offers)

    # --- push-события ---

    async def handle_event(self, event: PushEvent) -> None:
        if isinstance(event, AssignmentOffered):
            if self.session.can_receive_offers():
                self.gate.offer_received(self._with_distance(event.to_offer()))
        elif isinstance(event, AssignmentRemoved):
            self.gate.remove(event.assignment_id)
        elif isinstance(event, OrderStatusChanged):
            await self.jobs.observe_shop_order_status(event.order_id, event.status)
        elif isinstance(event, (JobCancelled, DeliveryOrderCancelled)):
            await self.jobs.job_cancelled_externally(event.order_id)
        else:
            logger.debug(f"Событие {event.event} не относится к курьеру")

    # --- команды курьера ---

    async def accept(self, assignment_id: str) -> Offer:
        return await self.arbiter.attempt_accept(assignment_id)

    def view_offer(self, assignment_id: Optional[str]) -> None:
        self.alerts.view_offer(assignment_id)

    # --- внутреннее ---

    def _with_distance(self, offer: Offer) -> Offer:
        if offer.distance_km is not None:
            return offer
        distance = distance_km(self.session.location, offer.pickup_location)
        if distance is None:
            return offer
        return offer.model_copy(update={"distance_km": distance})

    def _start_polling(self) -> None:
        if self._poll_timer is None:
            self._poll_timer = self._scheduler.call_every(self._poll_interval, self.refresh)

    def _stop_polling(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _offer_timed_out(self, assignment_id: str) -> None:
        self.alerts.offer_gone(assignment_id)
        invoke_callback(self.on_offer_timeout, assignment_id)

    def _offer_accepted(self, offer: Offer) -> None:
        self.alerts.reset()
        invoke_callback(self.on_offer_accepted, offer)

    def _offer_rejected(self, assignment_id: str) -> None:
        invoke_callback(self.on_offer_rejected, assignment_id)

    def _stage_changed(self, stage: Optional[JobStage]) -> None:
        invoke_callback(self.on_stage_changed, stage)

    async def _job_finished(self) -> None:
        """После завершения или отмены обратно на линию и новый поиск"""
        if not self.session.is_online:
            try:
                await self._backend.set_online_status(True)
                self.session.is_online = True
            except BackendServiceError as e:
                logger.error(f"Не удалось вернуть курьера на линию: {e}")
                return
        self._start_polling()
        self.gate.activate()
        await self.refresh()
