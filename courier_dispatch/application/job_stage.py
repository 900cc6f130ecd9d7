import logging
from typing import Awaitable, Callable, Optional

from courier_dispatch.application.interfaces import DispatchBackend, KeyValueStore, invoke_callback
from courier_dispatch.domain.exceptions import BackendServiceError, InvalidTransitionError, PickupBlockedError
from courier_dispatch.domain.models import DelivererSession, JobStage, Order, ShopOrderStatus

logger = logging.getLogger(__name__)

CANCELLABLE_STAGES = (JobStage.TRAVELING_TO_RESTAURANT, JobStage.AT_RESTAURANT)
# Статусы, при которых ресторан ещё не готов отдать заказ
NOT_READY_STATUSES = (ShopOrderStatus.PENDING, ShopOrderStatus.PREPARING)


def stage_key(order_id: str) -> str:
    return f"delivery_stage:{order_id}"


class JobStageMachine:
    """Стадии активной доставки курьера.

    Стадия сохраняется в KeyValueStore по order_id, чтобы после перезагрузки
    продолжить с того же места. Переходы с вызовом бэкенда применяются только
    после успешного ответа, локальные (жесты прибытия) сразу.
    """

    def __init__(
        self,
        backend: DispatchBackend,
        store: KeyValueStore,
        session: DelivererSession,
        on_stage_changed: Optional[Callable[[Optional[JobStage]], None]] = None,
        on_job_finished: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._backend = backend
        self._store = store
        self._session = session
        self.on_stage_changed = on_stage_changed
        self.on_job_finished = on_job_finished

    @property
    def stage(self) -> Optional[JobStage]:
        return self._session.job_stage

    @property
    def pickup_blocked(self) -> bool:
        """Пока статус ресторана неизвестен, забрать заказ тоже нельзя"""
        status = self._session.shop_order_status
        return self.stage == JobStage.AT_RESTAURANT and (status is None or status in NOT_READY_STATUSES)

    async def start_job(self, order_id: str, shop_id: str, shop_order_status: Optional[ShopOrderStatus] = None) -> None:
        """Курьер получил заказ: первая стадия"""
        self._session.current_order_id = order_id
        self._session.current_shop_id = shop_id
        self._session.shop_order_status = shop_order_status
        await self._move_to(JobStage.TRAVELING_TO_RESTAURANT)
        logger.info(f"Курьер {self._session.deliverer_id} начал доставку заказа {order_id}")
        if shop_order_status is None:
            try:
                await self.load_shop_order_status()
            except BackendServiceError as e:
                logger.warning(f"Не удалось получить статус заказа {order_id}: {e}")

    async def load_shop_order_status(self) -> Optional[ShopOrderStatus]:
        """Статус заказа у магазина из текущего заказа курьера на бэкенде"""
        order = await self._backend.get_current_order()
        if order is None or order.id != self._session.current_order_id:
            return self._session.shop_order_status
        shop_order = order.shop_order(self._session.current_shop_id) or order.shop_orders[0]
        if shop_order.status == ShopOrderStatus.CANCELLED:
            await self.job_cancelled_externally(order.id)
            return shop_order.status
        self._session.shop_order_status = shop_order.status
        logger.info(f"Статус заказа {order.id} у магазина: {shop_order.status.value}")
        return shop_order.status

    async def resume(self) -> Optional[JobStage]:
        """Восстановление стадии после перезагрузки"""
        order = await self._backend.get_current_order()
        if order is None:
            self._session.clear_job()
            return None

        shop_order = order.shop_orders[0]
        if shop_order.status == ShopOrderStatus.CANCELLED:
            logger.info(f"Текущий заказ {order.id} отменён, стадия сброшена")
            await self._store.delete(stage_key(order.id))
            self._session.clear_job()
            return None

        self._session.current_order_id = order.id
        self._session.current_shop_id = shop_order.shop_id
        self._session.shop_order_status = shop_order.status

        saved = await self._store.get(stage_key(order.id))
        stage = self._parse_stage(saved) or self._infer_stage(order)
        self._session.job_stage = stage
        await self._store.set(stage_key(order.id), stage.value)
        logger.info(f"Заказ {order.id} восстановлен на стадии {stage.value}")
        invoke_callback(self.on_stage_changed, stage)
        return stage

    async def confirm_arrival(self) -> None:
        """Курьер у ресторана, только локально"""
        self._require(JobStage.TRAVELING_TO_RESTAURANT, "confirm_arrival")
        await self._move_to(JobStage.AT_RESTAURANT)

    async def confirm_pickup(self) -> None:
        self._require(JobStage.AT_RESTAURANT, "confirm_pickup")
        if self._session.shop_order_status is None:
            await self.load_shop_order_status()
            self._require(JobStage.AT_RESTAURANT, "confirm_pickup")
        if self.pickup_blocked:
            status = self._session.shop_order_status
            raise PickupBlockedError(
                self._session.current_order_id,
                status.value if status else "unknown",
                "confirm_pickup",
            )
        # ошибка бэкенда пробрасывается, стадия не меняется
        await self._backend.confirm_pickup(self._session.current_order_id, self._session.current_shop_id)
        await self._move_to(JobStage.TRAVELING_TO_CUSTOMER)

    async def confirm_customer_arrival(self) -> None:
        self._require(JobStage.TRAVELING_TO_CUSTOMER, "confirm_customer_arrival")
        await self._move_to(JobStage.CONFIRMING_DELIVERY)

    async def confirm_delivery(self) -> None:
        """Подтверждение доставки и оплаты"""
        self._require(JobStage.CONFIRMING_DELIVERY, "confirm_delivery")
        order_id = self._session.current_order_id
        await self._backend.confirm_delivery(order_id, self._session.current_shop_id)
        self._session.shop_order_status = ShopOrderStatus.DELIVERED
        self._session.job_stage = JobStage.COMPLETED
        await self._store.delete(stage_key(order_id))
        logger.info(f"Заказ {order_id} доставлен")
        invoke_callback(self.on_stage_changed, JobStage.COMPLETED)

    async def acknowledge_completion(self) -> None:
        """Курьер закрыл итоговый экран и снова готов к заказам"""
        self._require(JobStage.COMPLETED, "acknowledge_completion")
        await self._finish()

    async def cancel_job(self) -> None:
        """Курьер отказывается от заказа; заказ уходит другим курьерам"""
        if self.stage not in CANCELLABLE_STAGES:
            raise InvalidTransitionError(
                self._session.current_order_id or "-", self._stage_name(), "cancel_job"
            )
        order_id = self._session.current_order_id
        await self._backend.cancel_job(order_id, self._session.current_shop_id)
        self._session.job_stage = JobStage.CANCELLED_BY_COURIER
        await self._store.delete(stage_key(order_id))
        logger.info(f"Курьер {self._session.deliverer_id} отказался от заказа {order_id}")
        invoke_callback(self.on_stage_changed, JobStage.CANCELLED_BY_COURIER)
        await self._finish()

    async def job_cancelled_externally(self, order_id: str) -> bool:
        """Заказ снят бэкендом (отмена магазином или с другого устройства)"""
        if not self._session.has_active_job() or self._session.current_order_id != order_id:
            return False
        await self._store.delete(stage_key(order_id))
        logger.info(f"Заказ {order_id} отменён извне, активная доставка сброшена")
        await self._finish()
        return True

    async def observe_shop_order_status(self, order_id: str, status: ShopOrderStatus) -> None:
        """Статус заказа магазина: только наблюдаем, не владеем"""
        if self._session.current_order_id != order_id:
            return
        if status == ShopOrderStatus.CANCELLED:
            await self.job_cancelled_externally(order_id)
            return
        self._session.shop_order_status = status
        logger.info(f"Статус заказа {order_id} у магазина: {status.value}")

    # --- внутреннее ---

    async def _move_to(self, stage: JobStage) -> None:
        self._session.job_stage = stage
        await self._store.set(stage_key(self._session.current_order_id), stage.value)
        invoke_callback(self.on_stage_changed, stage)

    async def _finish(self) -> None:
        self._session.clear_job()
        invoke_callback(self.on_stage_changed, None)
        if self.on_job_finished is not None:
            await self.on_job_finished()

    def _require(self, expected: JobStage, action: str) -> None:
        if self.stage != expected:
            raise InvalidTransitionError(self._session.current_order_id or "-", self._stage_name(), action)

    def _stage_name(self) -> str:
        return self.stage.value if self.stage else "idle"

    @staticmethod
    def _parse_stage(saved: Optional[str]) -> Optional[JobStage]:
        if not saved:
            return None
        try:
            stage = JobStage(saved)
        except ValueError:
            logger.warning(f"Неизвестная сохранённая стадия: {saved}")
            return None
        if stage in (JobStage.COMPLETED, JobStage.CANCELLED_BY_COURIER):
            return None
        return stage

    @staticmethod
    def _infer_stage(order: Order) -> JobStage:
        shop_order = order.shop_orders[0]
        if shop_order.picked_up_at is not None:
            return JobStage.TRAVELING_TO_CUSTOMER
        return JobStage.TRAVELING_TO_RESTAURANT
