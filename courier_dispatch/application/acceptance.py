import logging
from typing import Callable, Optional, Set

from courier_dispatch.application.interfaces import DispatchBackend, invoke_callback
from courier_dispatch.application.job_stage import JobStageMachine
from courier_dispatch.application.visibility_gate import OfferVisibilityGate
from courier_dispatch.domain.exceptions import (
    AcceptInProgressError,
    BackendServiceError,
    DelivererNotEligibleError,
    OfferNotVisibleError,
    OfferUnavailableError,
)
from courier_dispatch.domain.models import DelivererSession, Offer

logger = logging.getLogger(__name__)


class AcceptanceArbiter:
    """Принятие предложения: истина о том, кто успел первым, только у бэкенда.

    Клиент никогда не считает принятие успешным до подтверждения. Если бэкенд
    ответил "уже занято", предложение убирается локально и не возвращается.
    """

    def __init__(
        self,
        backend: DispatchBackend,
        gate: OfferVisibilityGate,
        jobs: JobStageMachine,
        session: DelivererSession,
        on_accepted: Optional[Callable[[Offer], None]] = None,
        on_rejected: Optional[Callable[[str], None]] = None,
    ):
        self._backend = backend
        self._gate = gate
        self._jobs = jobs
        self._session = session
        self.on_accepted = on_accepted
        self.on_rejected = on_rejected
        self._in_flight: Set[str] = set()

    def is_accepting(self, assignment_id: str) -> bool:
        return assignment_id in self._in_flight

    async def attempt_accept(self, assignment_id: str) -> Offer:
        entry = self._gate.get_visible(assignment_id)
        if entry is None:
            raise OfferNotVisibleError(assignment_id)
        if not self._session.can_receive_offers():
            raise DelivererNotEligibleError(
                f"Курьер {self._session.deliverer_id} не может принимать заказы"
            )
        if assignment_id in self._in_flight:
            raise AcceptInProgressError(assignment_id)

        offer = entry.offer
        logger.info(f"Курьер {self._session.deliverer_id} принимает предложение {assignment_id}")
        self._in_flight.add(assignment_id)
        try:
            await self._backend.accept_offer(assignment_id)
        except OfferUnavailableError:
            # отказ бэкенда важнее любого локального состояния
            self._gate.remove(assignment_id)
            logger.info(f"Предложение {assignment_id} уже занято")
            invoke_callback(self.on_rejected, assignment_id)
            raise
        except BackendServiceError as e:
            logger.error(f"Ошибка принятия {assignment_id}: {e}")
            raise
        finally:
            self._in_flight.discard(assignment_id)

        # пока шёл запрос, таймер мог снять предложение, но бэкенд всё равно прав
        self._gate.consume(assignment_id)
        self._gate.deactivate()
        await self._jobs.start_job(offer.order_id, offer.shop_id, offer.order_status)
        logger.info(f"Предложение {assignment_id} принято, заказ {offer.order_id}")
        invoke_callback(self.on_accepted, offer)
        return offer
