from typing import Annotated, Literal, Optional, Union
from pydantic import Field, TypeAdapter, ValidationError

from courier_dispatch.domain.exceptions import InvalidEventError
from courier_dispatch.domain.models import CamelModel, Offer, Order, ShopOrderStatus


class AssignmentOffered(Offer):
    """Бэкенд создал новое предложение доставки"""
    event: Literal["assignment-offered"] = "assignment-offered"

    def to_offer(self) -> Offer:
        return Offer.model_validate(self.model_dump(exclude={"event"}))


class AssignmentRemoved(CamelModel):
    """Предложение принято кем-то или отозвано"""
    event: Literal["assignment-removed"] = "assignment-removed"
    assignment_id: str


class OrderStatusChanged(CamelModel):
    event: Literal["order-status-changed"] = "order-status-changed"
    order_id: str
    shop_id: Optional[str] = None
    status: ShopOrderStatus


class NewOrder(CamelModel):
    event: Literal["new-order"] = "new-order"
    order_id: str
    order: Optional[Order] = None


class JobCancelled(CamelModel):
    """Курьер снял себя с заказа (в том числе с другого устройства)"""
    event: Literal["job-cancelled"] = "job-cancelled"
    order_id: str
    message: Optional[str] = None


class DeliveryOrderCancelled(CamelModel):
    """Магазин отменил заказ, который уже везёт курьер"""
    event: Literal["delivery-order-cancelled"] = "delivery-order-cancelled"
    order_id: str
    reason: Optional[str] = None


PushEvent = Annotated[
    Union[
        AssignmentOffered,
        AssignmentRemoved,
        OrderStatusChanged,
        NewOrder,
        JobCancelled,
        DeliveryOrderCancelled,
    ],
    Field(discriminator="event"),
]

_push_event_adapter = TypeAdapter(PushEvent)


def parse_event(name: str, payload: dict) -> PushEvent:
    """Разбор push-события на границе: имя события + тело"""
    if not isinstance(payload, dict):
        raise InvalidEventError(f"Тело события {name} должно быть объектом")
    try:
        return _push_event_adapter.validate_python({**payload, "event": name})
    except ValidationError as e:
        raise InvalidEventError(f"Некорректное событие {name}: {e}") from e
