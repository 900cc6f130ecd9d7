from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def as_utc(value: datetime) -> datetime:
    """Наивные даты из бэкенда считаем UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CamelModel(BaseModel):
    """Модели бэкенда приходят в camelCase"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ShopOrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


_STATUS_RANK = {
    ShopOrderStatus.PENDING: 0,
    ShopOrderStatus.PREPARING: 1,
    ShopOrderStatus.OUT_FOR_DELIVERY: 2,
    ShopOrderStatus.DELIVERED: 3,
}


class JobStage(str, Enum):
    TRAVELING_TO_RESTAURANT = "traveling_to_restaurant"
    AT_RESTAURANT = "at_restaurant"
    TRAVELING_TO_CUSTOMER = "traveling_to_customer"
    CONFIRMING_DELIVERY = "confirming_delivery"
    COMPLETED = "completed"
    CANCELLED_BY_COURIER = "cancelled_by_courier"


class Location(CamelModel):
    """Value Object — точка на карте"""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    text: Optional[str] = None


class ShopOrder(CamelModel):
    """Часть заказа, относящаяся к одному магазину"""
    shop_id: str
    status: ShopOrderStatus = ShopOrderStatus.PENDING
    subtotal: float = 0
    items: List[dict] = Field(default_factory=list)
    assigned_deliverer: str | None = None
    preparing_started_at: datetime | None = None
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    cancel_reason: str | None = None

    def can_be_prepared(self) -> bool:
        """Бизнес-правило: принять в работу можно только pending"""
        return self.status == ShopOrderStatus.PENDING

    def can_be_sent_out(self) -> bool:
        """Бизнес-правило: передать курьеру можно только preparing"""
        return self.status == ShopOrderStatus.PREPARING

    def can_be_cancelled(self) -> bool:
        """Бизнес-правило: отменить можно pending или preparing, пока заказ не забран"""
        return (
            self.status in (ShopOrderStatus.PENDING, ShopOrderStatus.PREPARING)
            and self.picked_up_at is None
        )

    def is_terminal(self) -> bool:
        return self.status in (ShopOrderStatus.DELIVERED, ShopOrderStatus.CANCELLED)

    def can_advance_to(self, status: ShopOrderStatus) -> bool:
        """Статусы только растут, кроме выхода в cancelled"""
        if status == ShopOrderStatus.CANCELLED:
            return self.can_be_cancelled()
        if self.is_terminal():
            return False
        return _STATUS_RANK[status] > _STATUS_RANK[self.status]


class Order(CamelModel):
    """Domain Entity — заказ покупателя"""
    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    created_at: datetime
    payment_method: str = "cash"
    total_amount: float = 0
    shop_orders: List[ShopOrder] = Field(min_length=1)

    def shop_order(self, shop_id: str) -> Optional[ShopOrder]:
        return next((so for so in self.shop_orders if so.shop_id == shop_id), None)


class Offer(CamelModel):
    """DeliveryAssignment: предложение доставки, ещё не принятое курьером"""
    assignment_id: str
    order_id: str
    shop_id: str
    shop_name: str | None = None
    created_at: datetime
    distance_km: float | None = Field(
        default=None, validation_alias=AliasChoices("distanceKm", "distance", "distance_km")
    )
    delivery_fee: float = 0
    pickup_location: Location | None = None
    delivery_address: Location | None = None
    order_status: ShopOrderStatus | None = None

    def age(self, now: datetime) -> float:
        """Сколько секунд прошло с момента создания предложения"""
        return (now - as_utc(self.created_at)).total_seconds()


class VisibleOffer(BaseModel):
    """Предложение, которое курьер сейчас видит, с дедлайном на принятие"""
    offer: Offer
    revealed_at: datetime
    deadline: datetime

    def seconds_left(self, now: datetime) -> float:
        return max((self.deadline - now).total_seconds(), 0.0)


class DelivererSession(BaseModel):
    """Сессия курьера на клиенте: одна на залогиненного курьера"""
    deliverer_id: str
    is_online: bool = False
    current_order_id: str | None = None
    current_shop_id: str | None = None
    job_stage: JobStage | None = None
    shop_order_status: ShopOrderStatus | None = None
    job_credit: float = 0
    location: Location | None = None

    def has_active_job(self) -> bool:
        return self.current_order_id is not None

    def can_receive_offers(self) -> bool:
        return self.is_online and not self.has_active_job()

    def has_enough_credit(self, min_credit: float) -> bool:
        return self.job_credit >= min_credit

    def clear_job(self) -> None:
        self.current_order_id = None
        self.current_shop_id = None
        self.job_stage = None
        self.shop_order_status = None


def countdown_text(remaining: timedelta) -> str:
    """m:ss для оставшегося времени, +m:ss для перерасхода"""
    total = remaining.total_seconds()
    prefix = ""
    if total <= 0:
        prefix = "+"
        total = -total
    whole = int(total)
    return f"{prefix}{whole // 60}:{whole % 60:02d}"
