from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from courier_dispatch.domain.models import JobStage, Offer, ShopOrderStatus


class OfferResponse(BaseModel):
    assignment_id: str
    order_id: str
    shop_id: str
    shop_name: Optional[str] = None
    created_at: datetime
    distance_km: Optional[float] = None
    delivery_fee: float
    seconds_left: Optional[float] = None

    @classmethod
    def from_domain(cls, offer: Offer, seconds_left: Optional[float]):
        return cls(
            assignment_id=offer.assignment_id,
            order_id=offer.order_id,
            shop_id=offer.shop_id,
            shop_name=offer.shop_name,
            created_at=offer.created_at,
            distance_km=offer.distance_km,
            delivery_fee=offer.delivery_fee,
            seconds_left=seconds_left
        )


class JobResponse(BaseModel):
    order_id: Optional[str] = None
    stage: Optional[JobStage] = None
    pickup_blocked: bool = False
    is_online: bool


class DutyRequest(BaseModel):
    is_online: bool


class CancelOrderRequest(BaseModel):
    reason: str


class ShopOrderResponse(BaseModel):
    order_id: str
    status: ShopOrderStatus
    countdown: str
    overtime: bool
    cancel_reason: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str
