from typing import List, Optional
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status

from courier_dispatch.application.deliverer_engine import DelivererEngine
from courier_dispatch.application.shop_engine import ShopEngine
from courier_dispatch.domain.exceptions import (
    AcceptInProgressError,
    BackendServiceError,
    DelivererNotEligibleError,
    InvalidTransitionError,
    OfferNotVisibleError,
    OfferUnavailableError,
    OrderNotFoundError,
)
from courier_dispatch.presentation.schemas import (
    CancelOrderRequest,
    DutyRequest,
    ErrorResponse,
    JobResponse,
    OfferResponse,
    ShopOrderResponse,
)

router = APIRouter()


def get_deliverer_engine(request: Request) -> DelivererEngine:
    engine = getattr(request.app.state, "deliverer_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Движок курьера не настроен")
    return engine


def get_shop_engine(request: Request) -> ShopEngine:
    engine = getattr(request.app.state, "shop_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Движок магазина не настроен")
    return engine


def _job_response(engine: DelivererEngine) -> JobResponse:
    return JobResponse(
        order_id=engine.session.current_order_id,
        stage=engine.job_stage,
        pickup_blocked=engine.jobs.pickup_blocked,
        is_online=engine.session.is_online
    )


def _shop_order_response(engine: ShopEngine, order_id: str) -> ShopOrderResponse:
    shop_order = engine.order(order_id)
    if shop_order is None:
        raise HTTPException(status_code=404, detail="Заказ не найден")
    return ShopOrderResponse(
        order_id=order_id,
        status=shop_order.status,
        countdown=engine.countdown_display(order_id),
        overtime=engine.orders.is_overtime(order_id),
        cancel_reason=shop_order.cancel_reason
    )


# --- курьер ---

@router.get("/deliverer/offers", response_model=List[OfferResponse])
async def list_offers(engine: DelivererEngine = Depends(get_deliverer_engine)):
    """Предложения, которые курьер видит прямо сейчас"""
    return [
        OfferResponse.from_domain(offer, engine.gate.seconds_left(offer.assignment_id))
        for offer in engine.visible_offers
    ]


@router.post(
    "/deliverer/offers/{assignment_id}/accept",
    response_model=JobResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)
async def accept_offer(assignment_id: str, engine: DelivererEngine = Depends(get_deliverer_engine)):
    try:
        await engine.accept(assignment_id)
    except OfferNotVisibleError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except OfferUnavailableError:
        raise HTTPException(status_code=409, detail="offer no longer available")
    except AcceptInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DelivererNotEligibleError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except BackendServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")
    return _job_response(engine)


@router.get("/deliverer/job", response_model=JobResponse)
async def get_job(engine: DelivererEngine = Depends(get_deliverer_engine)):
    return _job_response(engine)


_JOB_ACTIONS = {
    "arrival": "confirm_arrival",
    "pickup": "confirm_pickup",
    "customer-arrival": "confirm_customer_arrival",
    "delivery": "confirm_delivery",
    "acknowledge": "acknowledge_completion",
    "cancel": "cancel_job",
}


@router.post(
    "/deliverer/job/{action}",
    response_model=JobResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)
async def job_action(action: str, engine: DelivererEngine = Depends(get_deliverer_engine)):
    """Действия курьера по текущей доставке"""
    method_name = _JOB_ACTIONS.get(action)
    if method_name is None:
        raise HTTPException(status_code=404, detail=f"Неизвестное действие: {action}")
    try:
        await getattr(engine.jobs, method_name)()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BackendServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")
    return _job_response(engine)


@router.post("/deliverer/duty", response_model=JobResponse, responses={403: {"model": ErrorResponse}})
async def set_duty(request: DutyRequest, engine: DelivererEngine = Depends(get_deliverer_engine)):
    try:
        if request.is_online:
            await engine.go_online()
        else:
            await engine.go_offline()
    except DelivererNotEligibleError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except BackendServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")
    return _job_response(engine)


# --- магазин ---

@router.get("/shop/orders/{order_id}", response_model=ShopOrderResponse)
async def get_shop_order(order_id: str, engine: ShopEngine = Depends(get_shop_engine)):
    """Просмотр заказа гасит сигнал о нём"""
    engine.view_order(order_id)
    return _shop_order_response(engine, order_id)


@router.post("/shop/orders/{order_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_shop_order(order_id: str, engine: ShopEngine = Depends(get_shop_engine)):
    engine.leave_order_view()


@router.post(
    "/shop/orders/{order_id}/{action}",
    response_model=ShopOrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)
async def shop_order_action(
    order_id: str,
    action: str,
    cancel: Optional[CancelOrderRequest] = None,
    engine: ShopEngine = Depends(get_shop_engine)
):
    try:
        if action == "accept":
            await engine.orders.accept(order_id)
        elif action == "ready":
            await engine.orders.mark_ready(order_id)
        elif action == "cancel":
            if cancel is None:
                raise HTTPException(status_code=400, detail="Укажите причину отмены")
            await engine.orders.cancel(order_id, cancel.reason)
        else:
            raise HTTPException(status_code=404, detail=f"Неизвестное действие: {action}")
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Заказ не найден")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except BackendServiceError as e:
        raise HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")
    return _shop_order_response(engine, order_id)


def create_app(
    deliverer_engine: Optional[DelivererEngine] = None,
    shop_engine: Optional[ShopEngine] = None,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(
        title="Courier Dispatch",
        description="Движок диспетчеризации заказов и курьеров",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.deliverer_engine = deliverer_engine
    app.state.shop_engine = shop_engine
    app.include_router(router, prefix="/api")
    return app
