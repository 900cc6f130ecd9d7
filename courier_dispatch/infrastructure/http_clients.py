import httpx
import logging
from typing import List, Optional
import asyncio

from courier_dispatch.application.interfaces import DispatchBackend, NotificationsService
from courier_dispatch.domain.exceptions import BackendServiceError, OfferUnavailableError
from courier_dispatch.domain.models import Offer, Order, ShopOrderStatus

logger = logging.getLogger(__name__)

# Ответы accept, означающие "предложение уже не действует"
OFFER_GONE_STATUSES = (400, 404, 409, 410)


class HTTPDispatchBackend(DispatchBackend):
    def __init__(self, base_url: str, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._transport = transport

    async def _request(self, method: str, path: str, action: str, json: Optional[dict] = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                return await client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=json,
                    headers={"X-API-Key": self._api_token},
                    timeout=30.0
                )
        except httpx.RequestError as e:
            logger.error(f"Backend ошибка подключения ({action}): {e}")
            raise BackendServiceError(f"Backend не доступен: {str(e)}")

    @staticmethod
    def _ensure_ok(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise BackendServiceError(f"Backend ошибка ({action}): {response.status_code}")

    async def poll_assignments(self) -> List[Offer]:
        response = await self._request("GET", "/api/order/get-assignments", "poll_assignments")
        self._ensure_ok(response, "poll_assignments")
        data = response.json()
        if not isinstance(data, list):
            # пустой список снял бы все показанные предложения
            raise BackendServiceError("Backend вернул некорректный список назначений")
        return [Offer.model_validate(item) for item in data]

    async def accept_offer(self, assignment_id: str) -> None:
        response = await self._request("GET", f"/api/order/accept-order/{assignment_id}", "accept_offer")
        if response.status_code in OFFER_GONE_STATUSES:
            raise OfferUnavailableError(assignment_id)
        self._ensure_ok(response, "accept_offer")

    async def get_current_order(self) -> Optional[Order]:
        response = await self._request("GET", "/api/order/get-current-order", "get_current_order")
        if response.status_code == 404:
            return None
        self._ensure_ok(response, "get_current_order")
        data = response.json() if response.content else None
        if not data:
            return None
        return Order.model_validate(data)

    async def confirm_pickup(self, order_id: str, shop_id: str) -> None:
        response = await self._request(
            "POST", "/api/order/confirm-pickup", "confirm_pickup",
            json={"orderId": order_id, "shopId": shop_id}
        )
        self._ensure_ok(response, "confirm_pickup")

    async def confirm_delivery(self, order_id: str, shop_id: str) -> None:
        response = await self._request(
            "POST", "/api/order/confirm-delivery", "confirm_delivery",
            json={"orderId": order_id, "shopId": shop_id}
        )
        self._ensure_ok(response, "confirm_delivery")

    async def cancel_job(self, order_id: str, shop_id: str) -> None:
        response = await self._request("POST", f"/api/order/cancel-job/{order_id}/{shop_id}", "cancel_job", json={})
        self._ensure_ok(response, "cancel_job")

    async def cancel_order(self, order_id: str, shop_id: str, reason: str) -> None:
        response = await self._request(
            "POST", f"/api/order/cancel-order/{order_id}/{shop_id}", "cancel_order",
            json={"reason": reason}
        )
        self._ensure_ok(response, "cancel_order")

    async def update_order_status(self, order_id: str, shop_id: str, status: ShopOrderStatus) -> None:
        response = await self._request(
            "POST", f"/api/order/update-status/{order_id}/{shop_id}", "update_order_status",
            json={"status": status.value}
        )
        self._ensure_ok(response, "update_order_status")

    async def get_shop_orders(self, shop_id: str) -> List[Order]:
        response = await self._request("GET", f"/api/order/shop-orders/{shop_id}", "get_shop_orders")
        self._ensure_ok(response, "get_shop_orders")
        return [Order.model_validate(item) for item in response.json()]

    async def set_online_status(self, is_online: bool) -> None:
        response = await self._request(
            "PATCH", "/api/delivery/status", "set_online_status", json={"isOnline": is_online}
        )
        self._ensure_ok(response, "set_online_status")

    async def get_job_credit(self) -> float:
        response = await self._request("GET", "/api/delivery/financial-summary", "get_job_credit")
        self._ensure_ok(response, "get_job_credit")
        return float(response.json().get("jobCredit") or 0)


class HTTPNotificationsClient(NotificationsService):
    def __init__(
        self,
        base_url: str,
        api_token: str,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def send(self, message: str, reference_id: str, recipient_id: str, kind: str = "info") -> bool:
        """Отправка уведомления с повторными попытками"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "recipient": recipient_id,
                            "message": message,
                            "type": kind,
                            "relatedId": reference_id,
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    if response.status_code in (200, 201):
                        logger.info(f"Уведомление отправлено (попытка {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Уведомление вернуло статус {response.status_code}")

            except httpx.RequestError as e:
                logger.warning(f"Ошибка отправки уведомления (попытка {attempt + 1}/{self._max_retries}): {e}")

            # Ждем перед следующей попыткой (кроме последней)
            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Не удалось отправить уведомление после {self._max_retries} попыток")
        return False
