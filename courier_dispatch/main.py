import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from courier_dispatch.application.deliverer_engine import DelivererEngine
from courier_dispatch.application.shop_engine import ShopEngine
from courier_dispatch.config import settings
from courier_dispatch.domain.models import DelivererSession
from courier_dispatch.infrastructure.database import create_engine, create_session_factory, init_models
from courier_dispatch.infrastructure.http_clients import HTTPDispatchBackend, HTTPNotificationsClient
from courier_dispatch.infrastructure.kafka_consumer import PushEventConsumer
from courier_dispatch.infrastructure.key_value_store import SQLAlchemyKeyValueStore
from courier_dispatch.infrastructure.scheduler import AsyncioScheduler
from courier_dispatch.presentation.api import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    scheduler = AsyncioScheduler()
    backend = HTTPDispatchBackend(settings.BACKEND_BASE_URL, settings.API_TOKEN)
    notifications = HTTPNotificationsClient(settings.BACKEND_BASE_URL, settings.API_TOKEN)

    # 1. Хранилище стадий доставки
    db_engine = create_engine()
    await init_models(db_engine)
    store = SQLAlchemyKeyValueStore(create_session_factory(db_engine))
    logger.info("Таблицы созданы")

    # 2. Движки для настроенных акторов
    handlers = []
    if settings.DELIVERER_ID:
        deliverer = DelivererEngine(
            backend, store, notifications, scheduler,
            DelivererSession(deliverer_id=settings.DELIVERER_ID)
        )
        await deliverer.start()
        app.state.deliverer_engine = deliverer
        handlers.append(deliverer.handle_event)
        logger.info(f"Движок курьера {settings.DELIVERER_ID} запущен")
    if settings.SHOP_ID:
        shop = ShopEngine(backend, notifications, scheduler, settings.SHOP_ID)
        await shop.start()
        app.state.shop_engine = shop
        handlers.append(shop.handle_event)
        logger.info(f"Движок магазина {settings.SHOP_ID} запущен")

    # 3. Push-канал в фоне
    consumer = PushEventConsumer(
        settings.KAFKA_BOOTSTRAP_SERVERS,
        settings.KAFKA_PUSH_TOPIC,
        group_id=f"courier-dispatch-{settings.DELIVERER_ID or settings.SHOP_ID or 'default'}"
    )
    consumer_task = None
    try:
        await consumer.start()
        consumer_task = asyncio.create_task(consumer.consume(*handlers))
        logger.info("Kafka consumer запущен")
    except Exception as e:
        # без push-канала работаем на опросе
        logger.error(f"Kafka недоступна, только опрос: {e}")

    yield

    logger.info("Приложение останавливается...")
    if consumer_task is not None:
        consumer_task.cancel()
        await asyncio.gather(consumer_task, return_exceptions=True)
    await consumer.stop()
    if app.state.deliverer_engine is not None:
        app.state.deliverer_engine.teardown()
    if app.state.shop_engine is not None:
        app.state.shop_engine.stop()
    await scheduler.shutdown()
    await db_engine.dispose()


app = create_app(lifespan=lifespan)


@app.get("/")
async def root():
    return {"message": "Courier Dispatch работает"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
