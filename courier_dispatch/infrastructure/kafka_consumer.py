import json
import logging
import asyncio
from typing import Awaitable, Callable, Dict, Tuple
from aiokafka import AIOKafkaConsumer, TopicPartition

from courier_dispatch.domain.events import PushEvent, parse_event
from courier_dispatch.domain.exceptions import InvalidEventError

logger = logging.getLogger(__name__)

EventHandler = Callable[[PushEvent], Awaitable[None]]


def decode_message(raw: dict) -> PushEvent:
    """Сообщение push-канала: {"event": "<имя>", ...тело события}"""
    if not isinstance(raw, dict):
        raise InvalidEventError("Сообщение должно быть JSON-объектом")
    name = raw.get("event")
    if not name:
        raise InvalidEventError("В сообщении нет имени события")
    payload = {k: v for k, v in raw.items() if k != "event"}
    return parse_event(name, payload)


class PushEventConsumer:
    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        retry_delay: float = 1.0,
        max_attempts: int = 5,
    ):
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._group_id = group_id
        self._retry_delay = retry_delay
        self._max_attempts = max_attempts
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            self._topic,
            bootstrap_servers=self._bootstrap_servers,
            group_id=self._group_id,
            enable_auto_commit=False,
            value_deserializer=lambda v: json.loads(v.decode())
        )
        await self._consumer.start()
        logger.info(f"Push consumer started ({self._topic})")

    async def stop(self):
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
            logger.info("Push consumer stopped")

    async def consume(self, *handlers: EventHandler):
        """Бесконечный цикл потребления push-событий.

        Если обработчик упал, смещение возвращается на то же сообщение и оно
        читается снова. После max_attempts неудач сообщение пропускается.
        """
        attempts: Dict[Tuple[str, int, int], int] = {}
        async for msg in self._consumer:
            try:
                event = decode_message(msg.value)
            except InvalidEventError as e:
                # битое сообщение пропускаем, иначе застрянем на нём
                logger.warning(f"Пропущено сообщение: {e}")
                await self._consumer.commit()
                continue

            key = (msg.topic, msg.partition, msg.offset)
            try:
                logger.info(f"Received event: {event.event}")
                for handler in handlers:
                    await handler(event)
                attempts.pop(key, None)
                await self._consumer.commit()
            except Exception as e:
                attempts[key] = attempts.get(key, 0) + 1
                if attempts[key] >= self._max_attempts:
                    logger.error(f"Сообщение {msg.offset} пропущено после {attempts.pop(key)} попыток: {e}")
                    await self._consumer.commit()
                    continue
                logger.error(f"Error processing message: {e}")
                self._consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
                await asyncio.sleep(self._retry_delay)
