from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiokafka import TopicPartition

from courier_dispatch.domain.events import AssignmentRemoved
from courier_dispatch.infrastructure.kafka_consumer import PushEventConsumer


class FakeKafkaConsumer:
    """Replays a fixed list of messages; seek() rewinds to an offset"""

    def __init__(self, values: list):
        self.messages = [
            SimpleNamespace(topic="dispatch-events", partition=0, offset=i, value=value)
            for i, value in enumerate(values)
        ]
        self.position = 0
        self.commit = AsyncMock()
        self.seek = MagicMock(side_effect=self._seek)

    def _seek(self, partition: TopicPartition, offset: int) -> None:
        self.position = offset

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.position >= len(self.messages):
            raise StopAsyncIteration
        msg = self.messages[self.position]
        self.position += 1
        return msg


def _consumer(values: list, max_attempts: int = 5) -> PushEventConsumer:
    consumer = PushEventConsumer("localhost:9092", "dispatch-events", "courier-1", retry_delay=0, max_attempts=max_attempts)
    consumer._consumer = FakeKafkaConsumer(values)
    return consumer


@pytest.mark.asyncio
async def test_failed_handler_rereads_the_same_message() -> None:
    consumer = _consumer([
        {"event": "assignment-removed", "assignmentId": "a-1"},
        {"event": "assignment-removed", "assignmentId": "a-2"},
    ])
    seen = []

    async def handler(event) -> None:
        seen.append(event.assignment_id)
        if len(seen) == 1:
            raise RuntimeError("store unavailable")

    await consumer.consume(handler)

    assert seen == ["a-1", "a-1", "a-2"]
    consumer._consumer.seek.assert_called_once_with(TopicPartition("dispatch-events", 0), 0)
    assert consumer._consumer.commit.await_count == 2


@pytest.mark.asyncio
async def test_message_skipped_after_max_attempts() -> None:
    consumer = _consumer([
        {"event": "assignment-removed", "assignmentId": "a-1"},
        {"event": "assignment-removed", "assignmentId": "a-2"},
    ], max_attempts=3)
    handled = []

    async def handler(event: AssignmentRemoved) -> None:
        if event.assignment_id == "a-1":
            raise RuntimeError("always fails")
        handled.append(event.assignment_id)

    await consumer.consume(handler)

    assert handled == ["a-2"]
    assert consumer._consumer.seek.call_count == 2
    assert consumer._consumer.commit.await_count == 2


@pytest.mark.asyncio
async def test_invalid_message_is_committed_and_skipped() -> None:
    consumer = _consumer([{"orderId": "o-1"}, {"event": "assignment-removed", "assignmentId": "a-1"}])
    handler = AsyncMock()

    await consumer.consume(handler)

    handler.assert_awaited_once()
    consumer._consumer.seek.assert_not_called()
    assert consumer._consumer.commit.await_count == 2
