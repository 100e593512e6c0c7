"""
Row-change notifications. Every committed write publishes a ChangeEvent on channels keyed by
table + column value (e.g. changes:orders:customer_id:<id>), so viewers subscribe to exactly
the rows they display. Backend: Redis pub/sub, or in-process queues when notifier_backend=memory.
"""
import asyncio
import logging
from abc import ABC, abstractmethod

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from quickcare.errors import StoreUnavailableError
from quickcare.metrics import notifications_failed_total
from quickcare.models import ChangeEvent

logger = logging.getLogger(__name__)

GET_MESSAGE_TIMEOUT = 1.0

# Columns each table publishes on
CHANNEL_COLUMNS: dict[str, tuple[str, ...]] = {
    "orders": ("id", "customer_id", "delivery_partner_id"),
    "deliveries": ("order_id", "delivery_partner_id"),
    "medicines": ("id", "manager_id"),
}


def channel(table: str, column: str, value: str) -> str:
    return f"changes:{table}:{column}:{value}"


def channels_for(table: str, row: dict) -> list[str]:
    return [
        channel(table, column, row[column])
        for column in CHANNEL_COLUMNS.get(table, ())
        if row.get(column) is not None
    ]


class Subscription(ABC):
    """Async iterator of ChangeEvents. Must be closed by the view that opened it."""

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> ChangeEvent: ...

    @abstractmethod
    async def close(self) -> None: ...


class ChangeNotifier(ABC):
    @abstractmethod
    async def publish(self, event: ChangeEvent, channels: list[str]) -> None: ...

    @abstractmethod
    async def subscribe(self, channels: list[str]) -> Subscription: ...

    async def close(self) -> None:
        pass


async def notify(notifier: ChangeNotifier, table: str, event: str, record: BaseModel) -> None:
    """
    Publish one row change after the write committed.
    A failed publish does not undo the write; viewers reconcile on their next reload.
    """
    row = record.model_dump(mode="json")
    change = ChangeEvent(table=table, event=event, row=row)
    try:
        await notifier.publish(change, channels_for(table, row))
    except StoreUnavailableError as e:
        notifications_failed_total.labels(table=table).inc()
        logger.warning("Change notification for %s %s failed: %s", table, row.get("id"), e)


class _QueueSubscription(Subscription):
    def __init__(self, notifier: "InMemoryNotifier", channels: list[str]):
        self._notifier = notifier
        self._channels = channels
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.closed = False

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.queue.get()

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._notifier._remove(self)


class InMemoryNotifier(ChangeNotifier):
    """In-process fan-out; one queue per subscription."""

    def __init__(self):
        self._subscribers: dict[str, set[_QueueSubscription]] = {}

    async def publish(self, event: ChangeEvent, channels: list[str]) -> None:
        delivered: set[_QueueSubscription] = set()
        for name in channels:
            for sub in self._subscribers.get(name, ()):
                # a subscriber on several matching channels gets the event once
                if sub not in delivered:
                    sub.queue.put_nowait(event)
                    delivered.add(sub)

    async def subscribe(self, channels: list[str]) -> Subscription:
        sub = _QueueSubscription(self, channels)
        for name in channels:
            self._subscribers.setdefault(name, set()).add(sub)
        return sub

    def subscriber_count(self) -> int:
        return len({sub for subs in self._subscribers.values() for sub in subs})

    def _remove(self, sub: _QueueSubscription) -> None:
        for name in sub._channels:
            subs = self._subscribers.get(name)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[name]


class _RedisSubscription(Subscription):
    def __init__(self, pubsub: PubSub):
        self._pubsub = pubsub

    async def __anext__(self) -> ChangeEvent:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=GET_MESSAGE_TIMEOUT,
                )
            except (RedisError, OSError) as e:
                raise StoreUnavailableError(f"change subscription lost: {e}") from e
            if message is None:
                continue
            try:
                return ChangeEvent.model_validate_json(message["data"])
            except ValidationError as e:
                logger.warning("Ignoring malformed change message on %s: %s", message.get("channel"), e)

    async def close(self) -> None:
        # best-effort teardown; the connection is gone anyway if this fails
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug("Ignoring error while closing subscription: %s", e)


class RedisNotifier(ChangeNotifier):
    def __init__(self, client: redis.Redis):
        self._redis = client

    async def publish(self, event: ChangeEvent, channels: list[str]) -> None:
        body = event.model_dump_json()
        try:
            for name in channels:
                await self._redis.publish(name, body)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"cannot publish change: {e}") from e

    async def subscribe(self, channels: list[str]) -> Subscription:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(*channels)
        except (RedisError, OSError) as e:
            await pubsub.aclose()
            raise StoreUnavailableError(f"cannot subscribe to changes: {e}") from e
        return _RedisSubscription(pubsub)
