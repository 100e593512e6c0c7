"""
Live order tracking: an async generator of order snapshots for one viewer.

Subscribes to the order row and its delivery row, and re-reads the order after every change
(so the viewer always sees a consistent, access-checked snapshot). If the subscription can't
be opened or drops, the order is reloaded on demand and the subscription re-established after
`resubscribe_delay_sec`. Closing the generator closes the subscription.
"""
import asyncio
import logging
from collections.abc import AsyncIterator

from quickcare.errors import StoreUnavailableError
from quickcare.models import Actor, Order
from quickcare.notifier import channel
from quickcare.order_state import TERMINAL_STATUSES
from quickcare.service import OrderLifecycleService

logger = logging.getLogger(__name__)


def order_channels(order_id: str) -> list[str]:
    return [
        channel("orders", "id", order_id),
        channel("deliveries", "order_id", order_id),
    ]


async def track_order(
    service: OrderLifecycleService,
    actor: Actor,
    order_id: str,
    resubscribe_delay: float | None = None,
) -> AsyncIterator[Order]:
    delay = service.settings.resubscribe_delay_sec if resubscribe_delay is None else resubscribe_delay
    # fail fast on NotFound / Forbidden before opening anything
    await service.get_order(actor, order_id)
    last_sent: Order | None = None

    while True:
        try:
            subscription = await service.notifier.subscribe(order_channels(order_id))
        except StoreUnavailableError as e:
            logger.warning("Tracking %s: subscribe failed (%s); reloading on demand", order_id, e)
            subscription = None

        try:
            # load after subscribing so a change in between is not missed
            order = await service.get_order(actor, order_id)
            if order != last_sent:
                last_sent = order
                yield order
            if order.status in TERMINAL_STATUSES:
                return
            if subscription is None:
                await asyncio.sleep(delay)
                continue

            while True:
                try:
                    change = await subscription.__anext__()
                except StopAsyncIteration:
                    return
                except StoreUnavailableError as e:
                    logger.warning("Tracking %s: subscription dropped (%s); reloading", order_id, e)
                    break
                logger.debug("Tracking %s: %s %s", order_id, change.table, change.event)
                order = await service.get_order(actor, order_id)
                if order != last_sent:
                    last_sent = order
                    yield order
                if order.status in TERMINAL_STATUSES:
                    return

            order = await service.get_order(actor, order_id)
            if order != last_sent:
                last_sent = order
                yield order
            if order.status in TERMINAL_STATUSES:
                return
            await asyncio.sleep(delay)
        finally:
            if subscription is not None:
                await subscription.close()
