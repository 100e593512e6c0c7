"""
Persistent store interface and the in-memory implementation.

Every write is conditional: it names the values the row must still hold (`expect`) and
affects nothing when they no longer match. That is how lost updates and double claims
are ruled out without a read-then-write race.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from quickcare.errors import PreconditionNotMetError
from quickcare.models import Delivery, DeliveryStatus, Medicine, Order, OrderStatus, Profile, utcnow
from quickcare.order_state import is_claimable

logger = logging.getLogger(__name__)

# (medicine_id, stock delta); a negative delta must not drive stock below zero
StockChange = tuple[str, int]


class OrderStore(ABC):
    @abstractmethod
    async def insert_profile(self, profile: Profile) -> Profile: ...

    @abstractmethod
    async def get_profile(self, profile_id: str) -> Profile | None: ...

    @abstractmethod
    async def insert_medicine(self, medicine: Medicine) -> Medicine: ...

    @abstractmethod
    async def get_medicine(self, medicine_id: str) -> Medicine | None: ...

    @abstractmethod
    async def update_medicine(self, medicine_id: str, changes: dict[str, Any]) -> Medicine | None: ...

    @abstractmethod
    async def delete_medicine(self, medicine_id: str) -> bool: ...

    @abstractmethod
    async def list_medicines(
        self,
        manager_id: str | None = None,
        in_stock_only: bool = False,
        category: str | None = None,
    ) -> list[Medicine]: ...

    @abstractmethod
    async def insert_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def list_orders(
        self,
        customer_id: str | None = None,
        delivery_partner_id: str | None = None,
        manager_id: str | None = None,
        status: OrderStatus | None = None,
        claimable: bool = False,
    ) -> list[Order]:
        """Newest first. `claimable` keeps ready, unassigned, prescription-cleared orders."""

    @abstractmethod
    async def update_order(
        self,
        order_id: str,
        expect: dict[str, Any],
        changes: dict[str, Any],
        stock_changes: list[StockChange] | None = None,
    ) -> Order | None:
        """
        Apply changes only if the row still matches expect. Returns None when it doesn't.
        stock_changes are applied in the same transaction; if any would go below zero,
        nothing is written and PreconditionNotMetError is raised.
        Positive deltas for medicines no longer in the catalog are dropped.
        """

    @abstractmethod
    async def claim_order(self, order_id: str, partner_id: str, delivery: Delivery) -> tuple[Order, Delivery] | None:
        """
        Bind partner_id to a claimable order and insert its delivery, atomically.
        Returns None if the order was not claimable at the moment of the write.
        """

    @abstractmethod
    async def get_delivery(self, order_id: str) -> Delivery | None: ...

    @abstractmethod
    async def list_deliveries(self, partner_id: str, status: DeliveryStatus | None = None) -> list[Delivery]: ...

    @abstractmethod
    async def update_delivery(
        self,
        order_id: str,
        expected_status: DeliveryStatus,
        changes: dict[str, Any],
        order_expect: dict[str, Any],
        order_changes: dict[str, Any],
    ) -> tuple[Order, Delivery] | None:
        """Advance a delivery and its order together; None if either precondition failed."""

    async def close(self) -> None:
        pass


def _matches(record: Any, expect: dict[str, Any]) -> bool:
    return all(getattr(record, field) == value for field, value in expect.items())


class InMemoryOrderStore(OrderStore):
    """
    In-process store for local runs and tests.
    A single lock serializes writes, standing in for the row-level atomicity of a database.
    """

    def __init__(self):
        self._profiles: dict[str, Profile] = {}
        self._medicines: dict[str, Medicine] = {}
        self._orders: dict[str, Order] = {}
        self._deliveries: dict[str, Delivery] = {}  # keyed by order_id
        self._lock = asyncio.Lock()
        logger.info("InMemoryOrderStore initialized")

    async def _round_trip(self) -> None:
        # every call yields to the loop like a real network round trip would
        await asyncio.sleep(0)

    async def insert_profile(self, profile: Profile) -> Profile:
        await self._round_trip()
        async with self._lock:
            if profile.id in self._profiles:
                raise PreconditionNotMetError(f"profile {profile.id} already exists")
            self._profiles[profile.id] = profile.model_copy(deep=True)
        return profile

    async def get_profile(self, profile_id: str) -> Profile | None:
        await self._round_trip()
        profile = self._profiles.get(profile_id)
        return profile.model_copy(deep=True) if profile else None

    async def insert_medicine(self, medicine: Medicine) -> Medicine:
        await self._round_trip()
        async with self._lock:
            self._medicines[medicine.id] = medicine.model_copy(deep=True)
        return medicine

    async def get_medicine(self, medicine_id: str) -> Medicine | None:
        await self._round_trip()
        medicine = self._medicines.get(medicine_id)
        return medicine.model_copy(deep=True) if medicine else None

    async def update_medicine(self, medicine_id: str, changes: dict[str, Any]) -> Medicine | None:
        await self._round_trip()
        async with self._lock:
            medicine = self._medicines.get(medicine_id)
            if medicine is None:
                return None
            updated = medicine.model_copy(update={**changes, "updated_at": utcnow()})
            self._medicines[medicine_id] = updated
            return updated.model_copy(deep=True)

    async def delete_medicine(self, medicine_id: str) -> bool:
        await self._round_trip()
        async with self._lock:
            return self._medicines.pop(medicine_id, None) is not None

    async def list_medicines(self, manager_id=None, in_stock_only=False, category=None) -> list[Medicine]:
        await self._round_trip()
        found = [
            m for m in self._medicines.values()
            if (manager_id is None or m.manager_id == manager_id)
            and (not in_stock_only or m.stock > 0)
            and (category is None or m.category == category)
        ]
        return [m.model_copy(deep=True) for m in sorted(found, key=lambda m: m.name)]

    async def insert_order(self, order: Order) -> Order:
        await self._round_trip()
        async with self._lock:
            self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def get_order(self, order_id: str) -> Order | None:
        await self._round_trip()
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(
        self,
        customer_id=None,
        delivery_partner_id=None,
        manager_id=None,
        status=None,
        claimable=False,
    ) -> list[Order]:
        await self._round_trip()
        found = [
            o for o in self._orders.values()
            if (customer_id is None or o.customer_id == customer_id)
            and (delivery_partner_id is None or o.delivery_partner_id == delivery_partner_id)
            and (manager_id is None or any(i.manager_id == manager_id for i in o.items))
            and (status is None or o.status == status)
            and (not claimable or is_claimable(o))
        ]
        found.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in found]

    async def update_order(self, order_id, expect, changes, stock_changes=None) -> Order | None:
        await self._round_trip()
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or not _matches(order, expect):
                return None
            if stock_changes:
                for medicine_id, delta in stock_changes:
                    medicine = self._medicines.get(medicine_id)
                    if delta < 0 and (medicine is None or medicine.stock + delta < 0):
                        raise PreconditionNotMetError(f"insufficient stock for medicine {medicine_id}")
                now = utcnow()
                for medicine_id, delta in stock_changes:
                    medicine = self._medicines.get(medicine_id)
                    if medicine is None:
                        # restock of a medicine removed from the catalog
                        continue
                    self._medicines[medicine_id] = medicine.model_copy(
                        update={"stock": medicine.stock + delta, "updated_at": now}
                    )
            updated = order.model_copy(update={**changes, "updated_at": utcnow()})
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def claim_order(self, order_id, partner_id, delivery) -> tuple[Order, Delivery] | None:
        await self._round_trip()
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or not is_claimable(order) or order_id in self._deliveries:
                return None
            updated = order.model_copy(update={"delivery_partner_id": partner_id, "updated_at": utcnow()})
            self._orders[order_id] = updated
            self._deliveries[order_id] = delivery.model_copy(deep=True)
            return updated.model_copy(deep=True), delivery.model_copy(deep=True)

    async def get_delivery(self, order_id: str) -> Delivery | None:
        await self._round_trip()
        delivery = self._deliveries.get(order_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def list_deliveries(self, partner_id, status=None) -> list[Delivery]:
        await self._round_trip()
        found = [
            d for d in self._deliveries.values()
            if d.delivery_partner_id == partner_id and (status is None or d.status == status)
        ]
        found.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in found]

    async def update_delivery(self, order_id, expected_status, changes, order_expect, order_changes):
        await self._round_trip()
        async with self._lock:
            delivery = self._deliveries.get(order_id)
            order = self._orders.get(order_id)
            if delivery is None or order is None:
                return None
            if delivery.status != expected_status or not _matches(order, order_expect):
                return None
            now = utcnow()
            new_delivery = delivery.model_copy(update={**changes, "updated_at": now})
            new_order = order.model_copy(update={**order_changes, "updated_at": now})
            self._deliveries[order_id] = new_delivery
            self._orders[order_id] = new_order
            return new_order.model_copy(deep=True), new_delivery.model_copy(deep=True)
