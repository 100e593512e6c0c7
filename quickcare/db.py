"""
Async Postgres: profiles, medicines, orders (line items as JSONB snapshot) and deliveries.
Conditional writes use UPDATE ... WHERE <expected values> RETURNING *; zero rows means the
precondition failed. Multi-row writes (order + stock, order + delivery) share one transaction.
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from quickcare.config import settings
from quickcare.errors import AlreadyAssignedError, PreconditionNotMetError, StoreUnavailableError
from quickcare.models import Delivery, DeliveryStatus, Medicine, Order, OrderStatus, Profile
from quickcare.store import OrderStore, StockChange

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

# Failures that mean "store unreachable", as opposed to a bad query
_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
)

CLAIMABLE_PREDICATE = (
    "status = 'ready_for_pickup' AND delivery_partner_id IS NULL"
    " AND (NOT requires_prescription OR prescription_verified)"
)


class _ConditionFailed(Exception):
    """Raised inside a transaction when a conditional write matched no row. Rolls back."""


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        try:
            _pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=60,
                init=_init_connection,
            )
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"cannot connect to database: {e}") from e
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id VARCHAR(255) PRIMARY KEY,
                full_name VARCHAR(255) NOT NULL,
                phone VARCHAR(50),
                role VARCHAR(30) NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS medicines (
                id VARCHAR(255) PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                description TEXT,
                category VARCHAR(100),
                manufacturer VARCHAR(255),
                price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
                stock INT NOT NULL DEFAULT 0 CHECK (stock >= 0),
                prescription_required BOOLEAN NOT NULL DEFAULT FALSE,
                manager_id VARCHAR(255) NOT NULL REFERENCES profiles(id),
                image_url TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id VARCHAR(255) PRIMARY KEY,
                customer_id VARCHAR(255) NOT NULL REFERENCES profiles(id),
                items JSONB NOT NULL,
                delivery_fee NUMERIC(12, 2) NOT NULL DEFAULT 0,
                total_amount NUMERIC(12, 2) NOT NULL,
                delivery_address TEXT NOT NULL,
                delivery_phone VARCHAR(50) NOT NULL,
                notes TEXT,
                status VARCHAR(30) NOT NULL,
                payment_status VARCHAR(20) NOT NULL,
                payment_method VARCHAR(20) NOT NULL,
                delivery_type VARCHAR(20) NOT NULL,
                prescription_url TEXT,
                prescription_verified BOOLEAN NOT NULL DEFAULT FALSE,
                requires_prescription BOOLEAN NOT NULL DEFAULT FALSE,
                delivery_partner_id VARCHAR(255) REFERENCES profiles(id),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS deliveries (
                id VARCHAR(255) PRIMARY KEY,
                order_id VARCHAR(255) NOT NULL UNIQUE REFERENCES orders(id),
                delivery_partner_id VARCHAR(255) NOT NULL REFERENCES profiles(id),
                status VARCHAR(30) NOT NULL,
                earnings NUMERIC(12, 2) NOT NULL DEFAULT 0,
                estimated_delivery_time TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_deliveries_partner ON deliveries(delivery_partner_id);"
        )


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _build_update(table: str, key_column: str, key: str, changes: dict, expect: dict) -> tuple[str, list]:
    """UPDATE <table> SET <changes>, updated_at = NOW() WHERE <key> AND <expect> RETURNING *."""
    args: list = []
    sets = []
    for column, value in changes.items():
        args.append(_db_value(value))
        sets.append(f"{column} = ${len(args)}")
    sets.append("updated_at = NOW()")
    args.append(key)
    where = [f"{key_column} = ${len(args)}"]
    for column, value in expect.items():
        if value is None:
            where.append(f"{column} IS NULL")
        else:
            args.append(_db_value(value))
            where.append(f"{column} = ${len(args)}")
    sql = f"UPDATE {table} SET {', '.join(sets)} WHERE {' AND '.join(where)} RETURNING *;"
    return sql, args


def _order_from_row(row: asyncpg.Record) -> Order:
    data = dict(row)
    data.pop("requires_prescription", None)
    return Order(**data)


class PostgresOrderStore(OrderStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _acquire(self):
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as e:
            logger.warning("Database unavailable: %s", e)
            raise StoreUnavailableError(f"database unavailable: {e}") from e

    async def insert_profile(self, profile: Profile) -> Profile:
        async with self._acquire() as conn:
            try:
                await conn.execute(
                    "INSERT INTO profiles (id, full_name, phone, role, created_at) VALUES ($1, $2, $3, $4, $5);",
                    profile.id,
                    profile.full_name,
                    profile.phone,
                    profile.role.value,
                    profile.created_at,
                )
            except UniqueViolationError:
                raise PreconditionNotMetError(f"profile {profile.id} already exists")
        return profile

    async def get_profile(self, profile_id: str) -> Profile | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM profiles WHERE id = $1;", profile_id)
        return Profile(**dict(row)) if row else None

    async def insert_medicine(self, medicine: Medicine) -> Medicine:
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO medicines (id, name, description, category, manufacturer, price, stock,
                                       prescription_required, manager_id, image_url, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12);
                """,
                medicine.id,
                medicine.name,
                medicine.description,
                medicine.category,
                medicine.manufacturer,
                medicine.price,
                medicine.stock,
                medicine.prescription_required,
                medicine.manager_id,
                medicine.image_url,
                medicine.created_at,
                medicine.updated_at,
            )
        return medicine

    async def get_medicine(self, medicine_id: str) -> Medicine | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM medicines WHERE id = $1;", medicine_id)
        return Medicine(**dict(row)) if row else None

    async def update_medicine(self, medicine_id: str, changes: dict[str, Any]) -> Medicine | None:
        sql, args = _build_update("medicines", "id", medicine_id, changes, {})
        async with self._acquire() as conn:
            row = await conn.fetchrow(sql, *args)
        return Medicine(**dict(row)) if row else None

    async def delete_medicine(self, medicine_id: str) -> bool:
        async with self._acquire() as conn:
            result = await conn.execute("DELETE FROM medicines WHERE id = $1;", medicine_id)
        return result == "DELETE 1"

    async def list_medicines(self, manager_id=None, in_stock_only=False, category=None) -> list[Medicine]:
        where, args = [], []
        if manager_id is not None:
            args.append(manager_id)
            where.append(f"manager_id = ${len(args)}")
        if in_stock_only:
            where.append("stock > 0")
        if category is not None:
            args.append(category)
            where.append(f"category = ${len(args)}")
        sql = "SELECT * FROM medicines"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY name ASC;"
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [Medicine(**dict(r)) for r in rows]

    async def insert_order(self, order: Order) -> Order:
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO orders (id, customer_id, items, delivery_fee, total_amount, delivery_address,
                                    delivery_phone, notes, status, payment_status, payment_method, delivery_type,
                                    prescription_url, prescription_verified, requires_prescription,
                                    delivery_partner_id, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18);
                """,
                order.id,
                order.customer_id,
                [item.model_dump(mode="json") for item in order.items],
                order.delivery_fee,
                order.total_amount,
                order.delivery_address,
                order.delivery_phone,
                order.notes,
                order.status.value,
                order.payment_status.value,
                order.payment_method.value,
                order.delivery_type.value,
                order.prescription_url,
                order.prescription_verified,
                order.requires_prescription,
                order.delivery_partner_id,
                order.created_at,
                order.updated_at,
            )
        return order

    async def get_order(self, order_id: str) -> Order | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def list_orders(
        self,
        customer_id=None,
        delivery_partner_id=None,
        manager_id=None,
        status=None,
        claimable=False,
    ) -> list[Order]:
        where, args = [], []
        if customer_id is not None:
            args.append(customer_id)
            where.append(f"customer_id = ${len(args)}")
        if delivery_partner_id is not None:
            args.append(delivery_partner_id)
            where.append(f"delivery_partner_id = ${len(args)}")
        if manager_id is not None:
            args.append([{"manager_id": manager_id}])
            where.append(f"items @> ${len(args)}::jsonb")
        if status is not None:
            args.append(_db_value(status))
            where.append(f"status = ${len(args)}")
        if claimable:
            where.append(f"({CLAIMABLE_PREDICATE})")
        sql = "SELECT * FROM orders"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC;"
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_order_from_row(r) for r in rows]

    async def update_order(self, order_id, expect, changes, stock_changes=None) -> Order | None:
        sql, args = _build_update("orders", "id", order_id, changes, expect)
        async with self._acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(sql, *args)
                if row is None:
                    return None
                for medicine_id, delta in stock_changes or []:
                    ok = await conn.fetchval(
                        """
                        UPDATE medicines SET stock = stock + $1, updated_at = NOW()
                        WHERE id = $2 AND stock + $1 >= 0 RETURNING id;
                        """,
                        delta,
                        medicine_id,
                    )
                    # a restock may target a deleted medicine; only decrements must land
                    if ok is None and delta < 0:
                        raise PreconditionNotMetError(f"insufficient stock for medicine {medicine_id}")
        return _order_from_row(row)

    async def claim_order(self, order_id, partner_id, delivery) -> tuple[Order, Delivery] | None:
        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE orders SET delivery_partner_id = $1, updated_at = NOW()
                        WHERE id = $2 AND {CLAIMABLE_PREDICATE}
                        RETURNING *;
                        """,
                        partner_id,
                        order_id,
                    )
                    if row is None:
                        return None
                    delivery_row = await conn.fetchrow(
                        """
                        INSERT INTO deliveries (id, order_id, delivery_partner_id, status, earnings,
                                                estimated_delivery_time, created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING *;
                        """,
                        delivery.id,
                        order_id,
                        partner_id,
                        delivery.status.value,
                        delivery.earnings,
                        delivery.estimated_delivery_time,
                        delivery.created_at,
                        delivery.updated_at,
                    )
            except UniqueViolationError:
                raise AlreadyAssignedError(f"order {order_id} already has a delivery")
        return _order_from_row(row), Delivery(**dict(delivery_row))

    async def get_delivery(self, order_id: str) -> Delivery | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM deliveries WHERE order_id = $1;", order_id)
        return Delivery(**dict(row)) if row else None

    async def list_deliveries(self, partner_id, status=None) -> list[Delivery]:
        args: list = [partner_id]
        sql = "SELECT * FROM deliveries WHERE delivery_partner_id = $1"
        if status is not None:
            args.append(_db_value(status))
            sql += " AND status = $2"
        sql += " ORDER BY created_at DESC;"
        async with self._acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [Delivery(**dict(r)) for r in rows]

    async def update_delivery(self, order_id, expected_status, changes, order_expect, order_changes):
        delivery_sql, delivery_args = _build_update(
            "deliveries", "order_id", order_id, changes, {"status": expected_status}
        )
        order_sql, order_args = _build_update("orders", "id", order_id, order_changes, order_expect)
        async with self._acquire() as conn:
            try:
                async with conn.transaction():
                    delivery_row = await conn.fetchrow(delivery_sql, *delivery_args)
                    if delivery_row is None:
                        raise _ConditionFailed()
                    order_row = await conn.fetchrow(order_sql, *order_args)
                    if order_row is None:
                        raise _ConditionFailed()
            except _ConditionFailed:
                return None
        return _order_from_row(order_row), Delivery(**dict(delivery_row))

    async def close(self) -> None:
        await close_pool()
