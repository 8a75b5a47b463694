"""
Database Module
===============
PostgreSQL persistence for the checkout service.

This module provides:
- AsyncPG connection pool with idempotent migrations
- PostgresOrderRepository (orders + order_items, one transaction per order)
- PostgresAuditLog (order_events, append-only)
- PostgresUserDirectory (email lookup in the storefront's users table)

Exactly-once order creation is enforced here as well as in the reconciler:
partial unique indexes on payment_id and checkout_session_id make a second
insert for the same payment a no-op (ON CONFLICT DO NOTHING).
"""

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from payments.errors import ConcurrentUpdateError
from schemas.orders import Order, OrderItem, ShippingAddress
from storage.repository import (
    AuditLogEntry,
    IAuditLog,
    IOrderRepository,
    IUserDirectory,
)

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        order_number VARCHAR(64) NOT NULL UNIQUE,
        user_id VARCHAR(64),
        guest_email VARCHAR(255),
        total_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        subtotal_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        shipping_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        tax_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
        discount_code VARCHAR(64),
        status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
        payment_status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
        payment_id VARCHAR(255),
        checkout_session_id VARCHAR(255),
        shipping_address JSONB,
        shipping_rate_id VARCHAR(255),
        shipping_carrier VARCHAR(64),
        shipping_service VARCHAR(128),
        shipping_cost NUMERIC(12, 2),
        shipment_id VARCHAR(255),
        tracking_number VARCHAR(128),
        tracking_url TEXT,
        shipping_label_url TEXT,
        notes TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        updated_at TIMESTAMP NOT NULL DEFAULT (NOW() AT TIME ZONE 'utc'),
        paid_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id UUID PRIMARY KEY,
        order_id UUID NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        line_no INTEGER NOT NULL DEFAULT 0,
        product_id VARCHAR(64) NOT NULL,
        product_name TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        price NUMERIC(12, 2) NOT NULL,
        total NUMERIC(12, 2) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_events (
        id UUID PRIMARY KEY,
        correlation_id VARCHAR(255) NOT NULL,
        event_type VARCHAR(50) NOT NULL,
        entity_type VARCHAR(50) NOT NULL,
        entity_id VARCHAR(255) NOT NULL,
        previous_state JSONB,
        new_state JSONB,
        metadata JSONB NOT NULL DEFAULT '{}',
        actor VARCHAR(20) NOT NULL DEFAULT 'system',
        timestamp TIMESTAMP NOT NULL
    )
    """,
    "ALTER TABLE order_items ADD COLUMN IF NOT EXISTS line_no INTEGER NOT NULL DEFAULT 0",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_payment_id ON orders(payment_id) WHERE payment_id IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_orders_session_id ON orders(checkout_session_id) WHERE checkout_session_id IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(payment_status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_correlation ON order_events(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_entity ON order_events(entity_id)",
]


class Database:
    """Async database connection pool manager"""

    def __init__(self, dsn: str, min_size: int = 5, max_size: int = 20):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self):
        """Create the pool and run migrations"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
            )
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise
        logger.info("database_pool_initialized", min_size=self.min_size, max_size=self.max_size)

        await self._run_migrations()

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def _run_migrations(self):
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)
        logger.info("database_migrations_complete", count=len(MIGRATIONS))


# =============================================================================
# ROW MAPPING
# =============================================================================

ORDER_COLUMNS = (
    "id", "order_number", "user_id", "guest_email",
    "total_amount", "subtotal_amount", "shipping_amount", "tax_amount",
    "discount_amount", "discount_code",
    "status", "payment_status", "payment_id", "checkout_session_id",
    "shipping_address",
    "shipping_rate_id", "shipping_carrier", "shipping_service", "shipping_cost",
    "shipment_id", "tracking_number", "tracking_url", "shipping_label_url",
    "notes", "version", "created_at", "updated_at", "paid_at",
)


def _json_or_none(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _load_json(value) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else dict(value)


def order_values(order: Order) -> tuple:
    """Order fields in ORDER_COLUMNS order, ready for asyncpg"""
    address = order.shipping_address.model_dump() if order.shipping_address else None
    values = {
        **order.model_dump(exclude={"items", "is_paid", "shipping_address"}),
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "shipping_address": _json_or_none(address),
    }
    return tuple(values[c] for c in ORDER_COLUMNS)


def item_values(order: Order) -> list[tuple]:
    """order_items rows; line_no keeps the purchase order of the lines"""
    return [
        (item.id, order.id, line_no, item.product_id, item.product_name,
         item.quantity, item.price, item.total)
        for line_no, item in enumerate(order.items)
    ]


def order_from_record(row, item_rows=()) -> Order:
    data = dict(row)
    address = _load_json(data.get("shipping_address"))
    data["id"] = str(data["id"])
    data["shipping_address"] = ShippingAddress(**address) if address else None
    data["items"] = [
        OrderItem(**{
            **{k: v for k, v in dict(item).items() if k != "line_no"},
            "id": str(item["id"]),
            "order_id": str(item["order_id"]),
        })
        for item in item_rows
    ]
    return Order(**{k: v for k, v in data.items() if k in ORDER_COLUMNS or k == "items"})


# =============================================================================
# ORDER REPOSITORY
# =============================================================================

class PostgresOrderRepository(IOrderRepository):
    """Order store on PostgreSQL"""

    def __init__(self, db: Database):
        self.db = db

    async def _load(self, where: str, value) -> Optional[Order]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(f"SELECT * FROM orders WHERE {where} = $1", value)
            if row is None:
                return None
            items = await conn.fetch(
                "SELECT * FROM order_items WHERE order_id = $1 ORDER BY line_no", row["id"]
            )
        return order_from_record(row, items)

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._load("id::text", str(order_id))

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        return await self._load("order_number", order_number)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return await self._load("payment_id", payment_id)

    async def get_by_session_id(self, session_id: str) -> Optional[Order]:
        return await self._load("checkout_session_id", session_id)

    async def create_if_absent(self, order: Order) -> tuple[Order, bool]:
        columns = ", ".join(ORDER_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(ORDER_COLUMNS) + 1))

        async with self.db.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    f"INSERT INTO orders ({columns}) VALUES ({placeholders}) "
                    f"ON CONFLICT DO NOTHING RETURNING id",
                    *order_values(order),
                )
                if inserted is not None:
                    await conn.executemany(
                        """
                        INSERT INTO order_items
                        (id, order_id, line_no, product_id, product_name, quantity, price, total)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        """,
                        item_values(order),
                    )

        if inserted is not None:
            logger.info("order_inserted", order_id=order.id, order_number=order.order_number)
            return order, True

        existing = (
            (order.payment_id and await self.get_by_payment_id(order.payment_id))
            or (order.checkout_session_id and await self.get_by_session_id(order.checkout_session_id))
            or await self.get_by_order_number(order.order_number)
        )
        logger.info("order_insert_skipped",
                    order_number=order.order_number,
                    existing_order_id=existing.id if existing else None)
        return existing, False

    async def update(self, order: Order, expected_version: int) -> Order:
        mutable = [c for c in ORDER_COLUMNS if c not in ("id", "order_number", "created_at")]
        values = dict(zip(ORDER_COLUMNS, order_values(order)))
        set_clause = ", ".join(f"{c} = ${i}" for i, c in enumerate(mutable, start=1))
        id_param = len(mutable) + 1

        result = await self.db.execute(
            f"UPDATE orders SET {set_clause} "
            f"WHERE id = ${id_param} AND version = ${id_param + 1}",
            *[values[c] for c in mutable],
            order.id,
            expected_version,
        )
        if result != "UPDATE 1":
            current = await self.db.fetch_one(
                "SELECT version FROM orders WHERE id = $1", order.id
            )
            raise ConcurrentUpdateError(
                order.id, expected_version, current["version"] if current else None
            )
        return order


# =============================================================================
# AUDIT LOG
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Append-only audit trail in order_events"""

    def __init__(self, db: Database):
        self.db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self.db.execute(
            """
            INSERT INTO order_events
            (id, correlation_id, event_type, entity_type, entity_id,
             previous_state, new_state, metadata, actor, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            entry.log_id,
            entry.correlation_id,
            entry.event_type.value,
            entry.entity_type,
            entry.entity_id,
            _json_or_none(entry.previous_state),
            _json_or_none(entry.new_state),
            json.dumps(entry.metadata, default=str),
            entry.actor,
            entry.timestamp,
        )

    @staticmethod
    def _to_entry(row) -> AuditLogEntry:
        data = dict(row)
        return AuditLogEntry(
            log_id=str(data["id"]),
            correlation_id=data["correlation_id"],
            event_type=data["event_type"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            previous_state=_load_json(data["previous_state"]),
            new_state=_load_json(data["new_state"]),
            metadata=_load_json(data["metadata"]) or {},
            actor=data["actor"],
            timestamp=data["timestamp"],
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM order_events WHERE correlation_id = $1 ORDER BY timestamp",
            correlation_id,
        )
        return [self._to_entry(r) for r in rows]

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM order_events WHERE entity_id = $1 ORDER BY timestamp",
            entity_id,
        )
        return [self._to_entry(r) for r in rows]


# =============================================================================
# USER DIRECTORY
# =============================================================================

class PostgresUserDirectory(IUserDirectory):
    """Reads emails from the storefront's users table (owned elsewhere)"""

    def __init__(self, db: Database):
        self.db = db

    async def get_email(self, user_id: str) -> Optional[str]:
        row = await self.db.fetch_one(
            "SELECT email FROM users WHERE id::text = $1", str(user_id)
        )
        return row["email"] if row else None

