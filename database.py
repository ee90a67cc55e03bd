"""
PostgreSQL Order Store for the fashion marketplace escrow service.

This module persists orders, escrow records, disputes, timeline events,
notifications and KYC records in PostgreSQL. A transition is written in a
single database transaction whose first statement is a conditional UPDATE
on the order version, so two writers racing on one order can never both
commit.

Dependencies:
    - asyncpg: For async PostgreSQL operations
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import asyncpg

from models import (
    Dispute,
    DisputeStatus,
    EscrowRecord,
    Item,
    KycRecord,
    KycStatus,
    Notification,
    Order,
    OrderEvent,
    OrderState,
)
from order_store import (
    ConcurrentModification,
    DisputeNotFound,
    OrderNotFound,
    OrderStore,
    StoreError,
    TransitionCommit,
)

logger = logging.getLogger(__name__)


class DatabaseError(StoreError):
    """Custom exception for database-related errors."""
    pass


SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    item_id VARCHAR(64) PRIMARY KEY,
    designer_id VARCHAR(128) NOT NULL,
    name VARCHAR(255) NOT NULL,
    price NUMERIC(18, 6) NOT NULL,
    currency VARCHAR(8) NOT NULL,
    available BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS orders (
    order_id VARCHAR(64) PRIMARY KEY,
    item_id VARCHAR(64) NOT NULL,
    customer_id VARCHAR(128) NOT NULL,
    designer_id VARCHAR(128) NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1 CHECK (quantity > 0),
    amount NUMERIC(18, 6) NOT NULL,
    currency VARCHAR(8) NOT NULL,
    state VARCHAR(20) NOT NULL DEFAULT 'created' CHECK (state IN (
        'created', 'paid', 'shipped', 'delivered', 'disputed',
        'released', 'refunded', 'cancelled'
    )),
    version INTEGER NOT NULL DEFAULT 1,
    delivery_address TEXT,
    special_instructions TEXT,
    delivery_proof JSONB,
    review JSONB,
    cancellation_reason TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    paid_at TIMESTAMP,
    shipped_at TIMESTAMP,
    delivered_at TIMESTAMP,
    closed_at TIMESTAMP,
    CONSTRAINT positive_amount CHECK (amount > 0)
);

CREATE TABLE IF NOT EXISTS escrow_records (
    escrow_id VARCHAR(64) PRIMARY KEY,
    order_id VARCHAR(64) UNIQUE NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
    customer_wallet VARCHAR(255) NOT NULL,
    designer_wallet VARCHAR(255) NOT NULL,
    currency VARCHAR(8) NOT NULL,
    locked_amount NUMERIC(18, 6) NOT NULL,
    settled_amount NUMERIC(18, 6) NOT NULL DEFAULT 0,
    status VARCHAR(20) NOT NULL CHECK (status IN ('pending', 'locked', 'released', 'refunded')),
    lock_reference VARCHAR(255),
    settlement_reference VARCHAR(255),
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    settled_at TIMESTAMP,
    CONSTRAINT settled_within_locked CHECK (settled_amount >= 0 AND settled_amount <= locked_amount)
);

CREATE TABLE IF NOT EXISTS disputes (
    dispute_id VARCHAR(64) PRIMARY KEY,
    order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
    opened_by VARCHAR(128) NOT NULL,
    reason VARCHAR(40) NOT NULL,
    description TEXT NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'resolved')),
    outcome VARCHAR(20) CHECK (outcome IN ('release', 'refund')),
    resolution_notes TEXT,
    resolved_by VARCHAR(128),
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    resolved_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS order_events (
    id SERIAL PRIMARY KEY,
    order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
    from_state VARCHAR(20),
    to_state VARCHAR(20) NOT NULL,
    actor_id VARCHAR(128) NOT NULL,
    actor_role VARCHAR(20) NOT NULL,
    note TEXT,
    occurred_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS notifications (
    notification_id VARCHAR(64) PRIMARY KEY,
    recipient_id VARCHAR(128) NOT NULL,
    event_type VARCHAR(40) NOT NULL,
    payload JSONB NOT NULL,
    is_read BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS kyc_records (
    party_id VARCHAR(128) PRIMARY KEY,
    full_name VARCHAR(255) NOT NULL,
    document_references JSONB NOT NULL DEFAULT '[]',
    status VARCHAR(20) NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected')),
    notes TEXT,
    submitted_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    reviewed_at TIMESTAMP,
    reviewed_by VARCHAR(128)
);
"""

MIGRATIONS = """
ALTER TABLE items ADD COLUMN IF NOT EXISTS created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP;
ALTER TABLE orders ADD COLUMN IF NOT EXISTS quantity INTEGER NOT NULL DEFAULT 1;
"""

INDEXES = """
CREATE INDEX IF NOT EXISTS idx_items_designer_id
    ON items(designer_id, created_at DESC);
CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_one_open_per_order
    ON disputes(order_id) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_orders_state_updated
    ON orders(state, updated_at);
CREATE INDEX IF NOT EXISTS idx_orders_customer_id
    ON orders(customer_id);
CREATE INDEX IF NOT EXISTS idx_orders_designer_id
    ON orders(designer_id);
CREATE INDEX IF NOT EXISTS idx_order_events_order_id
    ON order_events(order_id, id);
CREATE INDEX IF NOT EXISTS idx_notifications_recipient
    ON notifications(recipient_id, created_at DESC);
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns into Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


def _dump(model: Any) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode='json') if model is not None else None


def _enum_value(value: Any) -> Optional[str]:
    return value.value if value is not None else None


class PostgresOrderStore(OrderStore):
    """
    Order Store backed by PostgreSQL.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize the store.

        Args:
            connection_string: PostgreSQL connection string
            min_size: Minimum pool size
            max_size: Maximum pool size

        Raises:
            DatabaseError: If no connection string is given
        """
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size

        if not self.connection_string:
            raise DatabaseError(
                "Database connection string not provided. "
                "Set DATABASE_URL or pass connection_string."
            )

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection
            )
            logger.info("Database connection pool created successfully")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}")

    async def close(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    async def init_database(self) -> None:
        """
        Initialize database schema by creating tables if they don't exist.

        Raises:
            DatabaseError: If table creation fails
        """
        self._require_pool()

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(SCHEMA)
                    logger.info("Escrow tables created/verified successfully")

                    await conn.execute(MIGRATIONS)

                    await conn.execute(INDEXES)
                    logger.info("Database indexes created/verified successfully")
        except asyncpg.PostgresError as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseError(f"Failed to initialize database: {e}")

    def _require_pool(self) -> None:
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")

    # ==================== CATALOG ====================

    async def get_item(self, item_id: str) -> Optional[Item]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM items WHERE item_id = $1", item_id)
        return Item(**dict(row)) if row else None

    async def save_item(self, item: Item) -> Item:
        self._require_pool()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO items (item_id, designer_id, name, price, currency, available, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (item_id) DO UPDATE
                SET name = EXCLUDED.name,
                    price = EXCLUDED.price,
                    currency = EXCLUDED.currency,
                    available = EXCLUDED.available
                """,
                item.item_id, item.designer_id, item.name, item.price,
                item.currency, item.available, item.created_at
            )
        return item

    async def list_items(
        self,
        designer_id: Optional[str] = None,
        available: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Item]:
        """List catalog items, newest first."""
        self._require_pool()

        conditions = []
        params: List[Any] = []
        for column, value in (('designer_id', designer_id), ('available', available)):
            if value is not None:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")

        query = "SELECT * FROM items"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        params.extend([limit, offset])
        query += f" ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [Item(**dict(row)) for row in rows]

    async def delete_item(self, item_id: str) -> bool:
        self._require_pool()
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM items WHERE item_id = $1", item_id)
        # asyncpg returns the command tag, e.g. 'DELETE 1'
        return result.split()[-1] != '0'

    # ==================== ORDERS ====================

    async def create_order(self, order: Order, events: Iterable[OrderEvent] = ()) -> Order:
        """
        Insert a new order together with its initial timeline events.

        Raises:
            ConcurrentModification: If the order id is already taken
            DatabaseError: If the insert fails
        """
        self._require_pool()

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        INSERT INTO orders
                        (order_id, item_id, customer_id, designer_id, quantity, amount, currency,
                         state, version, delivery_address, special_instructions,
                         created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 1, $9, $10, $11, $12)
                        RETURNING *
                        """,
                        order.order_id, order.item_id, order.customer_id,
                        order.designer_id, order.quantity, order.amount, order.currency,
                        order.state.value, order.delivery_address,
                        order.special_instructions, order.created_at, order.updated_at
                    )
                    await self._insert_events(conn, events)
        except asyncpg.UniqueViolationError:
            logger.warning(f"Order {order.order_id} already exists")
            raise ConcurrentModification(f"Order already exists: {order.order_id}")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to create order {order.order_id}: {e}")
            raise DatabaseError(f"Failed to create order: {e}")

        logger.debug(f"Order stored: {order.order_id}")
        return Order(**dict(row))

    async def get_order(self, order_id: str) -> Order:
        self._require_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1", order_id)
        if not row:
            raise OrderNotFound(f"Order not found: {order_id}")
        return Order(**dict(row))

    async def list_orders(
        self,
        state: Optional[OrderState] = None,
        customer_id: Optional[str] = None,
        designer_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Order]:
        """
        List orders matching every given filter, newest first.

        Returns:
            List of orders
        """
        self._require_pool()

        conditions = []
        params: List[Any] = []
        for column, value in (
            ('state', _enum_value(state)),
            ('customer_id', customer_id),
            ('designer_id', designer_id),
        ):
            if value is not None:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")
        if updated_before is not None:
            params.append(updated_before)
            conditions.append(f"updated_at < ${len(params)}")

        query = "SELECT * FROM orders"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        params.extend([limit, offset])
        query += f" ORDER BY created_at DESC LIMIT ${len(params) - 1} OFFSET ${len(params)}"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [Order(**dict(row)) for row in rows]

    async def commit_transition(self, commit: TransitionCommit) -> Order:
        """
        Write one transition atomically.

        The order row is updated only if its version still equals
        commit.expected_version; escrow, dispute and events follow in the
        same database transaction.

        Args:
            commit: Order, escrow, dispute and events to write

        Returns:
            The stored order with its new version

        Raises:
            OrderNotFound: If the order does not exist
            ConcurrentModification: If the version moved or a second open dispute
                would be created
            DatabaseError: If the write fails
        """
        self._require_pool()
        order = commit.order

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        UPDATE orders
                        SET state = $1,
                            version = version + 1,
                            delivery_proof = $2,
                            review = $3,
                            cancellation_reason = $4,
                            updated_at = $5,
                            paid_at = $6,
                            shipped_at = $7,
                            delivered_at = $8,
                            closed_at = $9
                        WHERE order_id = $10 AND version = $11
                        RETURNING *
                        """,
                        order.state.value, _dump(order.delivery_proof), _dump(order.review),
                        order.cancellation_reason, order.updated_at, order.paid_at,
                        order.shipped_at, order.delivered_at, order.closed_at,
                        order.order_id, commit.expected_version
                    )

                    if not row:
                        current = await conn.fetchval(
                            "SELECT version FROM orders WHERE order_id = $1",
                            order.order_id
                        )
                        if current is None:
                            raise OrderNotFound(f"Order not found: {order.order_id}")
                        raise ConcurrentModification(
                            f"Order {order.order_id} is at version {current}, "
                            f"expected {commit.expected_version}"
                        )

                    if commit.escrow is not None:
                        await self._upsert_escrow(conn, commit.escrow)
                    if commit.dispute is not None:
                        await self._upsert_dispute(conn, commit.dispute)
                    await self._insert_events(conn, commit.events)
        except asyncpg.UniqueViolationError:
            logger.warning(f"Order {order.order_id} already has an open dispute")
            raise ConcurrentModification(f"Order {order.order_id} already has an open dispute")
        except asyncpg.PostgresError as e:
            logger.error(f"Failed to commit transition for order {order.order_id}: {e}")
            raise DatabaseError(f"Failed to commit transition: {e}")

        return Order(**dict(row))

    async def _upsert_escrow(self, conn: asyncpg.Connection, escrow: EscrowRecord) -> None:
        await conn.execute(
            """
            INSERT INTO escrow_records
            (escrow_id, order_id, customer_wallet, designer_wallet, currency,
             locked_amount, settled_amount, status, lock_reference,
             settlement_reference, created_at, updated_at, settled_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
            ON CONFLICT (order_id) DO UPDATE
            SET settled_amount = EXCLUDED.settled_amount,
                status = EXCLUDED.status,
                settlement_reference = EXCLUDED.settlement_reference,
                updated_at = EXCLUDED.updated_at,
                settled_at = EXCLUDED.settled_at
            """,
            escrow.escrow_id, escrow.order_id, escrow.customer_wallet,
            escrow.designer_wallet, escrow.currency, escrow.locked_amount,
            escrow.settled_amount, escrow.status.value, escrow.lock_reference,
            escrow.settlement_reference, escrow.created_at, escrow.updated_at,
            escrow.settled_at
        )

    async def _upsert_dispute(self, conn: asyncpg.Connection, dispute: Dispute) -> None:
        await conn.execute(
            """
            INSERT INTO disputes
            (dispute_id, order_id, opened_by, reason, description, status,
             outcome, resolution_notes, resolved_by, created_at, resolved_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            ON CONFLICT (dispute_id) DO UPDATE
            SET status = EXCLUDED.status,
                outcome = EXCLUDED.outcome,
                resolution_notes = EXCLUDED.resolution_notes,
                resolved_by = EXCLUDED.resolved_by,
                resolved_at = EXCLUDED.resolved_at
            """,
            dispute.dispute_id, dispute.order_id, dispute.opened_by,
            dispute.reason.value, dispute.description, dispute.status.value,
            _enum_value(dispute.outcome), dispute.resolution_notes,
            dispute.resolved_by, dispute.created_at, dispute.resolved_at
        )

    async def _insert_events(self, conn: asyncpg.Connection, events: Iterable[OrderEvent]) -> None:
        rows = [
            (e.order_id, _enum_value(e.from_state), e.to_state.value, e.actor_id,
             e.actor_role.value, e.note, e.occurred_at)
            for e in events
        ]
        if rows:
            await conn.executemany(
                """
                INSERT INTO order_events
                (order_id, from_state, to_state, actor_id, actor_role, note, occurred_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                rows
            )

    async def get_order_events(self, order_id: str) -> List[OrderEvent]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT order_id, from_state, to_state, actor_id, actor_role, note, occurred_at
                FROM order_events
                WHERE order_id = $1
                ORDER BY id
                """,
                order_id
            )
        return [OrderEvent(**dict(row)) for row in rows]

    async def order_statistics(self) -> Dict[str, Any]:
        """
        Get order and escrow statistics (admin function).

        Returns:
            Dictionary containing:
                - total_orders: Total number of orders
                - orders_by_state: Order count per lifecycle state
                - escrow_totals: Locked, released and refunded sums per currency
        """
        self._require_pool()

        async with self.pool.acquire() as conn:
            state_rows = await conn.fetch(
                "SELECT state, COUNT(*) AS total FROM orders GROUP BY state"
            )
            escrow_rows = await conn.fetch(
                """
                SELECT
                    currency,
                    COALESCE(SUM(locked_amount) FILTER (WHERE status = 'locked'), 0) AS locked,
                    COALESCE(SUM(settled_amount) FILTER (WHERE status = 'released'), 0) AS released,
                    COALESCE(SUM(settled_amount) FILTER (WHERE status = 'refunded'), 0) AS refunded
                FROM escrow_records
                GROUP BY currency
                """
            )

        by_state = {state.value: 0 for state in OrderState}
        for row in state_rows:
            by_state[row['state']] = row['total']

        logger.info("Retrieved order statistics")
        return {
            'total_orders': sum(by_state.values()),
            'orders_by_state': by_state,
            'escrow_totals': {
                row['currency']: {
                    'locked': Decimal(row['locked']),
                    'released': Decimal(row['released']),
                    'refunded': Decimal(row['refunded']),
                }
                for row in escrow_rows
            },
        }

    # ==================== ESCROW & DISPUTES ====================

    async def get_escrow(self, order_id: str) -> Optional[EscrowRecord]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM escrow_records WHERE order_id = $1", order_id
            )
        return EscrowRecord(**dict(row)) if row else None

    async def get_dispute(self, dispute_id: str) -> Dispute:
        self._require_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM disputes WHERE dispute_id = $1", dispute_id)
        if not row:
            raise DisputeNotFound(f"Dispute not found: {dispute_id}")
        return Dispute(**dict(row))

    async def get_disputes_for_order(self, order_id: str) -> List[Dispute]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM disputes WHERE order_id = $1 ORDER BY created_at",
                order_id
            )
        return [Dispute(**dict(row)) for row in rows]

    async def list_disputes(self, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            if status:
                rows = await conn.fetch(
                    "SELECT * FROM disputes WHERE status = $1 ORDER BY created_at",
                    status.value
                )
            else:
                rows = await conn.fetch("SELECT * FROM disputes ORDER BY created_at")
        return [Dispute(**dict(row)) for row in rows]

    # ==================== NOTIFICATIONS ====================

    async def save_notification(self, notification: Notification) -> Notification:
        self._require_pool()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO notifications
                (notification_id, recipient_id, event_type, payload, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                notification.notification_id, notification.recipient_id,
                notification.event_type.value, _dump(notification.payload),
                notification.is_read, notification.created_at
            )
        return notification

    async def list_notifications(
        self,
        recipient_id: str,
        unread_only: bool = False
    ) -> List[Notification]:
        self._require_pool()
        query = "SELECT * FROM notifications WHERE recipient_id = $1"
        if unread_only:
            query += " AND NOT is_read"
        query += " ORDER BY created_at DESC"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, recipient_id)
        return [Notification(**dict(row)) for row in rows]

    async def mark_notifications_read(
        self,
        recipient_id: str,
        notification_ids: Optional[List[str]] = None
    ) -> int:
        self._require_pool()
        async with self.pool.acquire() as conn:
            if notification_ids is None:
                rows = await conn.fetch(
                    """
                    UPDATE notifications SET is_read = TRUE
                    WHERE recipient_id = $1 AND NOT is_read
                    RETURNING notification_id
                    """,
                    recipient_id
                )
            else:
                rows = await conn.fetch(
                    """
                    UPDATE notifications SET is_read = TRUE
                    WHERE recipient_id = $1 AND NOT is_read
                      AND notification_id = ANY($2::varchar[])
                    RETURNING notification_id
                    """,
                    recipient_id, notification_ids
                )
        return len(rows)

    # ==================== KYC ====================

    async def save_kyc(self, record: KycRecord) -> KycRecord:
        self._require_pool()
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO kyc_records
                (party_id, full_name, document_references, status, notes,
                 submitted_at, reviewed_at, reviewed_by)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (party_id) DO UPDATE
                SET full_name = EXCLUDED.full_name,
                    document_references = EXCLUDED.document_references,
                    status = EXCLUDED.status,
                    notes = EXCLUDED.notes,
                    submitted_at = EXCLUDED.submitted_at,
                    reviewed_at = EXCLUDED.reviewed_at,
                    reviewed_by = EXCLUDED.reviewed_by
                """,
                record.party_id, record.full_name, record.document_references,
                record.status.value, record.notes, record.submitted_at,
                record.reviewed_at, record.reviewed_by
            )
        return record

    async def get_kyc(self, party_id: str) -> Optional[KycRecord]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM kyc_records WHERE party_id = $1", party_id)
        return KycRecord(**dict(row)) if row else None

    async def list_kyc(self, status: Optional[KycStatus] = None) -> List[KycRecord]:
        self._require_pool()
        async with self.pool.acquire() as conn:
            if status:
                rows = await conn.fetch(
                    "SELECT * FROM kyc_records WHERE status = $1 ORDER BY submitted_at",
                    status.value
                )
            else:
                rows = await conn.fetch("SELECT * FROM kyc_records ORDER BY submitted_at")
        return [KycRecord(**dict(row)) for row in rows]


async def create_postgres_store(
    connection_string: str,
    min_size: int = 2,
    max_size: int = 10
) -> PostgresOrderStore:
    """
    Connect a PostgresOrderStore and make sure the schema exists.

    Args:
        connection_string: PostgreSQL connection string
        min_size: Minimum pool size
        max_size: Maximum pool size

    Returns:
        Connected store

    Raises:
        DatabaseError: If connection or schema creation fails
    """
    store = PostgresOrderStore(connection_string, min_size=min_size, max_size=max_size)
    await store.connect()
    await store.init_database()
    return store
