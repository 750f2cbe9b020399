# delivery_queue/db.py
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .config import Settings, get_settings
from .errors import ConcurrentModification, InconsistentQueueState
from .models import SLOT_HOLDING, DeliveryType, Order, OrderStatus

logger = structlog.get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS orders (
    order_id                TEXT PRIMARY KEY,
    status                  TEXT NOT NULL CHECK (status IN (
                                'pending', 'payment_verification', 'queued', 'in_progress',
                                'delivered', 'delayed', 'cancelled')),
    delivery_type           TEXT NOT NULL DEFAULT 'Standard'
                                CHECK (delivery_type IN ('Standard', 'Express')),
    queue_position          INTEGER CHECK (queue_position > 0),
    estimated_delivery_time TIMESTAMPTZ,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    delivered_at            TIMESTAMPTZ,
    delayed_from            TEXT,
    notes                   TEXT,
    admin_notes             TEXT,
    delivery_proof_url      TEXT,
    payload                 JSONB NOT NULL DEFAULT '{}'::jsonb,
    CONSTRAINT orders_queue_position_key UNIQUE (queue_position) DEFERRABLE INITIALLY DEFERRED,
    CONSTRAINT orders_position_iff_slot CHECK (
        (queue_position IS NOT NULL) = (status IN ('queued', 'in_progress', 'delayed')))
);
ALTER TABLE orders ADD COLUMN IF NOT EXISTS delayed_from TEXT;
CREATE INDEX IF NOT EXISTS orders_status_idx ON orders (status);
CREATE INDEX IF NOT EXISTS orders_created_at_idx ON orders (created_at DESC);
"""

_SLOT_STATUSES = [s.value for s in SLOT_HOLDING]

# errors meaning "someone else got there first"; the caller retries these
_CONFLICTS = (
    errors.LockNotAvailable,
    errors.SerializationFailure,
    errors.DeadlockDetected,
    errors.QueryCanceled,
)

_pool: Optional[ConnectionPool] = None
_pool_lock = threading.Lock()


def get_pool(settings: Optional[Settings] = None) -> ConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            settings = settings or get_settings()
            if not settings.database_url:
                raise RuntimeError("DATABASE_URL is not set")
            _pool = ConnectionPool(
                conninfo=settings.database_url,
                min_size=settings.pool_min,
                max_size=settings.pool_max,
                kwargs={"autocommit": False},  # we manage transactions
                open=True,
            )
        return _pool


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.close()
            _pool = None


@contextmanager
def get_conn(pool: Optional[ConnectionPool] = None):
    with (pool or get_pool()).connection() as conn:
        yield conn


def fetch_all(conn, sql, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchall()


def fetch_one(conn, sql, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchone()


def execute(conn, sql, params=None):
    with conn.cursor() as cur:
        cur.execute(sql, params or ())


def execute_many(conn, sql, params_seq):
    with conn.cursor() as cur:
        cur.executemany(sql, params_seq)


def ensure_schema(pool: Optional[ConnectionPool] = None) -> None:
    with get_conn(pool) as conn:
        try:
            execute(conn, SCHEMA_SQL)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _to_order(row) -> Optional[Order]:
    return Order.model_validate(row) if row else None


def _value(status) -> Optional[str]:
    return status.value if status is not None else None


class PgQueueTransaction:
    """Reads and writes on one connection, inside the caller's transaction."""

    def __init__(self, conn):
        self.conn = conn

    def get_order(self, order_id: str, for_update: bool = True) -> Optional[Order]:
        sql = "SELECT * FROM orders WHERE order_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        return _to_order(fetch_one(self.conn, sql, (order_id,)))

    def queue_snapshot(self) -> List[Order]:
        rows = fetch_all(
            self.conn,
            "SELECT * FROM orders WHERE status = ANY(%s) ORDER BY queue_position FOR UPDATE",
            (_SLOT_STATUSES,),
        )
        return [_to_order(r) for r in rows]

    def list_queue(
        self,
        delivery_type: Optional[DeliveryType] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        sql = "SELECT * FROM orders WHERE status = ANY(%s)"
        params = [_SLOT_STATUSES]
        if statuses is not None:
            sql += " AND status = ANY(%s)"
            params.append([OrderStatus(s).value for s in statuses])
        if delivery_type is not None:
            sql += " AND delivery_type = %s"
            params.append(DeliveryType(delivery_type).value)
        sql += " ORDER BY queue_position"
        return [_to_order(r) for r in fetch_all(self.conn, sql, params)]

    def list_orders(self, limit: int, offset: int) -> List[Order]:
        rows = fetch_all(self.conn,
            "SELECT * FROM orders ORDER BY created_at DESC, order_id LIMIT %s OFFSET %s",
            (limit, offset)
        )
        return [_to_order(r) for r in rows]

    def insert_order(self, order: Order) -> None:
        execute(self.conn, """
            INSERT INTO orders(order_id, status, delivery_type, queue_position, estimated_delivery_time,
                               created_at, updated_at, delivered_at, delayed_from, notes, admin_notes,
                               delivery_proof_url, payload)
            VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
        """, (
            order.order_id, order.status.value, order.delivery_type.value, order.queue_position,
            order.estimated_delivery_time, order.created_at, order.updated_at, order.delivered_at,
            _value(order.delayed_from), order.notes, order.admin_notes, order.delivery_proof_url,
            Jsonb(order.payload),
        ))

    def update_order(self, order: Order) -> None:
        execute(self.conn, """
            UPDATE orders
            SET status = %s,
                delivery_type = %s,
                queue_position = %s,
                estimated_delivery_time = %s,
                updated_at = %s,
                delivered_at = %s,
                delayed_from = %s,
                notes = %s,
                admin_notes = %s,
                delivery_proof_url = %s
            WHERE order_id = %s
        """, (
            order.status.value, order.delivery_type.value, order.queue_position,
            order.estimated_delivery_time, order.updated_at, order.delivered_at,
            _value(order.delayed_from), order.notes, order.admin_notes, order.delivery_proof_url,
            order.order_id,
        ))

    def shift_positions(self, changes: Dict[str, int], now: datetime) -> None:
        if not changes:
            return
        # uniqueness is checked at commit, so the batch may pass through duplicates
        execute_many(
            self.conn,
            "UPDATE orders SET queue_position = %s, updated_at = %s WHERE order_id = %s",
            [(position, now, order_id) for order_id, position in changes.items()],
        )

    def status_counts(self) -> Dict[str, int]:
        rows = fetch_all(self.conn, "SELECT status, COUNT(*)::int AS n FROM orders GROUP BY status")
        return {r["status"]: r["n"] for r in rows}


class PgOrderStore:
    def __init__(self, pool: Optional[ConnectionPool] = None, settings: Optional[Settings] = None):
        self._pool = pool
        self.settings = settings or get_settings()

    @contextmanager
    def atomic(self):
        """One serialized queue transaction.

        Every mutation takes the same transaction-scoped advisory lock before it
        reads anything, so the snapshot it plans from is never stale. The whole
        batch commits or none of it does.
        """
        with get_conn(self._pool) as conn:
            try:
                execute(conn, "SELECT set_config('lock_timeout', %s, true)",
                        (f"{self.settings.lock_timeout_ms}ms",))
                execute(conn, "SELECT set_config('statement_timeout', %s, true)",
                        (f"{self.settings.statement_timeout_ms}ms",))
                execute(conn, "SELECT pg_advisory_xact_lock(%s)", (self.settings.queue_lock_key,))
                yield PgQueueTransaction(conn)
                conn.commit()
            except errors.UniqueViolation as e:
                conn.rollback()
                if e.diag.constraint_name == "orders_queue_position_key":
                    raise InconsistentQueueState(f"duplicate queue position at commit: {e}") from e
                raise
            except _CONFLICTS as e:
                conn.rollback()
                logger.info("Queue transaction conflicted", error=type(e).__name__)
                raise ConcurrentModification(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def read(self):
        with get_conn(self._pool) as conn:
            try:
                yield PgQueueTransaction(conn)
            finally:
                conn.rollback()

    def ping(self) -> bool:
        with self.read() as tx:
            row = fetch_one(tx.conn, "SELECT 1 AS ok")
            return row["ok"] == 1
