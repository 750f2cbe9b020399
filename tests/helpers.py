"""
Test doubles and assertions shared by the unit and integration tests.

``MemoryOrderStore`` stands in for ``PgOrderStore``: the same transaction
interface, one lock for every mutation, copy-on-write rows that are only
swapped in when the block finishes, and a uniqueness check on positions at
commit (mirroring the deferred UNIQUE constraint in Postgres).
"""
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from delivery_queue.errors import ConcurrentModification, InconsistentQueueState
from delivery_queue.models import DeliveryType, Order, OrderStatus

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MemoryTransaction:
    def __init__(self, rows):
        self.rows = rows

    def get_order(self, order_id, for_update=True):
        order = self.rows.get(order_id)
        return order.model_copy(deep=True) if order else None

    def queue_snapshot(self):
        held = [o.model_copy(deep=True) for o in self.rows.values() if o.holds_slot]
        return sorted(held, key=lambda o: o.queue_position)

    def list_queue(self, delivery_type=None, statuses=None):
        wanted = None if statuses is None else {OrderStatus(s) for s in statuses}
        return [o for o in self.queue_snapshot()
                if (delivery_type is None or o.delivery_type == DeliveryType(delivery_type))
                and (wanted is None or o.status in wanted)]

    def list_orders(self, limit, offset):
        # newest first, ties by id
        rows = sorted(self.rows.values(), key=lambda o: o.order_id)
        rows.sort(key=lambda o: o.created_at or _EPOCH, reverse=True)
        return [o.model_copy(deep=True) for o in rows[offset:offset + limit]]

    def insert_order(self, order):
        if order.order_id in self.rows:
            raise KeyError(order.order_id)
        self.rows[order.order_id] = order.model_copy(deep=True)

    def update_order(self, order):
        self.rows[order.order_id] = order.model_copy(deep=True)

    def shift_positions(self, changes, now):
        for order_id, position in changes.items():
            row = self.rows[order_id]
            row.queue_position = position
            row.updated_at = now

    def status_counts(self):
        counts = {}
        for o in self.rows.values():
            counts[o.status.value] = counts.get(o.status.value, 0) + 1
        return counts


class MemoryOrderStore:
    def __init__(self, lock_timeout=5.0):
        self.rows = {}
        self.lock_timeout = lock_timeout
        self.commits = 0
        self._lock = threading.Lock()

    @contextmanager
    def atomic(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ConcurrentModification("lock timeout")
        try:
            working = {k: v.model_copy(deep=True) for k, v in self.rows.items()}
            yield MemoryTransaction(working)
            positions = [o.queue_position for o in working.values() if o.queue_position is not None]
            if len(positions) != len(set(positions)):
                raise InconsistentQueueState("duplicate queue position at commit")
            self.rows = working
            self.commits += 1
        finally:
            self._lock.release()

    @contextmanager
    def read(self):
        with self._lock:
            snapshot = {k: v.model_copy(deep=True) for k, v in self.rows.items()}
        yield MemoryTransaction(snapshot)

    def ping(self):
        return True

    def seed(self, *orders):
        """Write rows directly, bypassing the state machine."""
        for order in orders:
            self.rows[order.order_id] = order.model_copy(deep=True)


class FlakyStore(MemoryOrderStore):
    """Raises ConcurrentModification on the first ``failures`` transactions."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    @contextmanager
    def atomic(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConcurrentModification("simulated conflict")
        with super().atomic() as tx:
            yield tx


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def new_order(order_id, delivery_type=DeliveryType.STANDARD, **fields):
    return Order(order_id=order_id, delivery_type=delivery_type, **fields)


def enqueue(machine, *pairs):
    """Queue orders given as ``(order_id, delivery_type)`` pairs, in order."""
    for order_id, delivery_type in pairs:
        machine.create_queued_order(new_order(order_id, delivery_type))


def line(machine):
    """The queue as ``[(order_id, position), ...]`` in position order."""
    return [(o.order_id, o.queue_position) for o in machine.get_active_queue()]


def assert_contiguous(machine):
    positions = [p for _, p in line(machine)]
    assert positions == list(range(1, len(positions) + 1))


def assert_express_first(machine):
    queue = machine.get_active_queue()
    express = [o.queue_position for o in queue if o.delivery_type == DeliveryType.EXPRESS]
    standard = [o.queue_position for o in queue if o.delivery_type == DeliveryType.STANDARD]
    if express and standard:
        assert max(express) < min(standard)
