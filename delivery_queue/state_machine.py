# delivery_queue/state_machine.py
"""
Order state machine: the only component that writes queue positions.

Each public operation runs as one store transaction: read the order and the
slot snapshot, validate, plan the position changes with ``queue``, write them
in one batch. A ``ConcurrentModification`` from the store is retried up to
``max_attempts`` times; other errors propagate untouched. Status-change events
are published only after the transaction has committed.
"""
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import structlog

from . import queue
from .errors import ConcurrentModification, InvalidTransition, NotFound
from .estimator import Stage, estimate_delivery
from .events import EventBus, StatusChanged
from .models import SLOT_HOLDING, TERMINAL, DeliveryType, Order, OrderStatus

logger = structlog.get_logger(__name__)

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.PAYMENT_VERIFICATION, S.CANCELLED}),
    S.PAYMENT_VERIFICATION: frozenset({S.QUEUED, S.CANCELLED}),
    S.QUEUED: frozenset({S.IN_PROGRESS, S.DELIVERED, S.DELAYED, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.DELIVERED, S.DELAYED, S.CANCELLED}),
    S.DELAYED: frozenset({S.QUEUED, S.IN_PROGRESS, S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}


def is_valid_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStateMachine:
    def __init__(
        self,
        store,
        bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
    ):
        self.store = store
        self.bus = bus
        self.clock = clock
        self.max_attempts = max_attempts

    # -------------------- transactions --------------------

    def _atomic(self, operation: str, work):
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.store.atomic() as tx:
                    return work(tx)
            except ConcurrentModification:
                if attempt == self.max_attempts:
                    logger.error("Queue operation gave up after conflicts", operation=operation,
                                 attempts=attempt)
                    raise
                logger.warning("Retrying queue operation after conflict", operation=operation,
                               attempt=attempt)

    def _load(self, tx, order_id: str) -> Order:
        order = tx.get_order(order_id)
        if order is None:
            raise NotFound(order_id)
        return order

    def _snapshot(self, tx) -> List[queue.QueueSlot]:
        slots = queue.slots_of(tx.queue_snapshot())
        queue.check_contiguous(slots)
        return slots

    def _write(self, tx, order: Order, changes: Dict[str, int], now: datetime) -> None:
        """Persist ``order`` and the position changes of every other order, as one batch."""
        if order.order_id in changes:
            order.queue_position = changes.pop(order.order_id)
        order.updated_at = now
        tx.update_order(order)
        tx.shift_positions(changes, now)

    def _emit(self, order_id: str, old: OrderStatus, new: OrderStatus, now: datetime) -> None:
        if self.bus is None or old == new:
            return
        self.bus.publish(StatusChanged(order_id=order_id, old_status=old, new_status=new, occurred_at=now))

    @staticmethod
    def _enqueue_plan(slots, order: Order) -> Dict[str, int]:
        if order.delivery_type == DeliveryType.EXPRESS:
            return queue.promote(slots, order.order_id)
        return {order.order_id: queue.next_position(slots)}

    # -------------------- public API --------------------

    def register_order(self, order: Order) -> Order:
        """Store an order handed over by checkout; it holds no slot until payment is accepted."""
        if order.status not in (S.PENDING, S.PAYMENT_VERIFICATION):
            raise InvalidTransition(order.order_id, "new", order.status.value)

        def work(tx):
            existing = tx.get_order(order.order_id)
            if existing is not None:
                raise InvalidTransition(order.order_id, existing.status.value, order.status.value)
            now = self.clock()
            stored = order.model_copy(update={
                "queue_position": None, "created_at": now, "updated_at": now,
            })
            tx.insert_order(stored)
            return stored

        stored = self._atomic("register_order", work)
        logger.info("Order registered", order_id=stored.order_id, status=stored.status.value)
        return stored

    def create_queued_order(self, order: Order) -> Tuple[int, datetime]:
        """Put an order whose payment was accepted into the queue.

        Express orders go straight behind the Express orders already waiting;
        Standard orders go to the tail. Returns the position and the initial ETA.

        ``order`` is either a new record or the id of a registered order still in
        payment verification. For a registered order the stored record wins: only
        its id is read from ``order``, and its delivery type, notes and payload
        are kept as registered.
        """
        order_id = order.order_id or str(uuid.uuid4())

        def work(tx):
            now = self.clock()
            existing = tx.get_order(order_id)
            if existing is None:
                if order.status != S.PAYMENT_VERIFICATION:
                    raise InvalidTransition(order_id, order.status.value, S.QUEUED.value)
                target = order.model_copy(update={"order_id": order_id, "created_at": now})
            elif existing.status != S.PAYMENT_VERIFICATION:
                raise InvalidTransition(order_id, existing.status.value, S.QUEUED.value)
            else:
                target = existing
            old_status = target.status

            slots = self._snapshot(tx)
            changes = self._enqueue_plan(slots, target)
            target.queue_position = changes.pop(order_id)
            target.status = S.QUEUED
            target.estimated_delivery_time = estimate_delivery(target.delivery_type, Stage.INITIAL, now)
            target.updated_at = now
            if existing is None:
                tx.insert_order(target)
            else:
                tx.update_order(target)
            tx.shift_positions(changes, now)
            return target, old_status, now

        queued, old_status, now = self._atomic("create_queued_order", work)
        logger.info(
            "Order queued",
            order_id=order_id,
            delivery_type=queued.delivery_type.value,
            queue_position=queued.queue_position,
        )
        self._emit(order_id, old_status, S.QUEUED, now)
        return queued.queue_position, queued.estimated_delivery_time

    def change_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        notes: Optional[str] = None,
        delivery_proof_url: Optional[str] = None,
    ) -> Order:
        new_status = OrderStatus(new_status)

        def work(tx):
            order = self._load(tx, order_id)
            old = order.status
            if new_status == old:
                if old in TERMINAL:
                    raise InvalidTransition(order_id, old.value, new_status.value)
                return order, old, None
            if not is_valid_transition(old, new_status):
                raise InvalidTransition(order_id, old.value, new_status.value)
            if old == S.DELAYED:
                # a delayed order resumes at or after the stage it was delayed from
                stage = order.delayed_from or S.QUEUED
                if new_status != stage and not is_valid_transition(stage, new_status):
                    raise InvalidTransition(order_id, f"delayed (from {stage.value})", new_status.value)

            now = self.clock()
            changes: Dict[str, int] = {}
            if old in SLOT_HOLDING and new_status not in SLOT_HOLDING:
                slots = self._snapshot(tx)
                removed = order.queue_position
                rest = [s for s in slots if s.order_id != order_id]
                changes = queue.compact(rest, removed)
                order.queue_position = None
                logger.info("Compacting queue", order_id=order_id, removed_position=removed,
                            shifted=len(changes))
            elif old not in SLOT_HOLDING and new_status in SLOT_HOLDING:
                changes = self._enqueue_plan(self._snapshot(tx), order)
                order.estimated_delivery_time = estimate_delivery(order.delivery_type, Stage.INITIAL, now)
            elif new_status == S.IN_PROGRESS:
                order.estimated_delivery_time = estimate_delivery(order.delivery_type, Stage.IN_PROGRESS, now)
            elif new_status == S.QUEUED:
                order.estimated_delivery_time = estimate_delivery(order.delivery_type, Stage.INITIAL, now)

            if new_status == S.DELIVERED:
                order.delivered_at = now
                if delivery_proof_url is not None:
                    order.delivery_proof_url = delivery_proof_url
            if new_status == S.DELAYED:
                order.delayed_from = old
            elif old == S.DELAYED:
                order.delayed_from = None
            if notes is not None:
                order.notes = notes
            order.status = new_status
            self._write(tx, order, changes, now)
            return order, old, now

        order, old, now = self._atomic("change_status", work)
        if now is not None:
            logger.info("Order status changed", order_id=order_id, old_status=old.value,
                        new_status=new_status.value)
            self._emit(order_id, old, new_status, now)
        return order

    def change_delivery_type(self, order_id: str, new_type: DeliveryType) -> Order:
        new_type = DeliveryType(new_type)

        def work(tx):
            order = self._load(tx, order_id)
            if order.status not in (S.QUEUED, S.IN_PROGRESS):
                raise InvalidTransition(order_id, order.status.value, f"delivery_type={new_type.value}")
            if order.delivery_type == new_type:
                return order

            now = self.clock()
            slots = self._snapshot(tx)
            if new_type == DeliveryType.EXPRESS:
                changes = queue.requeue_express(slots, order_id)
            else:
                changes = queue.demote(slots, order_id)
            order.delivery_type = new_type
            stage = Stage.IN_PROGRESS if order.status == S.IN_PROGRESS else Stage.INITIAL
            order.estimated_delivery_time = estimate_delivery(new_type, stage, now)
            old_position = order.queue_position
            self._write(tx, order, changes, now)
            logger.info("Delivery type changed", order_id=order_id, delivery_type=new_type.value,
                        old_position=old_position, new_position=order.queue_position)
            return order

        return self._atomic("change_delivery_type", work)

    def set_queue_position(self, order_id: str, new_position: int, actor: str) -> Order:
        """Operator override: move one order to ``new_position``.

        Express priority is not enforced here; an operator may place a Standard
        order ahead of Express ones. Every call is logged with ``actor``.
        """
        def work(tx):
            order = self._load(tx, order_id)
            if order.status not in SLOT_HOLDING:
                raise InvalidTransition(order_id, order.status.value, f"queue_position={new_position}")
            slots = self._snapshot(tx)
            old_position = order.queue_position
            changes = queue.reposition(slots, order_id, new_position)
            if changes:
                self._write(tx, order, changes, self.clock())
            return order, old_position

        order, old_position = self._atomic("set_queue_position", work)
        logger.warning(
            "Queue position set manually",
            order_id=order_id,
            actor=actor,
            old_position=old_position,
            new_position=order.queue_position,
        )
        return order

    def set_admin_notes(self, order_id: str, admin_notes: str) -> Order:
        def work(tx):
            order = self._load(tx, order_id)
            order.admin_notes = admin_notes
            order.updated_at = self.clock()
            tx.update_order(order)
            return order

        return self._atomic("set_admin_notes", work)

    def get_order(self, order_id: str) -> Order:
        with self.store.read() as tx:
            order = tx.get_order(order_id, for_update=False)
        if order is None:
            raise NotFound(order_id)
        return order

    def get_active_queue(
        self,
        delivery_type: Optional[DeliveryType] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> List[Order]:
        """Slot-holding orders in position order.

        Delayed orders keep their slot, so they are listed unless ``statuses``
        narrows the result (for example to queued and in_progress).
        """
        with self.store.read() as tx:
            return tx.list_queue(delivery_type, statuses)

    def list_orders(self, limit: int = 50, offset: int = 0) -> List[Order]:
        """Every order, newest first."""
        with self.store.read() as tx:
            return tx.list_orders(limit, offset)

    def queue_summary(self) -> Dict[str, int]:
        with self.store.read() as tx:
            counts = tx.status_counts()
        return {status.value: counts.get(status.value, 0) for status in OrderStatus}
