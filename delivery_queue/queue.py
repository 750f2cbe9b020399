# delivery_queue/queue.py
"""
Position planning for the fulfillment queue.

Every function here is pure: it takes a snapshot of the slot-holding orders
(read inside the caller's transaction) and returns the position changes as a
``{order_id: new_position}`` mapping. The state machine writes a plan in one
batch in the same transaction it read the snapshot in, so a plan is never
computed from positions that another mutation has since rewritten.
"""
from typing import Dict, Iterable, List, NamedTuple

from .errors import InconsistentQueueState, InvalidPosition
from .models import DeliveryType

Changes = Dict[str, int]


class QueueSlot(NamedTuple):
    order_id: str
    position: int
    delivery_type: DeliveryType


def slots_of(orders: Iterable) -> List[QueueSlot]:
    """Build a position-ordered snapshot from orders that hold a slot."""
    slots = [QueueSlot(o.order_id, o.queue_position, o.delivery_type) for o in orders]
    return sorted(slots, key=lambda s: s.position)


def check_contiguous(slots: List[QueueSlot]) -> None:
    """Raise InconsistentQueueState unless positions are exactly 1..k."""
    positions = sorted(s.position for s in slots)
    expected = list(range(1, len(slots) + 1))
    if positions != expected:
        seen, duplicates = set(), set()
        for p in positions:
            if p in seen:
                duplicates.add(p)
            seen.add(p)
        missing = sorted(set(expected) - seen)
        raise InconsistentQueueState(
            f"queue positions are not contiguous: duplicates={sorted(duplicates)} missing={missing}"
        )


def express_first(slots: List[QueueSlot]) -> bool:
    """True when every Express slot precedes every Standard slot."""
    express = [s.position for s in slots if s.delivery_type == DeliveryType.EXPRESS]
    standard = [s.position for s in slots if s.delivery_type == DeliveryType.STANDARD]
    if not express or not standard:
        return True
    return max(express) < min(standard)


def apply_changes(slots: List[QueueSlot], changes: Changes) -> List[QueueSlot]:
    moved = [s._replace(position=changes.get(s.order_id, s.position)) for s in slots]
    return sorted(moved, key=lambda s: s.position)


def next_position(slots: List[QueueSlot]) -> int:
    return max((s.position for s in slots), default=0) + 1


def compact(slots: List[QueueSlot], removed_position: int) -> Changes:
    """Close the gap left at ``removed_position``.

    ``slots`` must no longer contain the order that left. When some slot
    already holds ``removed_position`` the gap is closed (or never existed)
    and nothing changes, which makes a retried compaction harmless.
    """
    if any(s.position == removed_position for s in slots):
        return {}
    return {s.order_id: s.position - 1 for s in slots if s.position > removed_position}


def promote(slots: List[QueueSlot], order_id: str) -> Changes:
    """Insert ``order_id`` directly behind the Express orders already in line.

    ``slots`` must not contain ``order_id``; an order moving from another slot
    is compacted out first. Everything from the insertion point on moves back one.
    """
    target = sum(1 for s in slots if s.delivery_type == DeliveryType.EXPRESS) + 1
    changes = {s.order_id: s.position + 1 for s in slots if s.position >= target}
    changes[order_id] = target
    return changes


def demote(slots: List[QueueSlot], order_id: str) -> Changes:
    """Move ``order_id`` from its current slot to the tail of the queue."""
    current = next((s for s in slots if s.order_id == order_id), None)
    if current is None:
        raise InconsistentQueueState(f"order {order_id} holds no queue slot")
    rest = [s for s in slots if s.order_id != order_id]
    changes = compact(rest, current.position)
    changes[order_id] = next_position(apply_changes(rest, changes))
    return changes


def requeue_express(slots: List[QueueSlot], order_id: str) -> Changes:
    """Compact ``order_id`` out of its slot and promote it, as one plan."""
    current = next((s for s in slots if s.order_id == order_id), None)
    if current is None:
        raise InconsistentQueueState(f"order {order_id} holds no queue slot")
    rest = [s for s in slots if s.order_id != order_id]
    changes = compact(rest, current.position)
    changes.update(promote(apply_changes(rest, changes), order_id))
    return changes


def reposition(slots: List[QueueSlot], order_id: str, new_position: int) -> Changes:
    """Move ``order_id`` to ``new_position``, shifting the orders in between.

    This is an operator override: it does not keep Express ahead of Standard.
    """
    current = next((s for s in slots if s.order_id == order_id), None)
    if current is None:
        raise InconsistentQueueState(f"order {order_id} holds no queue slot")
    if not 1 <= new_position <= len(slots):
        raise InvalidPosition(f"position {new_position} is outside 1..{len(slots)}")

    old = current.position
    if new_position == old:
        return {}
    changes: Changes = {}
    for s in slots:
        if s.order_id == order_id:
            continue
        if new_position > old and old < s.position <= new_position:
            changes[s.order_id] = s.position - 1
        elif new_position < old and new_position <= s.position < old:
            changes[s.order_id] = s.position + 1
    changes[order_id] = new_position
    return changes
