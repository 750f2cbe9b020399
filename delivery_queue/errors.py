# delivery_queue/errors.py
"""Error kinds raised by the queue engine.

Only ``ConcurrentModification`` is retried by the state machine; everything
else propagates to the caller unchanged.
"""


class QueueError(Exception):
    kind = "queue_error"


class NotFound(QueueError):
    kind = "not_found"

    def __init__(self, order_id):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class InvalidTransition(QueueError):
    kind = "invalid_transition"

    def __init__(self, order_id, current, requested):
        super().__init__(f"order {order_id}: cannot go from {current} to {requested}")
        self.order_id = order_id
        self.current = current
        self.requested = requested


class InvalidPosition(QueueError):
    kind = "invalid_position"


class ConcurrentModification(QueueError):
    kind = "concurrent_modification"


class InconsistentQueueState(QueueError):
    kind = "inconsistent_queue_state"
