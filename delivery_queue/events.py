# delivery_queue/events.py
"""
Status-change notifications.

Listeners (email sender, UI subscriptions) run on a small thread pool so a slow
or failing listener never holds up a queue mutation. A listener exception is
logged and dropped. With more than one worker, listeners may see events out of
order; ``occurred_at`` orders them.
"""
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Set

import structlog

from .models import OrderStatus

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StatusChanged:
    order_id: str
    old_status: OrderStatus
    new_status: OrderStatus
    occurred_at: datetime


Listener = Callable[[StatusChanged], None]


class EventBus:
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="order-events")
        self._listeners: List[Listener] = []
        self._pending: Set = set()
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: StatusChanged) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                future = self._executor.submit(self._deliver, listener, event)
            except RuntimeError:
                # executor already shut down; the change itself is committed
                logger.warning("Order event dropped, bus is shut down",
                               order_id=event.order_id, new_status=event.new_status.value)
                return
            with self._lock:
                self._pending.add(future)
            future.add_done_callback(self._forget)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight deliveries. Returns False if some were still running at ``timeout``."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def _forget(self, future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _deliver(listener: Listener, event: StatusChanged) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception(
                "Order event listener failed",
                order_id=event.order_id,
                new_status=event.new_status.value,
            )
