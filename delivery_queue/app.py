# delivery_queue/app.py
import uuid
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .config import get_settings
from .db import PgOrderStore, close_pool, ensure_schema
from .errors import (
    ConcurrentModification,
    InconsistentQueueState,
    InvalidPosition,
    InvalidTransition,
    NotFound,
    QueueError,
)
from .events import EventBus
from .logging import configure_logging
from .models import (
    AdminNotesPatch,
    DeliveryType,
    DeliveryTypePatch,
    Order,
    OrderIn,
    OrderOut,
    OrderStatus,
    PositionPatch,
    QueuedOut,
    StatusPatch,
)
from .state_machine import OrderStateMachine

logger = structlog.get_logger(__name__)

app = FastAPI(title="Delivery Queue API", version="0.1.0")

_machine: Optional[OrderStateMachine] = None


def get_machine() -> OrderStateMachine:
    global _machine
    if _machine is None:
        settings = get_settings()
        _machine = OrderStateMachine(
            PgOrderStore(settings=settings),
            bus=EventBus(max_workers=settings.event_workers),
            max_attempts=settings.max_attempts,
        )
    return _machine


@app.on_event("startup")
def startup():
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    # creates the pool eagerly and makes sure the table exists
    ensure_schema()
    get_machine()


@app.on_event("shutdown")
def shutdown():
    if _machine is not None and _machine.bus is not None:
        _machine.bus.shutdown()
    close_pool()


_STATUS_CODES = {
    NotFound: 404,
    InvalidTransition: 409,
    InvalidPosition: 400,
    ConcurrentModification: 503,
    InconsistentQueueState: 500,
}


@app.exception_handler(QueueError)
def queue_error_handler(request: Request, exc: QueueError):
    status_code = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("Order update failed", path=request.url.path, kind=exc.kind, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={"detail": "could not update order", "kind": exc.kind, "error": str(exc)},
    )

# Health & Debug

@app.get("/health/db")
def health_db(machine: OrderStateMachine = Depends(get_machine)):
    try:
        return {"db_ok": machine.store.ping()}
    except Exception as e:
        return JSONResponse(status_code=500, content={"db_ok": False, "error": str(e)})


@app.get("/debug/queue-summary")
def queue_summary(machine: OrderStateMachine = Depends(get_machine)):
    return machine.queue_summary()

# Orders

@app.post("/orders", response_model=OrderOut, status_code=201)
def register_order(body: OrderIn, machine: OrderStateMachine = Depends(get_machine)):
    order = Order(
        order_id=body.order_id or str(uuid.uuid4()),
        status=body.status,
        delivery_type=body.delivery_type,
        notes=body.notes,
        payload=body.payload,
    )
    return machine.register_order(order)


@app.get("/orders", response_model=List[OrderOut])
def list_orders(limit: int = Query(50, ge=1, le=500), offset: int = Query(0, ge=0),
                machine: OrderStateMachine = Depends(get_machine)):
    return machine.list_orders(limit, offset)


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, machine: OrderStateMachine = Depends(get_machine)):
    return machine.get_order(order_id)


@app.patch("/orders/{order_id}/status", response_model=OrderOut)
def change_status(order_id: str, body: StatusPatch, machine: OrderStateMachine = Depends(get_machine)):
    return machine.change_status(order_id, body.status, notes=body.notes,
                                 delivery_proof_url=body.delivery_proof_url)


@app.patch("/orders/{order_id}/delivery-type", response_model=OrderOut)
def change_delivery_type(order_id: str, body: DeliveryTypePatch,
                         machine: OrderStateMachine = Depends(get_machine)):
    return machine.change_delivery_type(order_id, body.delivery_type)


@app.patch("/orders/{order_id}/position", response_model=OrderOut)
def set_queue_position(order_id: str, body: PositionPatch, machine: OrderStateMachine = Depends(get_machine)):
    return machine.set_queue_position(order_id, body.queue_position, actor=body.actor)


@app.patch("/orders/{order_id}/admin-notes", response_model=OrderOut)
def set_admin_notes(order_id: str, body: AdminNotesPatch, machine: OrderStateMachine = Depends(get_machine)):
    return machine.set_admin_notes(order_id, body.admin_notes)

# Queue

@app.post("/queue", response_model=QueuedOut, status_code=201)
def create_queued_order(body: OrderIn, machine: OrderStateMachine = Depends(get_machine)):
    """Queue a new order, or a registered one by `order_id`.

    For a registered order the stored record wins: `delivery_type`, `notes` and
    `payload` in the body are ignored. Use the delivery-type route to change it.
    """
    if body.status != OrderStatus.PAYMENT_VERIFICATION:
        raise HTTPException(400, "only orders awaiting payment verification can be queued")
    order_id = body.order_id or str(uuid.uuid4())
    position, eta = machine.create_queued_order(Order(
        order_id=order_id,
        delivery_type=body.delivery_type,
        notes=body.notes,
        payload=body.payload,
    ))
    return QueuedOut(order_id=order_id, queue_position=position, estimated_delivery_time=eta)


@app.get("/queue", response_model=List[OrderOut])
def get_active_queue(delivery_type: Optional[DeliveryType] = Query(None),
                     status: Optional[List[OrderStatus]] = Query(None),
                     machine: OrderStateMachine = Depends(get_machine)):
    """Orders holding a queue slot, by position.

    Delayed orders keep their slot and are included. Pass `status` (repeatable)
    to narrow the list, e.g. `?status=queued&status=in_progress`.
    """
    return machine.get_active_queue(delivery_type, status)
