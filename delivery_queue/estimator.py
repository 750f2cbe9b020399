# delivery_queue/estimator.py
from datetime import datetime, timedelta
from enum import Enum

from .models import DeliveryType


class Stage(str, Enum):
    INITIAL = "initial"
    IN_PROGRESS = "in_progress"


# Fixed offsets, independent of how many orders are ahead in the queue.
DELIVERY_WINDOWS = {
    (DeliveryType.EXPRESS, Stage.INITIAL): timedelta(minutes=60),
    (DeliveryType.EXPRESS, Stage.IN_PROGRESS): timedelta(minutes=15),
    (DeliveryType.STANDARD, Stage.INITIAL): timedelta(days=3),
    (DeliveryType.STANDARD, Stage.IN_PROGRESS): timedelta(hours=24),
}


def estimate_delivery(delivery_type: DeliveryType, stage: Stage, now: datetime) -> datetime:
    """Return the expected delivery timestamp for an order of ``delivery_type`` at ``stage``."""
    return now + DELIVERY_WINDOWS[(DeliveryType(delivery_type), Stage(stage))]
