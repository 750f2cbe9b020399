from datetime import datetime, timedelta, timezone

import pytest

from delivery_queue.estimator import Stage, estimate_delivery
from delivery_queue.models import DeliveryType

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "delivery_type, stage, expected",
    [
        (DeliveryType.EXPRESS, Stage.INITIAL, timedelta(minutes=60)),
        (DeliveryType.EXPRESS, Stage.IN_PROGRESS, timedelta(minutes=15)),
        (DeliveryType.STANDARD, Stage.INITIAL, timedelta(days=3)),
        (DeliveryType.STANDARD, Stage.IN_PROGRESS, timedelta(hours=24)),
    ],
)
def test_delivery_windows(delivery_type, stage, expected):
    assert estimate_delivery(delivery_type, stage, NOW) == NOW + expected


def test_accepts_raw_values():
    assert estimate_delivery("Express", "in_progress", NOW) == NOW + timedelta(minutes=15)


def test_in_progress_is_tighter_than_initial():
    for delivery_type in DeliveryType:
        assert estimate_delivery(delivery_type, Stage.IN_PROGRESS, NOW) < estimate_delivery(
            delivery_type, Stage.INITIAL, NOW
        )


def test_unknown_stage_rejected():
    with pytest.raises(ValueError):
        estimate_delivery(DeliveryType.STANDARD, "shipped", NOW)
