import sys
from pathlib import Path

import pytest

# make tests/helpers.py importable from nested test directories
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from helpers import FakeClock, MemoryOrderStore  # noqa: E402

from delivery_queue.events import EventBus  # noqa: E402
from delivery_queue.state_machine import OrderStateMachine  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryOrderStore()


@pytest.fixture
def bus():
    bus = EventBus(max_workers=1)  # single worker keeps delivery order
    yield bus
    bus.shutdown()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def machine(store, bus, clock):
    return OrderStateMachine(store, bus=bus, clock=clock)
