import pytest
from helpers import FrozenClock

from trending.storage import InMemoryStorage


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def storage():
    return InMemoryStorage()
