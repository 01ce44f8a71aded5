import pytest

from webhook_service.repositories import memory_stores
from webhook_service.repositories.memory import InMemoryStorage

from tests.utils import FakeClock


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def stores(storage):
    return memory_stores(storage)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
