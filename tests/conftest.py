import pytest

from mailroom_mail.message_store import ObjectMessageStore
from tests.fakes import FakeAccountDirectory, FakeObjectStore, InMemorySyncStateStore


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def message_store(object_store: FakeObjectStore) -> ObjectMessageStore:
    return ObjectMessageStore(object_store)  # type: ignore[arg-type]


@pytest.fixture
def state_store() -> InMemorySyncStateStore:
    return InMemorySyncStateStore()


@pytest.fixture
def directory() -> FakeAccountDirectory:
    return FakeAccountDirectory()
