from datetime import UTC, datetime
from itertools import count
from types import SimpleNamespace

import pytest

from smartqueue.config import Settings
from smartqueue.core.clock import ManualClock
from smartqueue.models.domain import MessageKind
from smartqueue.repositories.memory_repository import InMemoryQueueRepository
from smartqueue.services.container import build_services
from smartqueue.services.message_sinks import MessageSink

T0 = datetime(2025, 3, 14, 9, 0, tzinfo=UTC)


class RecordingSink(MessageSink):
    def __init__(self):
        self.messages: list[tuple[str, MessageKind, dict]] = []

    async def send(self, recipient, kind, payload):
        self.messages.append((recipient, kind, payload))

    def of_kind(self, kind: MessageKind) -> list[tuple[str, dict]]:
        return [(recipient, payload) for recipient, k, payload in self.messages if k == kind]

    def kinds_for(self, recipient: str) -> list[MessageKind]:
        return [k for r, k, _ in self.messages if r == recipient]

    def clear(self):
        self.messages.clear()


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.lists: dict[str, list[str]] = {}
        self.fail = fail

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        if self.fail:
            return False
        items = self.lists.setdefault(key, [])
        if left:
            items.insert(0, value)
        else:
            items.append(value)
        return True

    async def ping(self) -> bool:
        return not self.fail


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        NOTIFIER_SETTLING_DELAY_MS=0,
        NOTIFIER_SEND_TIMEOUT_S=1.0,
        EMAIL_ENABLED=True,
        STORAGE_BACKEND="memory",
        NOTIFICATION_SINK="log",
    )


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def repository():
    return InMemoryQueueRepository()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def services(test_settings, repository, clock, sink):
    return build_services(test_settings, repository=repository, clock=clock, sink=sink)


@pytest.fixture
def clinic(repository):
    """One cardiology group with two rooms."""
    group = repository.add_service_group("CARD", "Cardiology")
    point = repository.add_service_point(
        "Dr. Rao", group.id, room_label="101", service_duration_minutes=10, daily_capacity=50
    )
    other_point = repository.add_service_point(
        "Dr. Iyer", group.id, room_label="102", service_duration_minutes=15
    )
    return SimpleNamespace(group=group, point=point, other_point=other_point)


@pytest.fixture
def register(services):
    """Register a party; phone and email are derived from the name unless given."""
    phones = count(9000000001)

    async def _register(name: str, **fields):
        fields.setdefault("phone", f"+91{next(phones)}")
        fields.setdefault("email", f"{name.lower().replace(' ', '')}@x")
        party, _ = await services.parties.find_or_register(name=name, **fields)
        return party

    return _register
