import asyncio
import datetime as dt
import os
import tempfile

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="fleetguard-logs-"))

import pytest  # noqa: E402

from fleetguard.database import init_models, make_engine, make_sessionmaker  # noqa: E402
from fleetguard.notifier import DeliveryResult, ReplyDispatcher  # noqa: E402
from fleetguard.telemetry import PositionFix  # noqa: E402

UTC = dt.timezone.utc


class FrozenClock:
    def __init__(self, start: dt.datetime):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, value: dt.datetime) -> None:
        self.now = value

    def advance(self, **kwargs) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


class FakeNotifier(ReplyDispatcher):
    def __init__(self):
        super().__init__()
        self.sent = []
        self.failing = set()

    async def send(self, recipient, message):
        if recipient in self.failing:
            return DeliveryResult(delivered=False, error="unreachable")
        self.sent.append((recipient, message))
        return DeliveryResult(delivered=True, message_id=f"msg-{len(self.sent)}")

    def messages_to(self, recipient):
        return [m for r, m in self.sent if r == recipient]


class FakeTelemetry:
    """Returns ``positions``; pops one exception per call from ``errors`` first."""

    def __init__(self, positions=None):
        self.positions = positions or []
        self.errors = []
        self.calls = 0

    async def fetch_all_positions(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return list(self.positions)


def make_fix(service_id=1, plate="AB123CD", lat=45.0, lng=9.0, **kw) -> PositionFix:
    return PositionFix(service_id=service_id, plate=plate, name=kw.pop("name", "Truck 1"), lat=lat, lng=lng, **kw)


async def wait_until(predicate, timeout=3.0, step=0.01):
    """Poll an async or sync predicate until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return True
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(step)


@pytest.fixture
async def sessions(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetguard.db'}")
    await init_models(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FrozenClock(dt.datetime(2026, 10, 19, 9, 0, tzinfo=UTC))
