import datetime as dt
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from fleetguard.escalation import EscalationEngine
from fleetguard.models import AlarmNotification, Driver, DriverAssignment
from fleetguard.variables import SENT
from fleetguard.worker import AlarmQueue, AlarmTask, AlarmWorker

OPS = "3200000000"


def task(plate="AB123CD", **kw):
    kw.setdefault("kind", "geofence_transition")
    kw.setdefault("event_type", "enter")
    return AlarmTask(vehicle_plate=plate, vehicle_name="Truck 1", zone_name="Warehouse", **kw)


@pytest.fixture
async def worker(sessions, notifier, clock):
    engine = EscalationEngine(sessions, notifier, response_timeout=dt.timedelta(minutes=5))
    w = AlarmWorker(AlarmQueue(), sessions, engine, broadcaster=notifier,
                    ops_recipient=OPS, timezone="Europe/Rome", clock=clock)
    yield w
    await engine.shutdown()


async def assign_driver(sessions, plate="AB123CD", **kw):
    async with sessions() as db:
        d = Driver(first_name="Mario", last_name="Rossi", phone="3331234567", **kw)
        db.add(d)
        await db.flush()
        db.add(DriverAssignment(driver_id=d.id, vehicle_plate=plate, start_date=dt.date(2026, 1, 1)))
        await db.commit()
        return d.id


def test_for_alarm_copies_channels():
    alarm = SimpleNamespace(id=7, notify_driver=False, notify_broadcast=True)
    t = AlarmTask.for_alarm(alarm, kind="deadline", event_type="not_arrived")
    assert (t.alarm_id, t.notify_driver, t.notify_broadcast) == (7, False, True)

    t = AlarmTask.for_alarm(None, kind="deadline", event_type="not_arrived")
    assert (t.alarm_id, t.notify_driver, t.notify_broadcast) == (None, True, True)


@pytest.mark.asyncio
async def test_queue_is_fifo():
    queue = AlarmQueue()
    for plate in ("A", "B", "C"):
        queue.enqueue(task(plate))

    seen = []

    async def handler(t):
        seen.append(t.vehicle_plate)

    assert await queue.drain(handler) == 3
    assert seen == ["A", "B", "C"]
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_failing_task_does_not_block_the_rest():
    queue = AlarmQueue()
    for plate in ("A", "B", "C"):
        queue.enqueue(task(plate))

    seen = []

    async def handler(t):
        if t.vehicle_plate == "B":
            raise RuntimeError("gateway down")
        seen.append(t.vehicle_plate)

    assert await queue.drain(handler) == 3
    assert seen == ["A", "C"]


def test_bounded_queue_drops_oldest():
    queue = AlarmQueue(maxsize=2)
    for plate in ("A", "B", "C"):
        queue.enqueue(task(plate))

    assert len(queue) == 2
    assert queue.dropped == 1
    assert [t.vehicle_plate for t in queue._tasks] == ["B", "C"]


@pytest.mark.asyncio
async def test_drain_is_not_reentrant():
    queue = AlarmQueue()
    queue.enqueue(task("A"))
    nested = []

    async def handler(t):
        assert queue.draining
        nested.append(await queue.drain(handler))

    assert await queue.drain(handler) == 1
    assert nested == [0]
    assert not queue.draining


@pytest.mark.asyncio
async def test_tasks_queued_during_drain_wait_for_next_pass():
    queue = AlarmQueue()
    queue.enqueue(task("A"))
    seen = []

    async def handler(t):
        seen.append(t.vehicle_plate)
        queue.enqueue(task(t.vehicle_plate + "+"))

    assert await queue.drain(handler) == 1
    assert seen == ["A"]
    assert len(queue) == 1

    assert await queue.drain(handler) == 1
    assert seen == ["A", "A+"]
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_task_broadcasts_and_notifies_driver(worker, notifier, sessions):
    driver_id = await assign_driver(sessions)
    worker.queue.enqueue(task(event_id=None))

    assert await worker.drain_once() == 1

    broadcast = notifier.messages_to(OPS)
    assert len(broadcast) == 1
    assert "ZONE ENTRY" in broadcast[0]
    assert "Truck 1 (AB123CD)" in broadcast[0]
    assert "Zone: *Warehouse*" in broadcast[0]
    assert "19/10/2026 11:00" in broadcast[0]

    async with sessions() as db:
        [n] = (await db.execute(select(AlarmNotification))).scalars().all()
    assert n.state == SENT
    assert n.driver_id == driver_id
    assert n.recipient == "3331234567"
    assert "Warehouse" in n.message


@pytest.mark.asyncio
async def test_chat_phone_preferred(worker, notifier, sessions):
    await assign_driver(sessions, chat_phone="3339999999")
    worker.queue.enqueue(task(notify_broadcast=False))

    await worker.drain_once()
    assert notifier.messages_to(OPS) == []
    assert len(notifier.messages_to("3339999999")) == 1


@pytest.mark.asyncio
async def test_no_driver_still_broadcasts(worker, notifier, sessions):
    worker.queue.enqueue(task())

    await worker.drain_once()
    assert len(notifier.messages_to(OPS)) == 1
    async with sessions() as db:
        assert (await db.execute(select(AlarmNotification))).scalars().all() == []


@pytest.mark.asyncio
async def test_driver_channel_disabled(worker, notifier, sessions):
    await assign_driver(sessions)
    worker.queue.enqueue(task(notify_driver=False))

    await worker.drain_once()
    assert notifier.messages_to("3331234567") == []


@pytest.mark.asyncio
async def test_expired_assignment_is_ignored(worker, notifier, sessions):
    async with sessions() as db:
        d = Driver(first_name="Old", last_name="Driver", phone="3330000000")
        db.add(d)
        await db.flush()
        db.add(DriverAssignment(driver_id=d.id, vehicle_plate="AB123CD",
                                start_date=dt.date(2025, 1, 1), end_date=dt.date(2025, 12, 31)))
        await db.commit()

    worker.queue.enqueue(task())
    await worker.drain_once()
    assert notifier.messages_to("3330000000") == []
