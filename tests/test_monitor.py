import asyncio
import datetime as dt

import httpx
import pytest
from sqlalchemy import select
from tenacity import wait_none

from conftest import FakeTelemetry, make_fix, wait_until
from fleetguard.escalation import EscalationEngine
from fleetguard.models import (Alarm, AlarmNotification, Driver, DriverAssignment, Event, Geofence,
                               Position, Vehicle)
from fleetguard.monitor import MonitoringService
from fleetguard.telemetry import HttpTelemetrySource, TelemetryConfigError, TransientTelemetryError
from fleetguard.variables import SENT
from fleetguard.worker import AlarmQueue, AlarmWorker

WAREHOUSE = [{"lat": 45.0, "lng": 9.0}, {"lat": 45.0, "lng": 9.01},
             {"lat": 45.01, "lng": 9.01}, {"lat": 45.01, "lng": 9.0}]
INSIDE = dict(lat=45.005, lng=9.005)
OUTSIDE = dict(lat=45.2, lng=9.2)


@pytest.fixture
async def stack(sessions, notifier, clock):
    telemetry = FakeTelemetry()
    engine = EscalationEngine(sessions, notifier, clock=clock)
    queue = AlarmQueue()
    worker = AlarmWorker(queue, sessions, engine, broadcaster=notifier, ops_recipient=None,
                         timezone="UTC", clock=clock)
    monitor = MonitoringService(sessions, telemetry, queue, worker, engine,
                                fetch_attempts=3, max_consecutive_errors=2, retry_wait=wait_none(),
                                timezone="UTC", clock=clock)
    yield monitor, telemetry
    await engine.shutdown()


async def seed_warehouse(sessions, **alarm_kw):
    async with sessions() as db:
        g = Geofence(name="Warehouse", kind="polygon", coordinates=WAREHOUSE)
        db.add(g)
        await db.flush()
        db.add(Alarm(name="Warehouse watch", alarm_type="enter", geofence_id=g.id, **alarm_kw))
        d = Driver(first_name="Mario", last_name="Rossi", phone="3331234567")
        db.add(d)
        await db.flush()
        db.add(DriverAssignment(driver_id=d.id, vehicle_plate="AB123CD"))
        await db.commit()
        return g.id


async def all_rows(sessions, model):
    async with sessions() as db:
        return list((await db.execute(select(model))).scalars().all())


@pytest.mark.asyncio
async def test_entering_warehouse_notifies_driver(stack, sessions, notifier, clock):
    monitor, telemetry = stack
    await seed_warehouse(sessions)

    telemetry.positions = [make_fix(**OUTSIDE, speed=40)]
    assert await monitor.check_all_vehicles()
    assert len(monitor.queue) == 0

    clock.advance(minutes=1)
    telemetry.positions = [make_fix(**INSIDE, speed=12)]
    assert await monitor.check_all_vehicles()
    assert len(monitor.queue) == 1

    assert await monitor.worker.drain_once() == 1

    [n] = await all_rows(sessions, AlarmNotification)
    assert n.state == SENT
    [msg] = notifier.messages_to("3331234567")
    assert "AB123CD" in msg
    assert "Warehouse" in msg

    [ev] = await all_rows(sessions, Event)
    assert ev.event_type == "enter"
    assert n.event_id == ev.id
    assert ev.alarm_id is not None
    assert ev.alarm_id == n.alarm_id


@pytest.mark.asyncio
async def test_staying_inside_does_not_repeat(stack, sessions, clock):
    monitor, telemetry = stack
    await seed_warehouse(sessions)

    telemetry.positions = [make_fix(**INSIDE)]
    for _ in range(3):
        await monitor.check_all_vehicles()
        clock.advance(minutes=1)

    assert len(monitor.queue) == 1
    assert len(await all_rows(sessions, Event)) == 1


@pytest.mark.asyncio
async def test_exit_without_matching_alarm_is_logged_only(stack, sessions, clock):
    monitor, telemetry = stack
    await seed_warehouse(sessions)

    telemetry.positions = [make_fix(**INSIDE)]
    await monitor.check_all_vehicles()
    telemetry.positions = [make_fix(**OUTSIDE)]
    clock.advance(minutes=1)
    await monitor.check_all_vehicles()

    assert [e.event_type for e in await all_rows(sessions, Event)] == ["enter", "exit"]
    assert len(monitor.queue) == 1


@pytest.mark.asyncio
async def test_alarm_outside_its_window_is_silent(stack, sessions):
    monitor, telemetry = stack
    await seed_warehouse(sessions, start_time=dt.time(20, 0), end_time=dt.time(23, 0))

    telemetry.positions = [make_fix(**INSIDE)]
    await monitor.check_all_vehicles()
    assert len(monitor.queue) == 0
    assert len(await all_rows(sessions, Event)) == 1


@pytest.mark.asyncio
async def test_vehicle_metadata_refreshed(stack, sessions):
    monitor, telemetry = stack

    telemetry.positions = [make_fix(**INSIDE, name="Truck 1")]
    await monitor.check_all_vehicles()
    telemetry.positions = [make_fix(**OUTSIDE, name="Big Truck", address="Via Roma 1")]
    await monitor.check_all_vehicles()

    [v] = await all_rows(sessions, Vehicle)
    assert v.name == "Big Truck"
    [p] = await all_rows(sessions, Position)
    assert (p.lat, p.lng, p.address) == (45.2, 9.2, "Via Roma 1")


@pytest.mark.asyncio
async def test_missing_coordinates_skip_geofences(stack, sessions):
    monitor, telemetry = stack
    await seed_warehouse(sessions)

    telemetry.positions = [make_fix(lat=None, lng=None)]
    assert await monitor.check_all_vehicles()

    assert len(await all_rows(sessions, Vehicle)) == 1
    assert await all_rows(sessions, Position) == []
    assert await all_rows(sessions, Event) == []


@pytest.mark.asyncio
async def test_bad_geofence_does_not_stop_the_tick(stack, sessions):
    monitor, telemetry = stack
    async with sessions() as db:
        db.add(Geofence(name="Broken", kind="circle", coordinates=[], radius_m=100))
        await db.commit()
    await seed_warehouse(sessions)

    telemetry.positions = [make_fix(**INSIDE)]
    assert await monitor.check_all_vehicles()
    assert len(monitor.queue) == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried(stack):
    monitor, telemetry = stack
    telemetry.errors = [TransientTelemetryError("timeout"), TransientTelemetryError("502")]
    telemetry.positions = [make_fix(**OUTSIDE)]

    assert await monitor.check_all_vehicles()
    assert telemetry.calls == 3
    assert monitor.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failures_counted_until_unhealthy(stack):
    monitor, telemetry = stack
    telemetry.errors = [TransientTelemetryError("down")] * 3

    assert not await monitor.check_all_vehicles()
    assert telemetry.calls == 3
    assert monitor.consecutive_failures == 1
    assert monitor.healthy
    assert monitor.status()["last_api_error"] == "down"

    telemetry.errors = [TelemetryConfigError("bad secret")]
    assert not await monitor.check_all_vehicles()
    assert telemetry.calls == 4
    assert monitor.consecutive_failures == 2
    assert not monitor.healthy

    assert await monitor.check_all_vehicles()
    assert monitor.consecutive_failures == 0
    assert monitor.status()["healthy"] is True


@pytest.mark.asyncio
async def test_unexpected_body_counts_as_failure(stack):
    monitor, _ = stack
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": "maintenance"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://gps.test")
    monitor.telemetry = HttpTelemetrySource("http://gps.test", "s3cret", client=client)

    assert not await monitor.check_all_vehicles()
    assert len(calls) == 3
    assert monitor.consecutive_failures == 1
    assert "maintenance" in monitor.status()["last_api_error"]

    assert not await monitor.check_all_vehicles()
    assert monitor.consecutive_failures == 2
    assert not monitor.healthy


@pytest.mark.asyncio
async def test_unexpected_exception_counts_as_failure(stack):
    monitor, telemetry = stack
    telemetry.errors = [AttributeError("'str' object has no attribute 'get'")]

    assert not await monitor.check_all_vehicles()
    assert telemetry.calls == 1
    assert monitor.consecutive_failures == 1
    assert monitor.status()["last_api_error"].startswith("AttributeError")


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(stack):
    monitor, telemetry = stack
    gate = asyncio.Event()

    async def slow_fetch():
        telemetry.calls += 1
        await gate.wait()
        return []

    telemetry.fetch_all_positions = slow_fetch
    first = asyncio.create_task(monitor.check_all_vehicles())
    assert await wait_until(lambda: telemetry.calls == 1)

    assert await monitor.check_all_vehicles() is False
    gate.set()
    assert await first is True
    assert telemetry.calls == 1


@pytest.mark.asyncio
async def test_start_and_stop(stack):
    monitor, telemetry = stack
    monitor.interval_s = 10

    monitor.start()
    assert monitor.status()["running"] is True
    assert await wait_until(lambda: telemetry.calls >= 1)

    await monitor.stop()
    assert monitor.status()["running"] is False
