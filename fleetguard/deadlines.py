"""
Time-based checks: missed arrivals/departures at route checkpoints and
arrivals or delays at route destinations. Every violation is logged once
per target per local calendar day.
"""
import datetime as dt
from typing import Callable, List

import pytz
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetguard import crud
from fleetguard.config import TIMEZONE
from fleetguard.geozones import GeometryError, contains, distance_m, is_moving
from fleetguard.logging_config import get_logger
from fleetguard.schedule import deadline_for, is_alarm_active_now, route_runs_today
from fleetguard.variables import DEFAULT_DESTINATION_RADIUS_M
from fleetguard.worker import AlarmQueue, AlarmTask

logger = get_logger("deadlines", "deadlines.log")

NOT_ARRIVED = "not_arrived"
NOT_DEPARTED = "not_departed"
ROUTE_ARRIVAL = "route_arrival"


class DeadlineChecker:
    def __init__(self, sessions: async_sessionmaker[AsyncSession], queue: AlarmQueue, *,
                 timezone: str = TIMEZONE, clock: Callable[[], dt.datetime] = crud.utcnow):
        self.sessions = sessions
        self.queue = queue
        self.tz = pytz.timezone(timezone)
        self.clock = clock

    @staticmethod
    def _link_alarm(ev, alarms, local_now: dt.datetime) -> None:
        active = [a for a in alarms if is_alarm_active_now(a, local_now)]
        if active:
            ev.alarm_id = active[0].id

    def _tasks(self, alarms, local_now: dt.datetime, **fields) -> List[AlarmTask]:
        # schedule violations notify even without a configured alarm
        if not alarms:
            return [AlarmTask.for_alarm(None, **fields)]
        return [
            AlarmTask.for_alarm(a, **fields)
            for a in alarms
            if is_alarm_active_now(a, local_now)
        ]

    async def check(self) -> List[AlarmTask]:
        now = self.clock()
        local_now = now.astimezone(self.tz)
        today = local_now.date()

        tasks: List[AlarmTask] = []
        async with self.sessions() as db:
            tasks += await self._check_checkpoints(db, now, local_now, today)
            tasks += await self._check_destinations(db, now, local_now, today)

        for t in tasks:
            self.queue.enqueue(t)
        if tasks:
            logger.info(f"[deadlines] {len(tasks)} alarm task(s) queued")
        return tasks

    async def _vehicle_and_position(self, db, plate):
        vehicle = await crud.vehicle_by_plate(db, plate)
        if vehicle is None:
            return None, None
        return vehicle, await crud.latest_position(db, vehicle.id)

    # -----------------------------------------------------------------
    # Checkpoints
    # -----------------------------------------------------------------
    async def _check_checkpoints(self, db, now, local_now, today) -> List[AlarmTask]:
        tasks = []
        for cp, route, geofence in await crud.list_scheduled_checkpoints(db):
            if not cp.notify_delay or not route_runs_today(route, today):
                continue
            if cp.expected_arrival is None and cp.expected_departure is None:
                continue
            if geofence is None:
                logger.warning(f"[deadlines] checkpoint {cp.id} '{cp.name}' has no geofence, skipped")
                continue

            vehicle, pos = await self._vehicle_and_position(db, route.vehicle_plate)
            if pos is None:
                continue

            for expected, event_type, suffix in (
                (cp.expected_arrival, NOT_ARRIVED, "arrival"),
                (cp.expected_departure, NOT_DEPARTED, "departure"),
            ):
                if expected is None:
                    continue
                if now <= deadline_for(self.tz, today, expected, cp.tolerance_minutes):
                    continue

                target_key = f"checkpoint:{cp.id}:{suffix}"
                if await crud.event_exists_today(db, target_key, event_type, today):
                    continue

                try:
                    inside = contains((pos.lat, pos.lng), geofence)
                except GeometryError as e:
                    logger.warning(f"[deadlines] geofence {geofence.id} of checkpoint {cp.id} unusable: {e}")
                    break

                violated = not inside if event_type == NOT_ARRIVED else inside
                if not violated:
                    continue

                verb = "arrival at" if event_type == NOT_ARRIVED else "departure from"
                detail = f"Missed {verb} {cp.name} (expected {expected.strftime('%H:%M')})"
                ev = await crud.log_event(
                    db, event_type, day=today, ts=now,
                    vehicle_id=vehicle.id, geofence_id=geofence.id, target_key=target_key,
                    message=detail, lat=pos.lat, lng=pos.lng,
                )
                alarms = await crud.list_alarms_for(
                    db, (event_type,), vehicle_id=vehicle.id, geofence_id=geofence.id,
                    route_id=route.id, checkpoint_id=cp.id,
                )
                self._link_alarm(ev, alarms, local_now)
                await db.commit()
                logger.info(f"[deadlines] {event_type}: {vehicle.plate} checkpoint '{cp.name}'")

                tasks += self._tasks(
                    alarms, local_now,
                    kind="deadline", event_type=event_type,
                    vehicle_id=vehicle.id, vehicle_plate=vehicle.plate, vehicle_name=vehicle.name,
                    zone_id=geofence.id, zone_name=geofence.name or cp.name, route_name=route.name,
                    event_id=ev.id, lat=pos.lat, lng=pos.lng, moving=is_moving(pos.speed), detail=detail,
                )
        return tasks

    # -----------------------------------------------------------------
    # Destinations
    # -----------------------------------------------------------------
    async def _check_destinations(self, db, now, local_now, today) -> List[AlarmTask]:
        tasks = []
        for dest, route in await crud.list_open_destinations(db):
            if not route_runs_today(route, today):
                continue
            arrived_at = crud.to_dt(dest.arrived_at)
            if arrived_at and arrived_at.astimezone(self.tz).date() == today:
                continue

            vehicle, pos = await self._vehicle_and_position(db, route.vehicle_plate)
            if pos is None:
                continue

            target_key = f"destination:{dest.id}"
            common = dict(
                vehicle_id=vehicle.id, vehicle_plate=vehicle.plate, vehicle_name=vehicle.name,
                zone_name=dest.name, route_name=route.name, lat=pos.lat, lng=pos.lng,
                moving=is_moving(pos.speed),
            )
            distance = distance_m(pos.lat, pos.lng, dest.lat, dest.lng)

            if distance <= (dest.radius_m or DEFAULT_DESTINATION_RADIUS_M):
                dest.arrived_at = now
                ev = await crud.log_event(
                    db, ROUTE_ARRIVAL, day=today, ts=now, vehicle_id=vehicle.id,
                    target_key=target_key, message=f"{vehicle.plate} reached '{dest.name}' - route {route.name}",
                    lat=pos.lat, lng=pos.lng,
                )
                alarms = await crud.list_alarms_for(db, (ROUTE_ARRIVAL,), vehicle_id=vehicle.id, route_id=route.id)
                self._link_alarm(ev, alarms, local_now)
                await db.commit()
                logger.info(f"[deadlines] {vehicle.plate} reached '{dest.name}' ({distance:.0f}m)")

                if dest.notify_arrival:
                    tasks += self._tasks(
                        alarms, local_now, kind="route_arrival", event_type=ROUTE_ARRIVAL,
                        event_id=ev.id, detail=dest.address, **common,
                    )
                continue

            if not dest.alarm_active or dest.expected_arrival is None:
                continue
            if now <= deadline_for(self.tz, today, dest.expected_arrival, dest.tolerance_minutes):
                continue
            if await crud.event_exists_today(db, target_key, NOT_ARRIVED, today):
                continue

            detail = f"Missed arrival at {dest.name} (expected {dest.expected_arrival.strftime('%H:%M')})"
            ev = await crud.log_event(
                db, NOT_ARRIVED, day=today, ts=now, vehicle_id=vehicle.id,
                target_key=target_key, message=f"{detail} - route {route.name}", lat=pos.lat, lng=pos.lng,
            )
            alarms = await crud.list_alarms_for(db, (NOT_ARRIVED,), vehicle_id=vehicle.id, route_id=route.id)
            self._link_alarm(ev, alarms, local_now)
            await db.commit()
            logger.info(f"[deadlines] not_arrived: {vehicle.plate} destination '{dest.name}'")

            tasks += self._tasks(
                alarms, local_now, kind="deadline", event_type=NOT_ARRIVED,
                event_id=ev.id, detail=detail, **common,
            )
        return tasks
