import datetime as dt
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from fleetguard.models import (
    Alarm, AlarmNotification, Driver, DriverAssignment, Event, Geofence, GeofenceStatus,
    Position, Responsable, Route, RouteCheckpoint, RouteDestination, Vehicle,
)
from fleetguard.variables import AWAITING_RESPONSE, PHONE_MATCH_DIGITS


UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, str):
        try:
            dt_obj = dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)

    return None


def normalize_plate(plate: Optional[str]) -> str:
    return (plate or "").upper().rstrip("*").strip()


def recipient_key(phone: Optional[str]) -> str:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return digits[-PHONE_MATCH_DIGITS:]


# ---------------------------------------------------------------------
# Vehicles & positions
# ---------------------------------------------------------------------
async def upsert_vehicle(db: AsyncSession, fix, ts: dt.datetime) -> Vehicle:
    """Create the vehicle on first sighting, refresh its metadata afterwards."""
    row = (await db.execute(
        select(Vehicle).where(Vehicle.service_id == fix.service_id)
    )).scalar_one_or_none()

    meta = {
        "plate": fix.plate,
        "name": fix.name,
        "fleet_id": fix.fleet_id,
        "fleet_name": fix.fleet_name,
        "brand": fix.brand,
        "model": fix.model,
    }
    if row is None:
        row = Vehicle(service_id=fix.service_id, created_at=ts, updated_at=ts, **meta)
        db.add(row)
        await db.flush()
        return row

    changed = False
    for field, value in meta.items():
        if value is not None and getattr(row, field) != value:
            setattr(row, field, value)
            changed = True
    if changed:
        row.updated_at = ts
    return row


async def upsert_position(db: AsyncSession, vehicle_id: int, fix, ts: dt.datetime) -> Position:
    row = (await db.execute(
        select(Position).where(Position.vehicle_id == vehicle_id)
    )).scalar_one_or_none()

    values = dict(
        lat=fix.lat,
        lng=fix.lng,
        speed=fix.speed,
        heading=fix.heading,
        altitude=fix.altitude,
        fix_time=fix.fix_time,
        address=fix.address,
        odometer_km=fix.odometer_km,
        sensors=fix.sensors,
        last_sync=ts,
    )
    if row:
        for field, value in values.items():
            setattr(row, field, value)
    else:
        row = Position(vehicle_id=vehicle_id, **values)
        db.add(row)
    return row


async def latest_position(db: AsyncSession, vehicle_id: int) -> Optional[Position]:
    return (await db.execute(
        select(Position).where(Position.vehicle_id == vehicle_id)
    )).scalar_one_or_none()


async def vehicle_by_plate(db: AsyncSession, plate: str) -> Optional[Vehicle]:
    q = await db.execute(
        select(Vehicle)
        .where(func.upper(func.rtrim(Vehicle.plate, "*")) == normalize_plate(plate))
        .order_by(Vehicle.id)
        .limit(1)
    )
    return q.scalar_one_or_none()


# ---------------------------------------------------------------------
# Geofences
# ---------------------------------------------------------------------
async def list_active_geofences(db: AsyncSession) -> List[Geofence]:
    q = await db.execute(select(Geofence).where(Geofence.active.is_(True)).order_by(Geofence.id))
    return list(q.scalars().all())


async def get_geofence_status(db: AsyncSession, vehicle_id: int, geofence_id: int) -> Optional[GeofenceStatus]:
    return await db.get(GeofenceStatus, (vehicle_id, geofence_id))


async def set_geofence_status(db: AsyncSession, vehicle_id: int, geofence_id: int,
                              inside: bool, ts: dt.datetime) -> GeofenceStatus:
    row = await db.get(GeofenceStatus, (vehicle_id, geofence_id))
    if row:
        row.inside = inside
        row.last_change = ts
    else:
        row = GeofenceStatus(vehicle_id=vehicle_id, geofence_id=geofence_id, inside=inside, last_change=ts)
        db.add(row)
    return row


# ---------------------------------------------------------------------
# Alarms & events
# ---------------------------------------------------------------------
async def list_alarms_for(db: AsyncSession, alarm_types: Sequence[str], *,
                          vehicle_id: Optional[int] = None, geofence_id: Optional[int] = None,
                          route_id: Optional[int] = None, checkpoint_id: Optional[int] = None) -> List[Alarm]:
    """
    Active alarms of the given types whose bindings match. A NULL binding on
    the alarm is a wildcard.
    """
    conds = [Alarm.active.is_(True), Alarm.alarm_type.in_(list(alarm_types))]
    for col, value in (
        (Alarm.vehicle_id, vehicle_id),
        (Alarm.geofence_id, geofence_id),
        (Alarm.route_id, route_id),
        (Alarm.checkpoint_id, checkpoint_id),
    ):
        if value is not None:
            conds.append(or_(col.is_(None), col == value))

    q = await db.execute(select(Alarm).where(and_(*conds)).order_by(Alarm.priority, Alarm.id))
    return list(q.scalars().all())


async def event_exists_today(db: AsyncSession, target_key: str, event_type: str, day: dt.date) -> bool:
    q = await db.execute(
        select(Event.id)
        .where(
            Event.target_key == target_key,
            Event.event_type == event_type,
            Event.event_date == day,
        )
        .limit(1)
    )
    return q.first() is not None


async def log_event(db: AsyncSession, event_type: str, *, day: dt.date, ts: dt.datetime,
                    vehicle_id=None, geofence_id=None, target_key=None,
                    message=None, lat=None, lng=None) -> Event:
    ev = Event(
        event_type=event_type,
        vehicle_id=vehicle_id,
        geofence_id=geofence_id,
        target_key=target_key,
        message=message,
        lat=lat,
        lng=lng,
        event_date=day,
        created_at=ts,
    )
    db.add(ev)
    await db.flush()
    return ev


# ---------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------
async def list_scheduled_checkpoints(db: AsyncSession) -> List[Tuple[RouteCheckpoint, Route, Optional[Geofence]]]:
    q = await db.execute(
        select(RouteCheckpoint, Route, Geofence)
        .join(Route, RouteCheckpoint.route_id == Route.id)
        .outerjoin(Geofence, RouteCheckpoint.geofence_id == Geofence.id)
        .where(Route.active.is_(True), Route.vehicle_plate.is_not(None))
        .order_by(Route.id, RouteCheckpoint.position)
    )
    return [tuple(r) for r in q.all()]


async def list_open_destinations(db: AsyncSession) -> List[Tuple[RouteDestination, Route]]:
    q = await db.execute(
        select(RouteDestination, Route)
        .join(Route, RouteDestination.route_id == Route.id)
        .where(Route.active.is_(True), Route.vehicle_plate.is_not(None))
        .order_by(Route.id, RouteDestination.position)
    )
    return [tuple(r) for r in q.all()]


# ---------------------------------------------------------------------
# People
# ---------------------------------------------------------------------
async def driver_for_vehicle(db: AsyncSession, plate: str, day: dt.date) -> Optional[Driver]:
    q = await db.execute(
        select(Driver)
        .join(DriverAssignment, DriverAssignment.driver_id == Driver.id)
        .where(
            func.upper(DriverAssignment.vehicle_plate) == normalize_plate(plate),
            DriverAssignment.active.is_(True),
            Driver.active.is_(True),
            or_(DriverAssignment.end_date.is_(None), DriverAssignment.end_date >= day),
        )
        .order_by(DriverAssignment.start_date.desc(), DriverAssignment.id.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()


async def active_responsables(db: AsyncSession) -> List[Responsable]:
    q = await db.execute(
        select(Responsable)
        .where(Responsable.active.is_(True))
        .order_by(Responsable.priority.asc(), Responsable.id.asc())
    )
    return list(q.scalars().all())


# ---------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------
async def latest_awaiting_notification(db: AsyncSession, phone: str) -> Optional[AlarmNotification]:
    """Most recent notification for this recipient still waiting for an answer."""
    q = await db.execute(
        select(AlarmNotification)
        .where(
            AlarmNotification.recipient_key == recipient_key(phone),
            AlarmNotification.state.in_(AWAITING_RESPONSE),
            AlarmNotification.response_received.is_(False),
        )
        .order_by(AlarmNotification.created_at.desc(), AlarmNotification.id.desc())
        .limit(1)
    )
    return q.scalar_one_or_none()
