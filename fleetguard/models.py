from sqlalchemy import (BigInteger, Boolean, Column, Date, DateTime, Float, ForeignKey, Integer, JSON, Text, Time)
from sqlalchemy.sql import func

from fleetguard.database import Base


class Vehicle(Base):
    __tablename__ = "vehicles"
    id         = Column(Integer, primary_key=True, index=True)
    service_id = Column(BigInteger, unique=True, index=True, nullable=False)  # upstream id
    plate      = Column(Text, index=True)
    name       = Column(Text)
    fleet_id   = Column(BigInteger)
    fleet_name = Column(Text)
    brand      = Column(Text)
    model      = Column(Text)
    active     = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def label(self):
        return self.name or self.plate or f"ID:{self.id}"


class Position(Base):
    """Latest known fix, one row per vehicle."""
    __tablename__ = "positions"
    id          = Column(Integer, primary_key=True, index=True)
    vehicle_id  = Column(Integer, ForeignKey("vehicles.id"), unique=True, nullable=False)
    lat         = Column(Float, nullable=False)
    lng         = Column(Float, nullable=False)
    speed       = Column(Float, default=0)
    heading     = Column(Float, default=0)
    altitude    = Column(Float)
    fix_time    = Column(DateTime(timezone=True))
    address     = Column(Text)
    odometer_km = Column(Float)
    sensors     = Column(JSON, default=dict)   # temperatures, door/ignition flags, raw inputs
    last_sync   = Column(DateTime(timezone=True), nullable=False)


class Geofence(Base):
    __tablename__ = "geofences"
    id          = Column(Integer, primary_key=True, index=True)
    name        = Column(Text, nullable=False)
    kind        = Column(Text, default="polygon")   # polygon / circle
    coordinates = Column(JSON, nullable=False)       # [{"lat": .., "lng": ..}, ...]
    radius_m    = Column(Float, default=0)
    active      = Column(Boolean, default=True)
    created_at  = Column(DateTime(timezone=True), server_default=func.now())


class GeofenceStatus(Base):
    __tablename__ = "geofence_status"
    vehicle_id  = Column(Integer, ForeignKey("vehicles.id"), primary_key=True)
    geofence_id = Column(Integer, ForeignKey("geofences.id"), primary_key=True)
    inside      = Column(Boolean, nullable=False)
    last_change = Column(DateTime(timezone=True), nullable=False)


class Route(Base):
    __tablename__ = "routes"
    id            = Column(Integer, primary_key=True, index=True)
    name          = Column(Text, nullable=False)
    vehicle_plate = Column(Text)
    days_of_week  = Column(Text)     # "1,2,3,4,5", ISO weekdays, NULL = every day
    travel_date   = Column(Date)     # one-off routes
    active        = Column(Boolean, default=True)


class RouteCheckpoint(Base):
    __tablename__ = "route_checkpoints"
    id                 = Column(Integer, primary_key=True, index=True)
    route_id           = Column(Integer, ForeignKey("routes.id"), nullable=False)
    name               = Column(Text, nullable=False)
    geofence_id        = Column(Integer, ForeignKey("geofences.id"))
    position           = Column(Integer, default=0)
    expected_arrival   = Column(Time)
    expected_departure = Column(Time)
    tolerance_minutes  = Column(Integer, default=30)
    notify_delay       = Column(Boolean, default=True)


class RouteDestination(Base):
    __tablename__ = "route_destinations"
    id                = Column(Integer, primary_key=True, index=True)
    route_id          = Column(Integer, ForeignKey("routes.id"), nullable=False)
    position          = Column(Integer, default=0)
    name              = Column(Text, nullable=False)
    address           = Column(Text)
    lat               = Column(Float, nullable=False)
    lng               = Column(Float, nullable=False)
    radius_m          = Column(Float, default=500)
    expected_arrival  = Column(Time)
    tolerance_minutes = Column(Integer, default=30)
    alarm_active      = Column(Boolean, default=True)
    notify_arrival    = Column(Boolean, default=True)
    arrived_at        = Column(DateTime(timezone=True))


class Alarm(Base):
    __tablename__ = "alarms"
    id               = Column(Integer, primary_key=True, index=True)
    name             = Column(Text, nullable=False)
    alarm_type       = Column(Text, nullable=False)   # enter / exit / geofence / not_arrived / not_departed / route_arrival
    vehicle_id       = Column(Integer, ForeignKey("vehicles.id"))          # NULL = any
    geofence_id      = Column(Integer, ForeignKey("geofences.id"))         # NULL = any
    route_id         = Column(Integer, ForeignKey("routes.id"))            # NULL = any
    checkpoint_id    = Column(Integer, ForeignKey("route_checkpoints.id")) # NULL = any
    start_time       = Column(Time)
    end_time         = Column(Time)
    days_of_week     = Column(Text, default="1,2,3,4,5,6,7")
    notify_driver    = Column(Boolean, default=True)
    notify_broadcast = Column(Boolean, default=True)
    active           = Column(Boolean, default=True)
    priority         = Column(Integer, default=1)


class Event(Base):
    __tablename__ = "events"
    id          = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    event_type  = Column(Text, nullable=False, index=True)
    vehicle_id  = Column(Integer, ForeignKey("vehicles.id"))
    geofence_id = Column(Integer, ForeignKey("geofences.id"))
    alarm_id    = Column(Integer, ForeignKey("alarms.id"))
    target_key  = Column(Text, index=True)    # dedup target, e.g. "checkpoint:4:arrival"
    message     = Column(Text)
    lat         = Column(Float)
    lng         = Column(Float)
    event_date  = Column(Date, nullable=False, index=True)   # local calendar date
    created_at  = Column(DateTime(timezone=True), nullable=False)


class Driver(Base):
    __tablename__ = "drivers"
    id         = Column(Integer, primary_key=True, index=True)
    first_name = Column(Text, nullable=False)
    last_name  = Column(Text, nullable=False)
    phone      = Column(Text, nullable=False)
    chat_phone = Column(Text)
    active     = Column(Boolean, default=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class DriverAssignment(Base):
    __tablename__ = "driver_vehicle_assignments"
    id            = Column(Integer, primary_key=True, index=True)
    driver_id     = Column(Integer, ForeignKey("drivers.id"), nullable=False)
    vehicle_plate = Column(Text, nullable=False, index=True)
    start_date    = Column(Date)
    end_date      = Column(Date)
    active        = Column(Boolean, default=True)


class Responsable(Base):
    __tablename__ = "responsables"
    id         = Column(Integer, primary_key=True, index=True)
    first_name = Column(Text, nullable=False)
    last_name  = Column(Text, nullable=False)
    phone      = Column(Text, nullable=False)
    chat_phone = Column(Text)
    role       = Column(Text, default="responsable")
    priority   = Column(Integer, default=1)
    active     = Column(Boolean, default=True)


class AlarmNotification(Base):
    __tablename__ = "alarm_notifications"
    id                 = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    alarm_id           = Column(Integer, ForeignKey("alarms.id"))
    event_id           = Column(BigInteger, ForeignKey("events.id"))
    driver_id          = Column(Integer, ForeignKey("drivers.id"))
    vehicle_plate      = Column(Text)
    alarm_type         = Column(Text)
    channel            = Column(Text, default="chat")
    state              = Column(Text, default="pending", index=True)
    escalation_level   = Column(Integer, default=1)
    message            = Column(Text)
    recipient          = Column(Text)
    recipient_key      = Column(Text, index=True)    # trailing digits of recipient
    message_id         = Column(Text)
    sent_at            = Column(DateTime(timezone=True))
    response_received  = Column(Boolean, default=False)
    responded_at       = Column(DateTime(timezone=True))
    response_text      = Column(Text)
    call_made          = Column(Boolean, default=False)
    call_at            = Column(DateTime(timezone=True))
    next_escalation_at = Column(DateTime(timezone=True))
    created_at         = Column(DateTime(timezone=True), nullable=False)
