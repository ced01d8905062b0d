# fleetguard/monitor.py
import asyncio
import datetime as dt
from typing import Callable, List, Optional

import pytz
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from fleetguard import crud
from fleetguard.config import CHECK_INTERVAL_S, FETCH_ATTEMPTS, MAX_CONSECUTIVE_ERRORS, TIMEZONE
from fleetguard.deadlines import DeadlineChecker
from fleetguard.escalation import EscalationEngine
from fleetguard.geozones import GeometryError, is_moving
from fleetguard.logging_config import get_logger
from fleetguard.schedule import is_alarm_active_now
from fleetguard.telemetry import PositionFix, TelemetryConfigError, TelemetryError, TelemetrySource, TransientTelemetryError
from fleetguard.tracker import ENTER, NONE, GeofenceStatusTracker
from fleetguard.worker import AlarmQueue, AlarmTask, AlarmWorker

logger = get_logger("monitor", "monitor.log")


class MonitoringService:
    """
    Periodic detection cycle.

    Every tick fetches the fleet positions, refreshes the position store,
    evaluates all active geofences for every vehicle and runs the deadline
    checks. Notification work is only queued here; ``AlarmWorker`` delivers it
    on its own loop.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession], telemetry: TelemetrySource,
                 queue: AlarmQueue, worker: AlarmWorker, engine: EscalationEngine, *,
                 deadlines: Optional[DeadlineChecker] = None,
                 tracker: Optional[GeofenceStatusTracker] = None,
                 interval_s: float = CHECK_INTERVAL_S,
                 fetch_attempts: int = FETCH_ATTEMPTS,
                 max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
                 retry_wait=None,
                 timezone: str = TIMEZONE,
                 clock: Callable[[], dt.datetime] = crud.utcnow):
        self.sessions = sessions
        self.telemetry = telemetry
        self.queue = queue
        self.worker = worker
        self.engine = engine
        self.tracker = tracker or GeofenceStatusTracker()
        self.deadlines = deadlines or DeadlineChecker(sessions, queue, timezone=timezone, clock=clock)
        self.interval_s = interval_s
        self.fetch_attempts = fetch_attempts
        self.max_consecutive_errors = max_consecutive_errors
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=2, max=30)
        self.tz = pytz.timezone(timezone)
        self.clock = clock

        self.is_running = False
        self.consecutive_failures = 0
        self.last_api_error: Optional[str] = None
        self._tick_lock = asyncio.Lock()
        self._stopped = asyncio.Event()
        self._loops: List[asyncio.Task] = []

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------
    def start(self) -> None:
        if self.is_running:
            logger.warning("Monitoring already running")
            return
        logger.info(f"Starting monitoring every {self.interval_s}s")
        self._stopped.clear()
        self._loops = [
            asyncio.create_task(self.worker.run(), name="alarm-worker"),
            asyncio.create_task(self.run(), name="monitor-tick"),
        ]
        self.is_running = True

    async def stop(self) -> None:
        self._stopped.set()
        self.worker.stop()
        for t in self._loops:
            t.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        await self.engine.shutdown()
        self.is_running = False
        logger.info("Monitoring stopped")

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await self.check_all_vehicles()
            except Exception as e:
                logger.exception(f"Monitor tick crashed: {e}")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    async def force_check(self) -> bool:
        logger.info("Forced check requested")
        return await self.check_all_vehicles()

    # -----------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------
    @property
    def healthy(self) -> bool:
        return self.consecutive_failures < self.max_consecutive_errors

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "check_interval_s": self.interval_s,
            "queue_depth": len(self.queue),
            "processing_alarms": self.queue.draining,
            "consecutive_failures": self.consecutive_failures,
            "last_api_error": self.last_api_error,
            "pending_escalations": self.engine.pending_escalations,
            "healthy": self.healthy,
        }

    # -----------------------------------------------------------------
    # Tick
    # -----------------------------------------------------------------
    async def _fetch_positions(self) -> List[PositionFix]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.fetch_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type(TransientTelemetryError),
            reraise=True,
        ):
            with attempt:
                return await self.telemetry.fetch_all_positions()

    def _record_failure(self, error: Exception) -> None:
        self.consecutive_failures += 1
        self.last_api_error = str(error) if isinstance(error, TelemetryError) else f"{type(error).__name__}: {error}"

        if isinstance(error, TelemetryConfigError):
            logger.error(f"Telemetry misconfigured: {error} (consecutive={self.consecutive_failures})")
        elif self.consecutive_failures >= self.max_consecutive_errors:
            logger.error(
                f"Telemetry API unreachable - too many consecutive errors: {error} "
                f"(consecutive={self.consecutive_failures})"
            )
        else:
            logger.warning(f"Position check failed: {error} (consecutive={self.consecutive_failures})")

    async def check_all_vehicles(self) -> bool:
        if self._tick_lock.locked():
            logger.warning("Previous check still running, tick skipped")
            return False

        async with self._tick_lock:
            logger.info("Starting position check...")
            try:
                positions = await self._fetch_positions()
            except TelemetryError as e:
                self._record_failure(e)
                return False
            except Exception as e:
                logger.exception(f"Unexpected telemetry failure: {e}")
                self._record_failure(e)
                return False

            self.consecutive_failures = 0
            self.last_api_error = None

            async with self.sessions() as db:
                geofences = await crud.list_active_geofences(db)

            for fix in positions:
                await self.process_vehicle_position(fix, geofences)

            try:
                await self.deadlines.check()
            except Exception as e:
                logger.exception(f"Deadline check failed: {e}")

            logger.info(
                f"Position check done: vehicles={len(positions)} geofences={len(geofences)} "
                f"alarms_in_queue={len(self.queue)}"
            )
            return True

    async def process_vehicle_position(self, fix: PositionFix, geofences) -> List[AlarmTask]:
        now = self.clock()
        local_now = now.astimezone(self.tz)
        tasks: List[AlarmTask] = []

        try:
            async with self.sessions() as db:
                vehicle = await crud.upsert_vehicle(db, fix, now)

                if not fix.has_coordinates:
                    logger.debug(f"Missing coordinates for {vehicle.label}")
                    await db.commit()
                    return tasks

                await crud.upsert_position(db, vehicle.id, fix, now)
                point = (fix.lat, fix.lng)

                for g in geofences:
                    try:
                        transition = await self.tracker.evaluate(db, vehicle.id, g, point, now)
                    except GeometryError as e:
                        logger.warning(f"Geofence {g.id} '{g.name}' skipped: {e}")
                        continue
                    if transition == NONE:
                        continue

                    logger.info(f"Geofence transition: {vehicle.label} - {transition} - {g.name}")
                    ev = await crud.log_event(
                        db, transition, day=local_now.date(), ts=now,
                        vehicle_id=vehicle.id, geofence_id=g.id, target_key=f"geofence:{g.id}",
                        message=f"{'Entered' if transition == ENTER else 'Left'} {g.name}",
                        lat=fix.lat, lng=fix.lng,
                    )
                    alarms = await crud.list_alarms_for(
                        db, (transition, "geofence"), vehicle_id=vehicle.id, geofence_id=g.id,
                    )
                    for alarm in alarms:
                        if not is_alarm_active_now(alarm, local_now):
                            continue
                        if ev.alarm_id is None:
                            ev.alarm_id = alarm.id
                        tasks.append(AlarmTask.for_alarm(
                            alarm,
                            kind="geofence_transition", event_type=transition,
                            vehicle_id=vehicle.id, vehicle_plate=vehicle.plate, vehicle_name=vehicle.name,
                            zone_id=g.id, zone_name=g.name, event_id=ev.id,
                            lat=fix.lat, lng=fix.lng, moving=is_moving(fix.speed),
                        ))

                await db.commit()
        except Exception as e:
            logger.exception(f"Error processing position of vehicle {fix.service_id}: {e}")
            return []

        for t in tasks:
            self.queue.enqueue(t)
        return tasks
