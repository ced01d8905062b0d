# worker.py - background alarm queue
import asyncio
import datetime as dt
from collections import deque
from typing import Callable, Optional

import pytz
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetguard import crud
from fleetguard.alerts import build_alert_message
from fleetguard.config import ALARM_DRAIN_INTERVAL_S, ALARM_QUEUE_MAX, OPS_RECIPIENT, TIMEZONE
from fleetguard.escalation import EscalationEngine
from fleetguard.logging_config import get_logger
from fleetguard.notifier import Notifier

logger = get_logger("worker", "worker.log")


class AlarmTask(BaseModel):
    """One pending notification, detached from any DB session."""
    kind: str                        # geofence_transition / deadline / route_arrival
    event_type: str                  # enter / exit / not_arrived / not_departed / route_arrival
    vehicle_id: Optional[int] = None
    vehicle_plate: Optional[str] = None
    vehicle_name: Optional[str] = None
    zone_id: Optional[int] = None
    zone_name: Optional[str] = None
    route_name: Optional[str] = None
    alarm_id: Optional[int] = None
    notify_driver: bool = True
    notify_broadcast: bool = True
    event_id: Optional[int] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    moving: Optional[bool] = None
    detail: Optional[str] = None
    queued_at: dt.datetime = Field(default_factory=crud.utcnow)

    @classmethod
    def for_alarm(cls, alarm, **fields) -> "AlarmTask":
        """Task carrying the channels of ``alarm``; all channels when alarm is None."""
        if alarm is not None:
            fields.update(
                alarm_id=alarm.id,
                notify_driver=bool(alarm.notify_driver),
                notify_broadcast=bool(alarm.notify_broadcast),
            )
        return cls(**fields)


class AlarmQueue:
    """
    FIFO of AlarmTasks. ``enqueue`` never blocks. With ``maxsize`` > 0 the
    oldest task is dropped (and logged) when the queue is full.
    """

    def __init__(self, maxsize: int = ALARM_QUEUE_MAX):
        self.maxsize = maxsize
        self._tasks: deque = deque()
        self._drain_lock = asyncio.Lock()
        self.dropped = 0

    def __len__(self):
        return len(self._tasks)

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    def enqueue(self, task: AlarmTask) -> None:
        if self.maxsize and len(self._tasks) >= self.maxsize:
            old = self._tasks.popleft()
            self.dropped += 1
            logger.error(
                f"Alarm queue full ({self.maxsize}), dropped oldest task "
                f"{old.event_type} for {old.vehicle_plate} queued at {old.queued_at}"
            )
        self._tasks.append(task)
        logger.debug(f"Alarm queued: {task.event_type} {task.vehicle_plate} (queue={len(self._tasks)})")

    async def drain(self, handler: Callable) -> int:
        """Hand the currently queued tasks to ``handler``; returns how many were processed."""
        if self._drain_lock.locked():
            return 0
        processed = 0
        async with self._drain_lock:
            # only what was queued when the drain started
            for _ in range(len(self._tasks)):
                if not self._tasks:
                    break
                task = self._tasks.popleft()
                try:
                    await handler(task)
                except Exception as e:
                    logger.exception(f"Error processing alarm {task.event_type} for {task.vehicle_plate}: {e}")
                processed += 1
        return processed


class AlarmWorker:
    """Turns queued AlarmTasks into broadcast messages and driver escalations."""

    def __init__(self, queue: AlarmQueue, sessions: async_sessionmaker[AsyncSession],
                 engine: EscalationEngine, broadcaster: Optional[Notifier] = None, *,
                 ops_recipient: Optional[str] = OPS_RECIPIENT, timezone: str = TIMEZONE,
                 interval_s: float = ALARM_DRAIN_INTERVAL_S,
                 clock: Callable[[], dt.datetime] = crud.utcnow):
        self.queue = queue
        self.sessions = sessions
        self.engine = engine
        self.broadcaster = broadcaster
        self.ops_recipient = ops_recipient
        self.tz = pytz.timezone(timezone)
        self.interval_s = interval_s
        self.clock = clock
        self._stopped = asyncio.Event()

    async def process_alarm_task(self, task: AlarmTask) -> None:
        logger.info(f"Processing alarm: {task.event_type} vehicle={task.vehicle_plate} zone={task.zone_name}")
        message = build_alert_message(task, self.clock().astimezone(self.tz))

        if task.notify_broadcast and self.broadcaster is not None and self.ops_recipient:
            result = await self.broadcaster.send(self.ops_recipient, message)
            if not result.delivered:
                logger.warning(f"Broadcast for {task.event_type} {task.vehicle_plate} failed: {result.error}")

        if not task.notify_driver:
            return
        if not task.vehicle_plate:
            logger.warning(f"No plate on {task.event_type} task, driver notification skipped")
            return

        async with self.sessions() as db:
            driver = await crud.driver_for_vehicle(db, task.vehicle_plate, self.clock().astimezone(self.tz).date())
        if driver is None:
            logger.info(f"No driver assigned to {task.vehicle_plate}, driver notification skipped")
            return

        await self.engine.start_notification(
            recipient=driver.chat_phone or driver.phone,
            message=message,
            vehicle_plate=task.vehicle_plate,
            alarm_type=task.event_type,
            alarm_id=task.alarm_id,
            event_id=task.event_id,
            driver_id=driver.id,
        )

    async def drain_once(self) -> int:
        return await self.queue.drain(self.process_alarm_task)

    async def run(self) -> None:
        logger.info(f"Alarm worker started (every {self.interval_s}s)")
        self._stopped.clear()
        while not self._stopped.is_set():
            try:
                await self.drain_once()
            except Exception as e:
                logger.exception(f"Alarm worker loop encountered an error: {e}")
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("Alarm worker stopped")

    def stop(self) -> None:
        self._stopped.set()
