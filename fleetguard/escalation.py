"""
Alarm notification escalation.

Every AlarmNotification walks through at most three tiers:

    1. message to the driver, wait ``response_timeout``
    2. urgent resend to the driver ("automatic call"), wait ``call_timeout``
    3. message to every active responsable, terminal

A reply from the recipient stops the walk at any tier. Each notification has
at most one pending timer (an asyncio task kept in ``_timers``) and a lock
that serialises reply handling with timer processing, so a reply racing a
firing timer is decided by whichever takes the lock first; the loser sees the
stored state and backs off.
"""
import asyncio
import datetime as dt
import re
from typing import Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetguard import crud
from fleetguard.alerts import (CONFIRMED_REPLY, render_template, responded_reply,
                               responsable_message, urgent_message)
from fleetguard.config import CALL_TIMEOUT_MIN, MESSAGE_TEMPLATE, RESPONSE_TIMEOUT_MIN
from fleetguard.logging_config import get_logger
from fleetguard.models import AlarmNotification, Driver
from fleetguard.notifier import Notifier
from fleetguard.variables import (AWAITING_RESPONSE, CONFIRM_SYMBOLS, CONFIRM_WORDS, CONFIRMED,
                                  ESCALATED_LEVEL2, ESCALATED_LEVEL3, FAILED, PENDING, RESPONDED, SENT)

logger = get_logger("escalation", "escalation.log")

ESCALATABLE = (SENT, FAILED, ESCALATED_LEVEL2)


def is_confirmation(body: str) -> bool:
    text = (body or "").strip().upper()
    if any(sym in text for sym in CONFIRM_SYMBOLS):
        return True
    return any(word in CONFIRM_WORDS for word in re.findall(r"\w+", text))


class EscalationEngine:
    def __init__(self, sessions: async_sessionmaker[AsyncSession], notifier: Notifier, *,
                 response_timeout: dt.timedelta = dt.timedelta(minutes=RESPONSE_TIMEOUT_MIN),
                 call_timeout: dt.timedelta = dt.timedelta(minutes=CALL_TIMEOUT_MIN),
                 template: str = MESSAGE_TEMPLATE,
                 clock: Callable[[], dt.datetime] = crud.utcnow):
        self.sessions = sessions
        self.notifier = notifier
        self.response_timeout = response_timeout
        self.call_timeout = call_timeout
        self.template = template
        self.clock = clock
        self._timers: Dict[int, asyncio.Task] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._running: Set[asyncio.Task] = set()   # timers that fired and are escalating
        self._closed = False

    @property
    def pending_escalations(self) -> int:
        return len(self._timers)

    def _lock(self, notification_id: int) -> asyncio.Lock:
        return self._locks.setdefault(notification_id, asyncio.Lock())

    def _forget_lock(self, notification_id: int, lock: asyncio.Lock) -> None:
        if self._locks.get(notification_id) is lock:
            del self._locks[notification_id]

    # -----------------------------------------------------------------
    # Timers
    # -----------------------------------------------------------------
    def schedule(self, notification_id: int, delay: dt.timedelta, level: int) -> None:
        self.cancel(notification_id)
        if self._closed:
            logger.warning(f"Engine stopped, level {level} escalation for notification {notification_id} not scheduled")
            return
        task = asyncio.create_task(self._fire(notification_id, delay.total_seconds(), level))
        self._timers[notification_id] = task
        logger.debug(f"Escalation level {level} scheduled for notification {notification_id} in {delay.total_seconds()}s")

    def cancel(self, notification_id: int) -> None:
        task = self._timers.pop(notification_id, None)
        if task is not None:
            task.cancel()
            logger.debug(f"Escalation cancelled for notification {notification_id}")

    async def _fire(self, notification_id: int, delay_s: float, level: int) -> None:
        await asyncio.sleep(delay_s)
        # past this point the timer can no longer be cancelled, only outvoted by state
        me = asyncio.current_task()
        if self._timers.get(notification_id) is me:
            del self._timers[notification_id]
        self._running.add(me)
        try:
            await self.process_escalation(notification_id, level)
        except Exception as e:
            logger.exception(f"Escalation level {level} failed for notification {notification_id}: {e}")
        finally:
            self._running.discard(me)

    async def shutdown(self) -> None:
        """Cancel pending timers and wait for escalations already in progress."""
        self._closed = True
        tasks = list(self._timers.values())
        for notification_id in list(self._timers):
            self.cancel(notification_id)
        in_flight = list(self._running)
        await asyncio.gather(*tasks, *in_flight, return_exceptions=True)
        logger.info(
            f"Escalation engine stopped, {len(tasks)} timers cancelled, "
            f"{len(in_flight)} running escalations completed"
        )

    # -----------------------------------------------------------------
    # Intake
    # -----------------------------------------------------------------
    async def start_notification(self, *, recipient: str, message: str, vehicle_plate: Optional[str],
                                 alarm_type: Optional[str], alarm_id: Optional[int] = None,
                                 event_id: Optional[int] = None, driver_id: Optional[int] = None) -> AlarmNotification:
        """Create a level-1 notification and try to deliver it."""
        text = render_template(self.template, alarm_type, vehicle_plate, message)

        async with self.sessions() as db:
            n = AlarmNotification(
                alarm_id=alarm_id,
                event_id=event_id,
                driver_id=driver_id,
                vehicle_plate=vehicle_plate,
                alarm_type=alarm_type,
                state=PENDING,
                escalation_level=1,
                message=text,
                recipient=recipient,
                recipient_key=crud.recipient_key(recipient),
                created_at=self.clock(),
            )
            db.add(n)
            await db.commit()
            notification_id = n.id

        async with self._lock(notification_id):
            result = await self.notifier.send(recipient, text)
            async with self.sessions() as db:
                n = await db.get(AlarmNotification, notification_id)
                if result.delivered:
                    now = self.clock()
                    n.state = SENT
                    n.message_id = result.message_id
                    n.sent_at = now
                    n.next_escalation_at = now + self.response_timeout
                    await db.commit()
                    self.schedule(notification_id, self.response_timeout, 1)
                    logger.info(f"Notification {notification_id} sent to {recipient} ({vehicle_plate})")
                    return n

                n.state = FAILED
                await db.commit()

        logger.error(f"Notification {notification_id} to {recipient} failed ({result.error}), escalating now")
        await self.process_escalation(notification_id, 1)
        async with self.sessions() as db:
            return await db.get(AlarmNotification, notification_id)

    # -----------------------------------------------------------------
    # Escalation steps
    # -----------------------------------------------------------------
    async def process_escalation(self, notification_id: int, level: int) -> None:
        lock = self._lock(notification_id)
        async with lock:
            async with self.sessions() as db:
                n = await db.get(AlarmNotification, notification_id)
                if n is None or n.response_received or n.state not in ESCALATABLE:
                    logger.debug(f"Escalation not needed for notification {notification_id}")
                elif n.escalation_level != level:
                    logger.warning(
                        f"Stale level {level} escalation for notification {notification_id} "
                        f"(now at level {n.escalation_level})"
                    )
                elif level == 1:
                    logger.warning(f"Escalation level 2: urgent resend for notification {notification_id}")
                    await self._escalate_to_call(db, n)
                    self.schedule(notification_id, self.call_timeout, 2)
                    return
                else:
                    logger.warning(f"Escalation level 3: contacting responsables for notification {notification_id}")
                    await self._escalate_to_responsables(db, n)

        self._forget_lock(notification_id, lock)

    async def _escalate_to_call(self, db: AsyncSession, n: AlarmNotification) -> None:
        result = await self.notifier.send(n.recipient, urgent_message(n.message))
        if not result.delivered:
            logger.error(f"Urgent resend for notification {n.id} failed: {result.error}")

        now = self.clock()
        n.call_made = True
        n.call_at = now
        n.escalation_level = 2
        n.state = ESCALATED_LEVEL2
        n.next_escalation_at = now + self.call_timeout
        await db.commit()

    async def _escalate_to_responsables(self, db: AsyncSession, n: AlarmNotification) -> None:
        responsables = await crud.active_responsables(db)
        driver = await db.get(Driver, n.driver_id) if n.driver_id else None

        if not responsables:
            logger.error(f"No responsable configured for escalation of notification {n.id}!")

        text = responsable_message(n, driver)
        for r in responsables:
            result = await self.notifier.send(r.chat_phone or r.phone, text)
            if result.delivered:
                logger.info(f"Responsable {r.first_name} {r.last_name} notified for notification {n.id}")
            else:
                logger.error(f"Responsable {r.first_name} {r.last_name} unreachable: {result.error}")

        n.escalation_level = 3
        n.state = ESCALATED_LEVEL3
        n.next_escalation_at = None
        await db.commit()

    # -----------------------------------------------------------------
    # Inbound replies
    # -----------------------------------------------------------------
    async def handle_reply(self, phone: str, body: str) -> Optional[AlarmNotification]:
        async with self.sessions() as db:
            pending = await crud.latest_awaiting_notification(db, phone)
            if pending is None:
                logger.info(f"Reply from {phone} matches no pending notification")
                return None
            notification_id = pending.id

        confirmed = is_confirmation(body)
        lock = self._lock(notification_id)
        async with lock:
            self.cancel(notification_id)
            async with self.sessions() as db:
                n = await db.get(AlarmNotification, notification_id)
                late = n.response_received or n.state not in AWAITING_RESPONSE
                if not late:
                    n.response_received = True
                    n.responded_at = self.clock()
                    n.response_text = body
                    n.state = CONFIRMED if confirmed else RESPONDED
                    n.next_escalation_at = None
                    await db.commit()
        self._forget_lock(notification_id, lock)

        if late:
            logger.info(f"Reply from {phone} arrived after notification {notification_id} reached {n.state}")
            return None

        logger.info(f"Notification {notification_id} {n.state} by {phone}")
        ack = CONFIRMED_REPLY if confirmed else responded_reply(body)
        result = await self.notifier.send(phone, ack)
        if not result.delivered:
            logger.warning(f"Acknowledgement to {phone} not delivered: {result.error}")
        return n
