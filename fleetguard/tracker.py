import datetime as dt

from sqlalchemy.ext.asyncio import AsyncSession

from fleetguard.crud import get_geofence_status, set_geofence_status
from fleetguard.geozones import contains

ENTER = "enter"
EXIT = "exit"
NONE = "none"


def detect_transition(previous_inside, currently_inside: bool) -> str:
    """
    ``previous_inside`` is None when the pair was never evaluated; that counts
    as outside, so a first observation inside is reported as an entry.
    """
    was_inside = bool(previous_inside)
    if not was_inside and currently_inside:
        return ENTER
    if was_inside and not currently_inside:
        return EXIT
    return NONE


class GeofenceStatusTracker:
    """Remembers which geofences each vehicle is in and reports changes."""

    async def evaluate(self, db: AsyncSession, vehicle_id: int, geofence, point, ts: dt.datetime) -> str:
        inside = contains(point, geofence)

        prev = await get_geofence_status(db, vehicle_id, geofence.id)
        prev_inside = prev.inside if prev is not None else None
        transition = detect_transition(prev_inside, inside)

        if transition != NONE:
            await set_geofence_status(db, vehicle_id, geofence.id, inside, ts)
        return transition
