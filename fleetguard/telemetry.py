"""
Upstream telemetry collaborator.

The monitor only needs ``fetch_all_positions()``; anything implementing the
``TelemetrySource`` protocol can be plugged in. ``HttpTelemetrySource`` talks
to the GPS provider's REST API.
"""
import datetime as dt
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from fleetguard.crud import to_dt
from fleetguard.logging_config import get_logger

logger = get_logger("telemetry", "telemetry.log")


class TelemetryError(Exception):
    """Base class for upstream failures."""


class TransientTelemetryError(TelemetryError):
    """Network failure or 5xx; worth retrying."""


class TelemetryConfigError(TelemetryError):
    """Bad URL or credentials; retrying will not help."""


class PositionFix(BaseModel):
    service_id: int
    plate: Optional[str] = None
    name: Optional[str] = None
    fleet_id: Optional[int] = None
    fleet_name: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    speed: float = 0.0
    heading: float = 0.0
    altitude: Optional[float] = None
    fix_time: Optional[dt.datetime] = None
    address: Optional[str] = None
    odometer_km: Optional[float] = None
    sensors: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_coordinates(self) -> bool:
        return bool(self.lat) and bool(self.lng)

    @classmethod
    def from_payload(cls, p: dict) -> "PositionFix":
        """
        Normalise one provider record. Position data may be nested under
        ``posizione`` or flat on the record; auxiliary inputs/analogs become
        the open ``sensors`` map.
        """
        pos = p.get("posizione") or {}
        inputs = pos.get("inputs") or p.get("inputs") or {}
        analogs = pos.get("analogs") or p.get("analogs") or {}

        address = pos.get("address") or p.get("address")
        if isinstance(address, dict):
            address = address.get("F")

        sensors = {
            "temperature1": analogs.get("analog1"),
            "temperature2": analogs.get("analog2"),
            "fridge_on": str(inputs.get("CHIAVE FRIGO")) == "1",
            "door_open": str(inputs.get("VANO CARICO")) == "1",
            "ignition": inputs.get("ignition", p.get("ignition")),
            "inputs": inputs,
            "analogs": analogs,
        }

        tipologia = p.get("tipologia")
        if isinstance(tipologia, dict):
            sensors["vehicle_kind"] = tipologia.get("tipologia")

        return cls(
            service_id=p.get("idServizio", p.get("service_id")),
            plate=p.get("targa") or p.get("plate"),
            name=p.get("nickname") or p.get("name"),
            fleet_id=p.get("fleetId"),
            fleet_name=p.get("fleetName"),
            brand=p.get("brand"),
            model=p.get("modello") or p.get("model"),
            lat=pos.get("latitude", p.get("latitude")),
            lng=pos.get("longitude", p.get("longitude")),
            speed=pos.get("speed", p.get("speed")) or 0,
            heading=pos.get("heading", p.get("heading")) or 0,
            altitude=pos.get("altitude", p.get("altitude")),
            fix_time=to_dt(pos.get("fixGps") or p.get("fixGps")),
            address=address,
            odometer_km=p.get("km_totali"),
            sensors=sensors,
        )


class TelemetrySource(Protocol):
    async def fetch_all_positions(self) -> List[PositionFix]:
        ...


class HttpTelemetrySource:
    def __init__(self, base_url: Optional[str], secret: Optional[str], *,
                 timeout: float = 120.0, positions_path: str = "/positions",
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self.secret = secret
        self.timeout = timeout
        self.positions_path = positions_path
        self._client = client

    def _headers(self):
        return {
            "secret": self.secret or "",
            "X-Requested-With": "XMLHttpRequest",
            "Accept": "application/json",
        }

    async def _get(self, path: str):
        if not self.base_url or not self.secret:
            raise TelemetryConfigError("telemetry URL or secret not configured")

        client = self._client or httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        try:
            resp = await client.get(path, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransientTelemetryError(f"{type(e).__name__}: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if resp.status_code in (401, 403, 404):
            raise TelemetryConfigError(f"telemetry API rejected request: HTTP {resp.status_code}")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientTelemetryError(f"telemetry API unavailable: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise TelemetryConfigError(f"unexpected telemetry response: HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as e:
            raise TransientTelemetryError(f"malformed telemetry body: {e}") from e

    async def fetch_all_positions(self) -> List[PositionFix]:
        data = await self._get(self.positions_path)
        if isinstance(data, dict):
            data = data.get("data") or data.get("positions") or []
        if not isinstance(data, list):
            raise TransientTelemetryError(f"unexpected telemetry body: {str(data)[:200]}")

        fixes = []
        for record in data:
            try:
                fixes.append(PositionFix.from_payload(record))
            except (ValueError, TypeError, AttributeError):
                logger.warning(f"Skipping malformed position record: {str(record)[:200]}")
        logger.info(f"Fetched {len(fixes)} positions")
        return fixes
