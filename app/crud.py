from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from models import DeviceStatus
from domain import Position, Provider, RawFix
from geo import knots_to_ms
import datetime as dt

UTC = dt.timezone.utc

SECONDARY_SOURCES = {"network", "cell", "wifi", "gsm"}


def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=UTC)

    if isinstance(v, (int, float)):
        return dt.datetime.fromtimestamp(v / 1000.0, tz=UTC)

    return None


def to_epoch_ms(v) -> int:
    return int(to_dt(v).timestamp() * 1000)


def from_epoch_ms(ms):
    if ms is None:
        return None
    return dt.datetime.fromtimestamp(ms / 1000.0, tz=UTC)


def to_raw_fix(p: dict) -> RawFix:
    """
    Convert a Traccar-style position block into a RawFix.
    Traccar reports speed in knots; RawFix carries m/s.
    """
    attrs = p.get("attributes") or {}
    speed = p.get("speed")
    source = str(attrs.get("provider") or attrs.get("source") or "").lower()

    return RawFix(
        latitude=float(p["latitude"]),
        longitude=float(p["longitude"]),
        accuracy=float(p.get("accuracy") or 0.0),
        timestamp_ms=to_epoch_ms(p["fixTime"]),
        speed_ms=knots_to_ms(float(speed)) if speed is not None else None,
        bearing=float(p["course"]) if p.get("course") is not None else None,
        altitude=float(p.get("altitude") or 0.0),
        provider=Provider.SECONDARY if source in SECONDARY_SOURCES else Provider.PRIMARY,
    )


async def upsert_device_status(db: AsyncSession, device_id: int, online: bool, fix: RawFix,
                               position: Optional[Position] = None, name=None):
    """
    Last known position cache, kept outside trip logic. `position` is what the
    recorder currently shows (a secondary fix does not replace a fresh GPS one).
    """
    row = await db.get(DeviceStatus, device_id)
    if row is None:
        row = DeviceStatus(device_id=device_id)
        db.add(row)

    row.online    = online
    row.last_seen = from_epoch_ms(fix.timestamp_ms)
    if name:
        row.name = name

    if position is not None:
        row.last_lat = position.latitude
        row.last_lon = position.longitude
        if position == Position(fix.latitude, fix.longitude):
            row.last_accuracy = fix.accuracy
            row.last_provider = fix.provider.value
    await db.commit()
