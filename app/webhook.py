import redis, json, time, asyncio
from fastapi import APIRouter, HTTPException

from config import ALLOWED_DEVICES, REDIS_URL, FIX_STREAM
from crud import from_epoch_ms
from domain import TripState
from reports import format_distance, format_duration
from store import TripStore
from logging_config import get_logger

# Redis connection (binary mode)
r = redis.from_url(REDIS_URL, decode_responses=False)

router = APIRouter()
store = TripStore()
logger = get_logger("webhook", "webhook.log")

REQUIRED_FIELDS = ("latitude", "longitude", "fixTime")


# ---------------------------------------------------
#                POSITION FORWARD
# ---------------------------------------------------
@router.post("/positions")
async def position_hook(payload: dict):

    # Extract position block
    p = payload.get("position")
    if not p:
        raise HTTPException(status_code=400, detail="no position")

    device_id = p.get("deviceId")
    if device_id is None:
        raise HTTPException(status_code=400, detail="missing deviceId")

    missing = [f for f in REQUIRED_FIELDS if p.get(f) is None]
    if missing:
        raise HTTPException(status_code=400, detail=f"missing {', '.join(missing)}")

    # Normalize allow-list lookup (handles int vs string mismatch)
    if ALLOWED_DEVICES and str(device_id) not in {str(x) for x in ALLOWED_DEVICES}:
        logger.info(f"Ignored device {device_id} (not in ALLOWED_DEVICES)")
        return {"ok": False, "reason": "ignored"}

    json_str = json.dumps(payload, ensure_ascii=False)

    # Push to Redis inside executor (non-blocking); the worker is the single consumer
    await asyncio.get_event_loop().run_in_executor(
        None,
        r.xadd,
        FIX_STREAM,
        {"ts": time.time(), "data": json_str},
    )

    logger.info(f"Position queued for device {device_id}")
    return {"ok": True}


@router.get("/health")
async def health():
    return {"ok": True}


# ---------------------------------------------------
#                ACTIVE TRIP LOOKUP
# ---------------------------------------------------
@router.get("/devices/{device_id}/trip")
async def active_trip(device_id: int):
    record = await store.get_active_trip(device_id)
    if record is None:
        return {"device_id": device_id, "state": TripState.PARKED.value, "trip": None}

    last = record.last_point
    return {
        "device_id": device_id,
        "state": TripState.DRIVING.value,
        "trip": {
            "id": record.trip_id,
            "start_time": from_epoch_ms(record.start_time_ms),
            "distance": format_distance(record.distance_m),
            "duration": format_duration(record.duration_ms),
            "max_speed_kmh": round(record.max_speed_kmh, 1),
            "avg_speed_kmh": round(record.avg_speed_kmh, 1),
            "points": record.point_count,
            "last_position": {"lat": last.latitude, "lon": last.longitude} if last else None,
        },
    }
