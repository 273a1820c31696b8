# worker.py
import datetime as dt
import redis
import json
import asyncio
from typing import Dict, Iterable, List

from config import ALLOWED_DEVICES, REDIS_URL, FIX_STREAM, WORKER_GROUP, WORKER_CONSUMER, DATA_RETENTION_DAYS
from crud import to_raw_fix, upsert_device_status
from database import AsyncSessionLocal, init_models
from domain import CorruptTripRecordError, RawFix, TripAllocationError, TripEvent
from recorder import TripRecorder
from store import ReservedTripIds, TripStore, TRANSIENT_ERRORS

from logging_config import get_logger

# ------------ Variable Declaration -----------
logger = get_logger("worker", "worker.log")

r = redis.from_url(REDIS_URL, decode_responses=False)

store = TripStore()
trip_ids = ReservedTripIds(store)

# one recorder per device; the loop below is the only caller
recorders: Dict[int, TripRecorder] = {}

# events already produced by a recorder but not yet written, in emission order
outbox: Dict[int, List[TripEvent]] = {}


# ---------- Ensure Consumer Group ----------
async def init_group():
    try:
        # Start reading only NEW messages from now → id="$", create stream if missing
        r.xgroup_create(FIX_STREAM, WORKER_GROUP, id="$", mkstream=True)
        logger.info("Consumer group created.")
    except redis.exceptions.ResponseError as e:
        if "BUSYGROUP" in str(e):
            logger.info("Consumer group already exists.")
        else:
            raise


def is_allowed(device_id) -> bool:
    if not ALLOWED_DEVICES:
        return True
    return str(device_id) in {str(x) for x in ALLOWED_DEVICES}


# ---------- Recorder lookup / resume ----------
async def get_recorder(device_id: int) -> TripRecorder:
    recorder = recorders.get(device_id)
    if recorder is not None:
        return recorder

    # lookup failures propagate: the device stays uncached and the next fix retries the resume
    active = await store.get_active_trip(device_id)

    recorder = TripRecorder(trip_ids, device_id=device_id)
    if active is None:
        logger.info(f"Device {device_id}: no active trip, starting parked")
        recorders[device_id] = recorder
        return recorder

    try:
        recorder.resume_active_trip(active)
        logger.info(f"Device {device_id}: resumed trip #{active.trip_id} ({active.point_count} points)")
    except CorruptTripRecordError as e:
        logger.warning(f"Device {device_id}: {e}, closing orphaned trip")
        await flush_events(device_id, [e.ended])

    recorders[device_id] = recorder
    return recorder


async def refill_trip_ids() -> None:
    try:
        await trip_ids.refill()
    except TRANSIENT_ERRORS as e:
        # next trip start will fail with TripAllocationError and retry
        logger.warning(f"Could not reserve trip ids, trip tracking degraded: {e}")


async def flush_events(device_id: int, events: Iterable[TripEvent] = ()) -> bool:
    """
    Write the device's pending events followed by `events`. On failure
    everything stays queued, in order, for the next flush.
    """
    pending = outbox.pop(device_id, []) + list(events)
    if not pending:
        return True
    try:
        await store.apply(device_id, pending)
    except Exception as e:
        outbox[device_id] = pending
        logger.exception(f"Device {device_id}: could not store {len(pending)} events, kept for retry: {e}")
        return False
    return True


# ---------- Per-message logic ----------
async def handle_payload(payload: dict, fix: RawFix) -> None:
    device_id = payload["position"]["deviceId"]
    device = payload.get("device") or {}

    recorder = await get_recorder(device_id)

    try:
        result = recorder.process_fix(fix)
    except TripAllocationError as e:
        # fix is lost for trip purposes; the map position still moves
        logger.warning(f"Device {device_id}: trip start postponed, no trip id ({e})")
        result = None

    events = result.events if result is not None else []
    if await flush_events(device_id, events) and events:
        logger.info(
            f"Device {device_id}: {len(events)} events applied "
            f"(state={recorder.state.value} trip={recorder.trip_id} speed={result.conditioned_speed:.1f} km/h)"
        )
    elif result is not None and not result.accepted:
        logger.info(f"Device {device_id}: fix rejected ({result.conditioned.reason.value})")

    try:
        async with AsyncSessionLocal() as db:
            online = device.get("status", "online") == "online"
            await upsert_device_status(db, device_id, online, fix, recorder.last_position, name=device.get("name"))
    except TRANSIENT_ERRORS as e:
        logger.warning(f"Device {device_id}: status not updated: {e}")

    if not trip_ids.ids:
        await refill_trip_ids()


async def close_all(now_ms=None) -> None:
    """Close every open trip, e.g. on shutdown."""
    for device_id, recorder in recorders.items():
        events = recorder.shutdown(now_ms)
        if not await flush_events(device_id, events):
            logger.error(f"Device {device_id}: {len(outbox[device_id])} events lost on shutdown")


async def cleanup_old_data() -> None:
    cutoff = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=DATA_RETENTION_DAYS)
    await store.delete_older_than(cutoff)


# ---------- Stream records ----------
async def process_record(_id, fields) -> None:
    try:
        try:
            payload = json.loads(fields[b"data"])
            device_id = payload["position"]["deviceId"]
            fix = to_raw_fix(payload["position"])
        except (ValueError, KeyError, TypeError) as je:
            logger.exception(f"Failed to decode record {_id}: {je}")
            # malformed message: ack & delete to avoid poison-pill
            r.xack(FIX_STREAM, WORKER_GROUP, _id)
            r.xdel(FIX_STREAM, _id)
            return

        if not is_allowed(device_id):
            logger.warning(f"Skipping unauthorized device: {device_id}")
            r.xack(FIX_STREAM, WORKER_GROUP, _id)
            r.xdel(FIX_STREAM, _id)
            return

        await handle_payload(payload, fix)

        # If everything succeeded: ACK and DELETE
        try:
            r.xack(FIX_STREAM, WORKER_GROUP, _id)
            r.xdel(FIX_STREAM, _id)
        except Exception as rexc:
            logger.exception(f"Failed to ack/xdel message {_id}: {rexc}")

    except Exception as e:
        # not acked: stays pending for this consumer and is re-read on the next start
        logger.exception(f"Error processing record ID {_id}: {e}")


async def read_stream(last_id: str, block=None):
    return await asyncio.get_event_loop().run_in_executor(
        None,
        r.xreadgroup,
        WORKER_GROUP,
        WORKER_CONSUMER,
        {FIX_STREAM: last_id},
        100,
        block,
    )


async def drain_pending() -> None:
    """Re-process messages delivered to this consumer but never acked."""
    seen = set()
    last_id = "0"
    while True:
        msgs = await read_stream(last_id)
        records = [rec for _, recs in msgs or [] for rec in recs if rec[0] not in seen]
        if not records:
            break
        logger.info(f"Re-processing {len(records)} pending records")
        for _id, fields in records:
            seen.add(_id)
            if fields:
                await process_record(_id, fields)
            else:
                # deleted from the stream while pending
                r.xack(FIX_STREAM, WORKER_GROUP, _id)
        last_id = records[-1][0]


# ---------- Main Worker Loop ----------
async def worker():
    logger.info("Worker starting, initializing consumer group...")
    await init_models()
    await init_group()
    await cleanup_old_data()
    await refill_trip_ids()
    await drain_pending()

    logger.info("Worker listening for Redis Stream messages...")

    try:
        while True:
            try:
                # Blocking read via executor (call will block the threadpool, not the event loop)
                msgs = await read_stream(">", block=5000)

                if msgs:
                    total = sum(len(rec[1]) for rec in msgs)
                    logger.info(f"Fetched {total} records from stream")

                for _, records in msgs or []:
                    for _id, fields in records:
                        await process_record(_id, fields)

            except Exception as e:
                logger.exception(f"Worker loop encountered an error: {e}")

            # small sleep to avoid tight loop in case of unexpected fast failures
            await asyncio.sleep(0.1)
    finally:
        await close_all()


if __name__ == "__main__":
    logger.info("Worker starting up...")
    asyncio.run(worker())
