# app/store.py
import datetime as dt
from collections import deque
from typing import Iterable, List, Optional

import asyncpg
from sqlalchemy import select, delete
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import retry, wait_exponential_jitter, stop_after_attempt, retry_if_exception_type

from crud import from_epoch_ms
from database import AsyncSessionLocal
from domain import (
    TrackPoint,
    TripEnded,
    TripEvent,
    TripPointRecorded,
    TripRecord,
    TripStarted,
    TripUpdated,
)
from geo import haversine_m
from models import Position, Trip, TRIP_ID_SEQ

from logging_config import get_logger


logger = get_logger("store", "store.log")

TRANSIENT_ERRORS = (DBAPIError, OperationalError, OSError, asyncpg.CannotConnectNowError)


def _ms(value) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _float(value) -> float:
    return float(value) if value is not None else 0.0


def position_to_point(row: Position) -> TrackPoint:
    return TrackPoint(
        trip_id=row.trip_id,
        latitude=float(row.lat),
        longitude=float(row.lon),
        speed_ms=row.speed_raw,
        speed_kmh=_float(row.speed_kmh),
        altitude=_float(row.altitude),
        bearing=row.bearing,
        accuracy=_float(row.accuracy),
        timestamp_ms=_ms(row.fix_time),
    )


def trip_to_record(trip: Trip, last_point: Optional[TrackPoint] = None) -> TripRecord:
    return TripRecord(
        trip_id=trip.id,
        start_time_ms=_ms(trip.start_time),
        end_time_ms=_ms(trip.end_time),
        distance_m=_float(trip.distance_m),
        max_speed_kmh=_float(trip.max_speed),
        avg_speed_kmh=_float(trip.average_speed),
        duration_ms=int(_float(trip.trip_duration) * 1000),
        active=bool(trip.active),
        point_count=trip.point_count or 0,
        moving_point_count=trip.moving_point_count or 0,
        last_point=last_point,
    )


def apply_stats(trip: Trip, record: TripRecord) -> None:
    trip.distance_m = record.distance_m
    trip.max_speed = record.max_speed_kmh
    trip.average_speed = record.avg_speed_kmh
    trip.trip_duration = record.duration_ms / 1000.0
    trip.point_count = record.point_count
    trip.moving_point_count = record.moving_point_count
    trip.active = record.active
    if record.end_time_ms is not None:
        trip.end_time = from_epoch_ms(record.end_time_ms)


class TripStore:
    """
    Persistence collaborator for the recorder: executes the intents it emits
    and answers the "active trip" question on startup.
    """

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    async def reserve_trip_id(self) -> int:
        async with self.session_factory() as db:
            trip_id = await db.scalar(select(TRIP_ID_SEQ.next_value()))
            logger.info(f"[store] Reserved trip id {trip_id}")
            return int(trip_id)

    # ------------------------------------------------------------------
    @retry(
        wait=wait_exponential_jitter(initial=2, max=30),
        stop=stop_after_attempt(7),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def apply(self, device_id: int, events: Iterable[TripEvent]) -> None:
        events = list(events)
        if not events:
            return

        async with self.session_factory() as db:
            for event in events:
                if isinstance(event, TripStarted):
                    db.add(Trip(
                        id=event.trip_id,
                        device_id=device_id,
                        start_time=from_epoch_ms(event.start_time_ms),
                        distance_m=0,
                        max_speed=0,
                        average_speed=0,
                        trip_duration=0,
                        point_count=0,
                        moving_point_count=0,
                        active=True,
                    ))
                    # trip row must exist before its positions
                    await db.flush()
                    logger.info(f"[store] Trip #{event.trip_id} created for device {device_id}")

                elif isinstance(event, TripPointRecorded):
                    pt = event.point
                    db.add(Position(
                        trip_id=event.trip_id,
                        device_id=device_id,
                        lat=pt.latitude,
                        lon=pt.longitude,
                        speed_raw=pt.speed_ms,
                        speed_kmh=pt.speed_kmh,
                        altitude=pt.altitude,
                        bearing=pt.bearing,
                        accuracy=pt.accuracy,
                        fix_time=from_epoch_ms(pt.timestamp_ms),
                    ))

                elif isinstance(event, (TripUpdated, TripEnded)):
                    record = event.record if isinstance(event, TripUpdated) else event.final_stats
                    if event.trip_id is None:
                        logger.warning(f"[store] Dropping {type(event).__name__} without trip id for device {device_id}")
                        continue
                    trip = await db.get(Trip, event.trip_id)
                    if trip is None:
                        logger.warning(f"[store] Trip #{event.trip_id} not found for {type(event).__name__}")
                        continue
                    apply_stats(trip, record)
                    if isinstance(event, TripEnded):
                        logger.info(
                            f"[store] Trip #{event.trip_id} finalized reason={event.reason} "
                            f"distance={record.distance_m:.0f}m duration={record.duration_ms // 1000}s"
                        )

            await db.commit()

    # ------------------------------------------------------------------
    async def get_active_trip(self, device_id: int) -> Optional[TripRecord]:
        """
        Active trip with statistics rebuilt from its stored positions (the
        trip row itself is only refreshed periodically).
        """
        async with self.session_factory() as db:
            q = await db.execute(
                select(Trip)
                .where(Trip.device_id == device_id, Trip.active.is_(True))
                .order_by(Trip.start_time.desc())
                .limit(1)
            )
            trip = q.scalar_one_or_none()
            if trip is None:
                return None

            pos_q = await db.execute(
                select(Position)
                .where(Position.trip_id == trip.id)
                .order_by(Position.fix_time.asc())
            )
            points = [position_to_point(p) for p in pos_q.scalars().all()]

        record = trip_to_record(trip, points[-1] if points else None)
        if not points:
            return record
        return rebuild_stats(record, points)

    # ------------------------------------------------------------------
    async def delete_older_than(self, cutoff: dt.datetime) -> None:
        async with self.session_factory() as db:
            # an active trip keeps all of its points, however old
            finished = select(Trip.id).where(Trip.active.is_(False))
            await db.execute(delete(Position).where(Position.fix_time < cutoff, Position.trip_id.in_(finished)))
            await db.execute(delete(Trip).where(Trip.start_time < cutoff, Trip.active.is_(False)))
            await db.commit()
        logger.info(f"[store] Cleaned data older than {cutoff.isoformat()}")

    async def trips_between(self, start: dt.datetime, end: dt.datetime) -> List[TripRecord]:
        async with self.session_factory() as db:
            q = await db.execute(
                select(Trip)
                .where(Trip.start_time >= start, Trip.start_time < end)
                .order_by(Trip.start_time)
            )
            return [trip_to_record(t) for t in q.scalars().all()]


def rebuild_stats(record: TripRecord, points: List[TrackPoint]) -> TripRecord:
    distance = 0.0
    for prev, cur in zip(points, points[1:]):
        distance += haversine_m(prev.latitude, prev.longitude, cur.latitude, cur.longitude)

    moving = [p.speed_kmh for p in points if p.speed_kmh > 0]
    return TripRecord(
        trip_id=record.trip_id,
        start_time_ms=record.start_time_ms,
        end_time_ms=record.end_time_ms,
        distance_m=distance,
        max_speed_kmh=max(p.speed_kmh for p in points),
        avg_speed_kmh=sum(moving) / len(moving) if moving else 0.0,
        duration_ms=max(0, points[-1].timestamp_ms - record.start_time_ms) if record.start_time_ms else 0,
        active=record.active,
        point_count=len(points),
        moving_point_count=len(moving),
        last_point=points[-1],
    )


class ReservedTripIds:
    """
    Synchronous trip id allocator for the recorder, fed ahead of time with
    ids reserved from the database sequence. An empty pool raises, which the
    state machine surfaces as TripAllocationError.
    """

    def __init__(self, store: TripStore, size: int = 1):
        self.store = store
        self.size = size
        self.ids = deque()

    async def refill(self) -> None:
        while len(self.ids) < self.size:
            self.ids.append(await self.store.reserve_trip_id())

    def __call__(self) -> int:
        if not self.ids:
            raise LookupError("no reserved trip id available")
        return self.ids.popleft()
