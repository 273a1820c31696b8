# app/trip_machine.py
from dataclasses import dataclass
from typing import Callable, List, Optional

from domain import (
    ConditionedSpeed,
    CorruptTripRecordError,
    Position,
    RawFix,
    TrackPoint,
    TripAllocationError,
    TripEnded,
    TripEvent,
    TripPointRecorded,
    TripRecord,
    TripSession,
    TripStarted,
    TripState,
    TripUpdated,
)
from geo import haversine_m
from variables import (
    INSTANT_START_THRESHOLD_KMH,
    PARKING_SPEED_THRESHOLD_KMH,
    PARKING_TIMEOUT_MS,
    REQUIRED_MOVING_COUNT,
    TRIP_UPDATE_EVERY_POINTS,
)

from logging_config import get_logger


logger = get_logger("trip", "trip.log")


@dataclass(frozen=True)
class TripParams:
    parking_speed_threshold_kmh: float = PARKING_SPEED_THRESHOLD_KMH
    required_moving_count: int = REQUIRED_MOVING_COUNT
    parking_timeout_ms: int = PARKING_TIMEOUT_MS
    instant_start_threshold_kmh: Optional[float] = INSTANT_START_THRESHOLD_KMH
    update_every_points: int = TRIP_UPDATE_EVERY_POINTS


class TripStateMachine:
    """
    Parked / Driving decisions over conditioned speeds.

    `allocate_trip_id` is called synchronously when a trip starts; whatever it
    raises is surfaced as TripAllocationError and the machine stays Parked.
    """

    def __init__(self, allocate_trip_id: Callable[[], int], params: Optional[TripParams] = None):
        self.allocate_trip_id = allocate_trip_id
        self.params = params or TripParams()
        self.state = TripState.PARKED
        self.session: Optional[TripSession] = None
        self.consecutive_moving = 0

    @property
    def trip_id(self) -> Optional[int]:
        return self.session.trip_id if self.session else None

    def snapshot(self) -> Optional[TripRecord]:
        return self.session.to_record() if self.session else None

    # =====================================================================
    # Per-fix decision
    # =====================================================================
    def on_fix(self, fix: RawFix, speed: ConditionedSpeed) -> List[TripEvent]:
        if not speed.accepted:
            return []

        if self.state is TripState.DRIVING:
            return self._while_driving(fix, speed)
        return self._while_parked(fix, speed)

    def _while_parked(self, fix: RawFix, speed: ConditionedSpeed) -> List[TripEvent]:
        p = self.params

        if speed.value < p.parking_speed_threshold_kmh:
            if self.consecutive_moving > 0:
                logger.debug(f"[trip] Movement reset: smoothed speed dropped to {speed.value:.1f} km/h")
            self.consecutive_moving = 0
            return []

        self.consecutive_moving += 1
        logger.debug(
            f"[trip] Movement detected: smoothed={speed.value:.1f} km/h raw={speed.raw_value:.1f} km/h "
            f"(count: {self.consecutive_moving}/{p.required_moving_count})"
        )

        instant = (
            p.instant_start_threshold_kmh is not None
            and speed.value >= p.instant_start_threshold_kmh
        )
        if self.consecutive_moving < p.required_moving_count and not instant:
            return []

        return self._start_trip(fix, speed)

    def _while_driving(self, fix: RawFix, speed: ConditionedSpeed) -> List[TripEvent]:
        p = self.params
        session = self.session

        if speed.value < p.parking_speed_threshold_kmh:
            if session.stationary_since_ms is None:
                session.stationary_since_ms = fix.timestamp_ms
                logger.debug(f"[trip] Stationary timer started (smoothed={speed.value:.1f} km/h)")
            else:
                elapsed = fix.timestamp_ms - session.stationary_since_ms
                if elapsed >= p.parking_timeout_ms:
                    logger.info(f"[trip] Parking timeout reached ({elapsed}ms) - ending trip #{session.trip_id}")
                    return [self._end_trip(fix.timestamp_ms, "parked")]
                logger.debug(f"[trip] Stationary for {elapsed // 1000}s / {p.parking_timeout_ms // 1000}s")
        else:
            if session.stationary_since_ms is not None:
                logger.debug(f"[trip] Movement resumed - stationary timer reset (smoothed={speed.value:.1f} km/h)")
            session.stationary_since_ms = None

        return self._record_point(fix, speed.raw_value)

    # =====================================================================
    # Trip create / record / close
    # =====================================================================
    def _start_trip(self, fix: RawFix, speed: ConditionedSpeed) -> List[TripEvent]:
        try:
            trip_id = self.allocate_trip_id()
        except Exception as e:
            # counter is kept so the next qualifying fix retries
            logger.warning(f"[trip] Could not allocate a trip id, staying parked: {e}")
            raise TripAllocationError(str(e)) from e

        self.state = TripState.DRIVING
        self.consecutive_moving = 0
        self.session = TripSession(trip_id=trip_id, start_time_ms=fix.timestamp_ms)

        logger.info(f"[trip] Starting trip #{trip_id} at speed: {speed.raw_value:.1f} km/h")

        started = TripStarted(
            trip_id=trip_id,
            start_time_ms=fix.timestamp_ms,
            start_position=Position(fix.latitude, fix.longitude),
        )
        return [started] + self._record_point(fix, speed.raw_value)

    def _record_point(self, fix: RawFix, speed_kmh: float) -> List[TripEvent]:
        session = self.session
        point = TrackPoint.from_fix(session.trip_id, fix, speed_kmh)

        if session.last_point is not None:
            session.distance_m += haversine_m(
                session.last_point.latitude, session.last_point.longitude,
                point.latitude, point.longitude,
            )
        session.last_point = point
        session.point_count += 1
        session.max_speed_kmh = max(session.max_speed_kmh, speed_kmh)
        if speed_kmh > 0:
            session.speed_sum_kmh += speed_kmh
            session.moving_point_count += 1

        events: List[TripEvent] = [TripPointRecorded(trip_id=session.trip_id, point=point)]
        if session.point_count % self.params.update_every_points == 0:
            events.append(TripUpdated(trip_id=session.trip_id, record=session.to_record(fix.timestamp_ms)))
        return events

    def _end_trip(self, now_ms: int, reason: str) -> TripEnded:
        session = self.session
        record = session.to_record(now_ms).finalized(now_ms)

        self.state = TripState.PARKED
        self.session = None
        self.consecutive_moving = 0

        logger.info(
            f"[trip] Ended trip id={record.trip_id} reason={reason} distance={record.distance_m:.0f}m "
            f"duration={record.duration_ms // 1000}s max_speed={record.max_speed_kmh:.1f} "
            f"avg_speed={record.avg_speed_kmh:.1f} points={record.point_count}"
        )
        return TripEnded(trip_id=record.trip_id, final_stats=record, reason=reason)

    def close(self, now_ms: Optional[int] = None, reason: str = "shutdown") -> List[TripEvent]:
        """Force-close the active trip, e.g. when the process stops."""
        if self.session is None:
            return []
        if now_ms is None:
            last = self.session.last_point
            now_ms = last.timestamp_ms if last else self.session.start_time_ms
        return [self._end_trip(now_ms, reason)]

    # =====================================================================
    # Resume after restart
    # =====================================================================
    def resume(self, record: TripRecord) -> None:
        if record.trip_id is None or record.start_time_ms is None:
            end_ms = record.last_point.timestamp_ms if record.last_point else (record.start_time_ms or 0)
            closed = record.finalized(end_ms)
            ended = TripEnded(trip_id=record.trip_id, final_stats=closed, reason="corrupt")
            logger.warning(f"[trip] Active trip record {record.trip_id} is corrupt, closing it instead of resuming")
            raise CorruptTripRecordError(record, ended, f"trip {record.trip_id} has no id or start time")

        if self.session is not None:
            logger.warning(f"[trip] Resume of #{record.trip_id} replaces open trip #{self.session.trip_id}")

        self.session = TripSession(
            trip_id=record.trip_id,
            start_time_ms=record.start_time_ms,
            distance_m=record.distance_m,
            point_count=record.point_count,
            moving_point_count=record.moving_point_count,
            speed_sum_kmh=record.avg_speed_kmh * record.moving_point_count,
            max_speed_kmh=record.max_speed_kmh,
            last_point=record.last_point,
        )
        self.state = TripState.DRIVING
        self.consecutive_moving = 0

        logger.info(
            f"[trip] Resumed trip #{record.trip_id} distance={record.distance_m:.0f}m points={record.point_count}"
        )
