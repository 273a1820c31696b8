"""
Value types shared by the conditioner, the trip state machine and the
persistence layer.

Timestamps are epoch milliseconds, speeds on RawFix are m/s (device units),
every other speed is km/h.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Union


class Provider(str, Enum):
    PRIMARY = "primary"      # satellite fix, feeds trip logic
    SECONDARY = "secondary"  # network/cell fix, last known position only


class RejectReason(str, Enum):
    LOW_ACCURACY = "low_accuracy"
    OUT_OF_ORDER = "out_of_order"
    UNREALISTIC_SPEED = "unrealistic_speed"
    ACCELERATION_SPIKE = "acceleration_spike"
    SECONDARY_PROVIDER = "secondary_provider"


class TripState(str, Enum):
    PARKED = "parked"
    DRIVING = "driving"


@dataclass(frozen=True)
class RawFix:
    latitude: float
    longitude: float
    accuracy: float
    timestamp_ms: int
    speed_ms: Optional[float] = None
    bearing: Optional[float] = None
    altitude: float = 0.0
    provider: Provider = Provider.PRIMARY


@dataclass(frozen=True)
class ConditionedSpeed:
    value: float          # smoothed km/h
    raw_value: float      # unsmoothed km/h
    accepted: bool
    timestamp_ms: int
    reason: Optional[RejectReason] = None

    @classmethod
    def rejected(cls, fix: RawFix, reason: RejectReason, previous: float = 0.0) -> "ConditionedSpeed":
        return cls(value=previous, raw_value=0.0, accepted=False, timestamp_ms=fix.timestamp_ms, reason=reason)


@dataclass(frozen=True)
class Position:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class TrackPoint:
    trip_id: int
    latitude: float
    longitude: float
    speed_ms: Optional[float]   # device reported
    speed_kmh: float            # conditioned raw speed
    altitude: float
    bearing: Optional[float]
    accuracy: float
    timestamp_ms: int

    @classmethod
    def from_fix(cls, trip_id: int, fix: RawFix, speed_kmh: float) -> "TrackPoint":
        return cls(
            trip_id=trip_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            speed_ms=fix.speed_ms,
            speed_kmh=speed_kmh,
            altitude=fix.altitude,
            bearing=fix.bearing,
            accuracy=fix.accuracy,
            timestamp_ms=fix.timestamp_ms,
        )


@dataclass(frozen=True)
class TripRecord:
    """
    Persisted view of a trip. `avg_speed_kmh` is the mean raw speed of the
    recorded points with speed > 0 (average moving speed); `moving_point_count`
    is how many points went into it.
    """
    trip_id: Optional[int]
    start_time_ms: Optional[int]
    end_time_ms: Optional[int] = None
    distance_m: float = 0.0
    max_speed_kmh: float = 0.0
    avg_speed_kmh: float = 0.0
    duration_ms: int = 0
    active: bool = True
    point_count: int = 0
    moving_point_count: int = 0
    last_point: Optional[TrackPoint] = None

    def finalized(self, end_time_ms: int) -> "TripRecord":
        start = self.start_time_ms if self.start_time_ms is not None else end_time_ms
        return replace(
            self,
            end_time_ms=end_time_ms,
            duration_ms=max(0, end_time_ms - start),
            active=False,
        )


@dataclass
class TripSession:
    """Mutable accumulators of the trip being driven."""
    trip_id: int
    start_time_ms: int
    distance_m: float = 0.0
    point_count: int = 0
    moving_point_count: int = 0
    speed_sum_kmh: float = 0.0
    max_speed_kmh: float = 0.0
    last_point: Optional[TrackPoint] = None
    stationary_since_ms: Optional[int] = None

    @property
    def avg_speed_kmh(self) -> float:
        if self.moving_point_count == 0:
            return 0.0
        return self.speed_sum_kmh / self.moving_point_count

    def to_record(self, now_ms: Optional[int] = None) -> TripRecord:
        now_ms = now_ms if now_ms is not None else (
            self.last_point.timestamp_ms if self.last_point else self.start_time_ms
        )
        return TripRecord(
            trip_id=self.trip_id,
            start_time_ms=self.start_time_ms,
            distance_m=self.distance_m,
            max_speed_kmh=self.max_speed_kmh,
            avg_speed_kmh=self.avg_speed_kmh,
            duration_ms=max(0, now_ms - self.start_time_ms),
            active=True,
            point_count=self.point_count,
            moving_point_count=self.moving_point_count,
            last_point=self.last_point,
        )


# ----- events emitted by the recorder -----

@dataclass(frozen=True)
class TripStarted:
    trip_id: int
    start_time_ms: int
    start_position: Position


@dataclass(frozen=True)
class TripPointRecorded:
    trip_id: int
    point: TrackPoint


@dataclass(frozen=True)
class TripUpdated:
    trip_id: int
    record: TripRecord


@dataclass(frozen=True)
class TripEnded:
    trip_id: Optional[int]
    final_stats: TripRecord
    reason: str = "parked"   # parked / shutdown / corrupt


TripEvent = Union[TripStarted, TripPointRecorded, TripUpdated, TripEnded]


@dataclass
class FixResult:
    conditioned: Optional[ConditionedSpeed]
    accepted: bool
    events: List[TripEvent] = field(default_factory=list)
    position: Optional[Position] = None

    @property
    def conditioned_speed(self) -> float:
        return self.conditioned.value if self.conditioned else 0.0


# ----- errors -----

class TripRecorderError(Exception):
    pass


class TripAllocationError(TripRecorderError):
    """The persistence collaborator could not hand out a trip id."""


class CorruptTripRecordError(TripRecorderError):
    """An active trip record cannot be resumed; `ended` closes it."""

    def __init__(self, record: TripRecord, ended: TripEnded, message: str):
        super().__init__(message)
        self.record = record
        self.ended = ended
