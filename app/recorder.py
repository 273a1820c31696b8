# app/recorder.py
from typing import Callable, List, Optional

from conditioner import ConditionerParams, SignalConditioner
from domain import (
    ConditionedSpeed,
    FixResult,
    Position,
    Provider,
    RawFix,
    RejectReason,
    TripEvent,
    TripRecord,
    TripState,
)
from trip_machine import TripParams, TripStateMachine
from variables import SECONDARY_POSITION_STALE_MS

from logging_config import get_logger


logger = get_logger("recorder", "recorder.log")


class TripRecorder:
    """
    One recorder per device. Fixes are processed one at a time:
    conditioner first, then the trip state machine.

    Only primary-provider fixes reach trip logic. Secondary fixes refresh the
    last known position when no primary fix was seen recently.
    Not thread-safe; callers serialize access.
    """

    def __init__(
        self,
        allocate_trip_id: Callable[[], int],
        conditioner_params: Optional[ConditionerParams] = None,
        trip_params: Optional[TripParams] = None,
        device_id: Optional[int] = None,
    ):
        self.device_id = device_id
        self.conditioner = SignalConditioner(conditioner_params)
        self.machine = TripStateMachine(allocate_trip_id, trip_params)
        self.last_position: Optional[Position] = None
        self.last_primary_ms: Optional[int] = None

    # ----- read-only views for observers -----
    @property
    def state(self) -> TripState:
        return self.machine.state

    @property
    def trip_id(self) -> Optional[int]:
        return self.machine.trip_id

    @property
    def current_speed_kmh(self) -> float:
        return self.conditioner.smoothed_speed

    def snapshot(self) -> Optional[TripRecord]:
        return self.machine.snapshot()

    # =====================================================================
    # processFix
    # =====================================================================
    def process_fix(self, fix: RawFix) -> FixResult:
        if fix.provider is not Provider.PRIMARY:
            self._update_secondary_position(fix)
            return FixResult(
                conditioned=ConditionedSpeed.rejected(
                    fix, RejectReason.SECONDARY_PROVIDER, self.conditioner.smoothed_speed
                ),
                accepted=False,
                position=self.last_position,
            )

        # map position follows every primary fix, accepted or not
        self.last_position = Position(fix.latitude, fix.longitude)
        self.last_primary_ms = fix.timestamp_ms

        conditioned = self.conditioner.condition(fix)
        if not conditioned.accepted:
            return FixResult(conditioned=conditioned, accepted=False, position=self.last_position)

        events = self.machine.on_fix(fix, conditioned)
        return FixResult(
            conditioned=conditioned,
            accepted=True,
            events=events,
            position=self.last_position,
        )

    def _update_secondary_position(self, fix: RawFix) -> None:
        if self.last_primary_ms is None or fix.timestamp_ms - self.last_primary_ms > SECONDARY_POSITION_STALE_MS:
            self.last_position = Position(fix.latitude, fix.longitude)
            logger.debug(
                f"[recorder] Device {self.device_id}: secondary location for map only "
                f"{fix.latitude}, {fix.longitude} (accuracy={fix.accuracy}m)"
            )

    # =====================================================================
    # resumeActiveTrip / shutdown
    # =====================================================================
    def resume_active_trip(self, record: TripRecord) -> None:
        """
        Adopt a trip still marked active (after a restart). Raises
        CorruptTripRecordError, carrying the closing TripEnded, when the record
        cannot be resumed.
        """
        self.machine.resume(record)
        if record.last_point is not None:
            # next fix derives its speed against the last recorded point
            self.conditioner.resume_from(record.last_point)
            self.last_position = Position(record.last_point.latitude, record.last_point.longitude)
            self.last_primary_ms = record.last_point.timestamp_ms

    def shutdown(self, now_ms: Optional[int] = None) -> List[TripEvent]:
        events = self.machine.close(now_ms, reason="shutdown")
        if events:
            logger.info(f"[recorder] Device {self.device_id}: closed trip on shutdown")
        return events
