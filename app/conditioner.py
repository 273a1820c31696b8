# app/conditioner.py
from dataclasses import dataclass
from typing import Optional

from domain import ConditionedSpeed, RawFix, RejectReason, TrackPoint
from geo import haversine_m, ms_to_kmh
from variables import (
    ACCELERATION_FLOOR_KMH,
    MAX_ACCELERATION_KMH_PER_SEC,
    MAX_REALISTIC_SPEED_KMH,
    MAX_TIME_GAP_SEC,
    MIN_ACCURACY_METERS,
    MIN_DISTANCE_FOR_SPEED_M,
    MIN_TIME_GAP_SEC,
    SNAP_TO_ZERO_BELOW_KMH,
    SPEED_EMA_ALPHA,
)

from logging_config import get_logger


logger = get_logger("conditioner", "conditioner.log")


@dataclass(frozen=True)
class ConditionerParams:
    min_accuracy_m: float = MIN_ACCURACY_METERS
    min_distance_for_speed_m: float = MIN_DISTANCE_FOR_SPEED_M
    max_realistic_speed_kmh: float = MAX_REALISTIC_SPEED_KMH
    max_acceleration_kmh_per_sec: float = MAX_ACCELERATION_KMH_PER_SEC
    acceleration_floor_kmh: float = ACCELERATION_FLOOR_KMH
    ema_alpha: float = SPEED_EMA_ALPHA
    snap_to_zero_below_kmh: float = SNAP_TO_ZERO_BELOW_KMH
    min_time_gap_sec: float = MIN_TIME_GAP_SEC
    max_time_gap_sec: float = MAX_TIME_GAP_SEC


class SignalConditioner:
    """
    Turns raw fixes into a trusted speed.

    History (previous accepted fix, its raw speed and the smoothed speed) is
    only advanced by accepted fixes, so a glitch never becomes the reference
    point for the next calculation.
    """

    def __init__(self, params: Optional[ConditionerParams] = None):
        self.params = params or ConditionerParams()
        self.last_fix: Optional[RawFix] = None
        self.last_raw_speed = 0.0
        self.smoothed_speed = 0.0

    def reset(self) -> None:
        self.last_fix = None
        self.last_raw_speed = 0.0
        self.smoothed_speed = 0.0

    def resume_from(self, point: TrackPoint) -> None:
        """Continue after the last recorded point of a resumed trip."""
        self.last_fix = RawFix(
            latitude=point.latitude,
            longitude=point.longitude,
            accuracy=point.accuracy,
            timestamp_ms=point.timestamp_ms,
            speed_ms=point.speed_ms,
            bearing=point.bearing,
            altitude=point.altitude,
        )
        self.last_raw_speed = point.speed_kmh
        self.smoothed_speed = point.speed_kmh
        logger.info(
            f"[conditioner] Seeded from last point t={point.timestamp_ms} speed={point.speed_kmh:.1f} km/h"
        )

    # ------------------------------------------------------------------
    def condition(self, fix: RawFix) -> ConditionedSpeed:
        p = self.params

        # ------------------------------
        # 1. Accuracy gate
        # ------------------------------
        if fix.accuracy > p.min_accuracy_m:
            logger.debug(f"[conditioner] Low accuracy fix rejected: {fix.accuracy:.0f}m > {p.min_accuracy_m:.0f}m")
            return ConditionedSpeed.rejected(fix, RejectReason.LOW_ACCURACY, self.smoothed_speed)

        prev = self.last_fix
        if prev is not None and fix.timestamp_ms <= prev.timestamp_ms:
            logger.info(
                f"[conditioner] Out-of-order fix rejected: t={fix.timestamp_ms} <= previous t={prev.timestamp_ms}"
            )
            return ConditionedSpeed.rejected(fix, RejectReason.OUT_OF_ORDER, self.smoothed_speed)

        dt_s = (fix.timestamp_ms - prev.timestamp_ms) / 1000.0 if prev is not None else None

        # ------------------------------
        # 2. Raw speed
        # ------------------------------
        raw_kmh = self._raw_speed(fix, prev, dt_s)

        # ------------------------------
        # 3. Glitch ceiling
        # ------------------------------
        if raw_kmh > p.max_realistic_speed_kmh:
            logger.warning(
                f"[conditioner] Ignoring unrealistic speed: {raw_kmh:.1f} km/h (max: {p.max_realistic_speed_kmh:.0f})"
            )
            return ConditionedSpeed.rejected(fix, RejectReason.UNREALISTIC_SPEED, self.smoothed_speed)

        # ------------------------------
        # 4. Acceleration limiter
        # ------------------------------
        if dt_s is not None and raw_kmh > 0:
            max_allowed = self.last_raw_speed + p.max_acceleration_kmh_per_sec * dt_s
            if raw_kmh > max_allowed and raw_kmh > p.acceleration_floor_kmh:
                logger.warning(
                    f"[conditioner] Acceleration spike rejected: {raw_kmh:.1f} km/h "
                    f"(max allowed: {max_allowed:.1f} km/h, prev: {self.last_raw_speed:.1f} km/h, dt: {dt_s:.1f}s)"
                )
                return ConditionedSpeed.rejected(fix, RejectReason.ACCELERATION_SPIKE, self.smoothed_speed)

        # ------------------------------
        # 5. Advance history
        # ------------------------------
        self.last_fix = fix
        self.last_raw_speed = raw_kmh

        # ------------------------------
        # 6. Smoothing
        # ------------------------------
        self.smoothed_speed = self._smooth(raw_kmh)

        return ConditionedSpeed(
            value=self.smoothed_speed,
            raw_value=raw_kmh,
            accepted=True,
            timestamp_ms=fix.timestamp_ms,
        )

    # ------------------------------------------------------------------
    def _raw_speed(self, fix: RawFix, prev: Optional[RawFix], dt_s: Optional[float]) -> float:
        p = self.params

        if fix.speed_ms is not None and fix.speed_ms > 0:
            return ms_to_kmh(fix.speed_ms)

        if prev is None:
            logger.debug("[conditioner] No previous fix for speed calculation")
            return 0.0

        if not (p.min_time_gap_sec <= dt_s <= p.max_time_gap_sec):
            logger.debug(f"[conditioner] Time gap too large/small for speed calc: {dt_s:.1f}s")
            return 0.0

        distance_m = haversine_m(prev.latitude, prev.longitude, fix.latitude, fix.longitude)
        # positions bounce inside their own accuracy circle while stationary
        min_distance = max(p.min_distance_for_speed_m, fix.accuracy)
        if distance_m < min_distance:
            logger.debug(f"[conditioner] GPS jitter filtered: dist={distance_m:.1f}m < min={min_distance:.1f}m")
            return 0.0

        return ms_to_kmh(distance_m / dt_s)

    def _smooth(self, raw_kmh: float) -> float:
        p = self.params
        previous = self.smoothed_speed

        if previous == 0 and raw_kmh > 0:
            return raw_kmh
        if raw_kmh == 0 and previous < p.snap_to_zero_below_kmh:
            return 0.0
        return p.ema_alpha * raw_kmh + (1.0 - p.ema_alpha) * previous
