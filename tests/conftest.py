import itertools
import math
import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
APP = ROOT / "app"

if str(APP) not in sys.path:
    sys.path.insert(0, str(APP))

os.environ.setdefault("LOG_DIR", str(Path(tempfile.gettempdir()) / "trip-recorder-logs"))

import pytest  # noqa: E402

from domain import ConditionedSpeed, Provider, RawFix  # noqa: E402

BASE_LAT = 48.8566
BASE_LON = 2.3522
METERS_PER_DEG_LAT = 6_371_000.0 * math.pi / 180.0


def lat_at(meters_north: float) -> float:
    return BASE_LAT + meters_north / METERS_PER_DEG_LAT


@pytest.fixture
def make_fix():
    """Fix `meters` north of a fixed origin; speed given in km/h for readability."""

    def _make(t_ms, meters=0.0, speed_kmh=None, accuracy=5.0, provider=Provider.PRIMARY, lon=BASE_LON):
        return RawFix(
            latitude=lat_at(meters),
            longitude=lon,
            accuracy=accuracy,
            timestamp_ms=t_ms,
            speed_ms=speed_kmh / 3.6 if speed_kmh is not None else None,
            bearing=0.0,
            altitude=35.0,
            provider=provider,
        )

    return _make


@pytest.fixture
def reading():
    def _reading(value, t_ms, raw=None):
        return ConditionedSpeed(
            value=value,
            raw_value=value if raw is None else raw,
            accepted=True,
            timestamp_ms=t_ms,
        )

    return _reading


@pytest.fixture
def trip_ids():
    counter = itertools.count(1)
    return lambda: next(counter)
