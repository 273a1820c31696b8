import random

import pytest

from conditioner import ConditionerParams, SignalConditioner
from domain import RejectReason


def test_low_accuracy_fix_is_rejected_without_touching_history(make_fix) -> None:
    c = SignalConditioner()
    result = c.condition(make_fix(0, accuracy=48.0, speed_kmh=50))

    assert not result.accepted
    assert result.reason is RejectReason.LOW_ACCURACY
    assert c.last_fix is None
    assert c.smoothed_speed == 0.0


def test_device_speed_is_used_when_positive(make_fix) -> None:
    c = SignalConditioner()
    result = c.condition(make_fix(0, speed_kmh=36.0))

    assert result.accepted
    assert result.raw_value == pytest.approx(36.0)
    # first nonzero reading snaps straight to the raw value
    assert result.value == pytest.approx(36.0)


def test_first_fix_without_device_speed_is_zero(make_fix) -> None:
    c = SignalConditioner()
    result = c.condition(make_fix(0))
    assert result.accepted
    assert result.raw_value == 0.0


def test_distance_based_speed(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, meters=0))
    result = c.condition(make_fix(2000, meters=20))

    # 20 m in 2 s = 36 km/h
    assert result.raw_value == pytest.approx(36.0, rel=1e-3)


def test_distance_speed_needs_more_than_accuracy_radius(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, meters=0, accuracy=25.0))
    result = c.condition(make_fix(2000, meters=20, accuracy=25.0))

    assert result.accepted
    assert result.raw_value == 0.0


@pytest.mark.parametrize("gap_ms", [400, 31_000])
def test_implausible_time_gap_gives_zero_speed(make_fix, gap_ms) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, meters=0))
    result = c.condition(make_fix(gap_ms, meters=15))

    assert result.accepted
    assert result.raw_value == 0.0


def test_jitter_at_fixed_position_never_produces_speed(make_fix) -> None:
    rng = random.Random(42)
    eps = 10.0
    c = SignalConditioner()

    for i in range(200):
        # each fix within eps/2 of the origin: consecutive fixes stay within eps
        north = rng.uniform(-eps / 2, eps / 2) * 0.99
        result = c.condition(make_fix(i * 1000, meters=north, accuracy=eps))
        assert result.accepted
        assert result.raw_value == 0.0
        assert result.value == 0.0


def test_glitch_is_rejected_and_reference_point_kept(make_fix) -> None:
    c = SignalConditioner()
    good = make_fix(0, meters=0)
    c.condition(good)

    # 100 m in 1 s = 360 km/h
    glitch = c.condition(make_fix(1000, meters=100))
    assert not glitch.accepted
    assert glitch.reason is RejectReason.UNREALISTIC_SPEED
    assert c.last_fix == good

    # speed of the next fix is measured from the last good fix
    nxt = c.condition(make_fix(2000, meters=20))
    assert nxt.accepted
    assert nxt.raw_value == pytest.approx(36.0, rel=1e-3)


def test_acceleration_spike_is_rejected(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, speed_kmh=50))

    spike = c.condition(make_fix(1000, speed_kmh=150))
    assert not spike.accepted
    assert spike.reason is RejectReason.ACCELERATION_SPIKE
    assert c.last_raw_speed == pytest.approx(50.0)


def test_acceleration_within_limit_is_accepted(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, speed_kmh=50))

    # 50 + 20 km/h/s * 1 s = 70
    result = c.condition(make_fix(1000, speed_kmh=65))
    assert result.accepted

    c = SignalConditioner()
    c.condition(make_fix(0, speed_kmh=0.0))
    # 0 -> 60 km/h in 5 s is allowed up to 100
    assert c.condition(make_fix(5000, speed_kmh=60)).accepted


def test_acceleration_floor_protects_low_speeds(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0))
    # above 0 + 20*1 but under the 30 km/h floor
    result = c.condition(make_fix(1000, speed_kmh=25))
    assert result.accepted


def test_out_of_order_fix_is_rejected(make_fix) -> None:
    c = SignalConditioner()
    first = make_fix(5000, speed_kmh=20)
    c.condition(first)

    for t in (5000, 4000):
        result = c.condition(make_fix(t, speed_kmh=22))
        assert not result.accepted
        assert result.reason is RejectReason.OUT_OF_ORDER
    assert c.last_fix == first


def test_ema_smoothing() -> None:
    c = SignalConditioner(ConditionerParams(ema_alpha=0.4))
    c.smoothed_speed = 60.0
    assert c._smooth(100.0) == pytest.approx(0.4 * 100 + 0.6 * 60)


def test_smoothing_snaps_to_zero_when_nearly_stopped(make_fix) -> None:
    c = SignalConditioner()
    c.condition(make_fix(0, speed_kmh=10))
    values = [c.condition(make_fix(1000 * i)).value for i in range(1, 10)]

    # 10 -> 6 -> 3.6 -> 2.16 -> 1.296 -> snap
    assert values[0] == pytest.approx(6.0)
    assert 0.0 in values
    first_zero = values.index(0.0)
    assert values[first_zero - 1] < 2.0
    assert all(v == 0.0 for v in values[first_zero:])


def test_smoothing_converges_to_constant_input() -> None:
    c = SignalConditioner(ConditionerParams(ema_alpha=0.45))
    c.smoothed_speed = 50.0
    for _ in range(20):
        c.smoothed_speed = c._smooth(100.0)
    assert c.smoothed_speed > 99.0
