import pytest

from geo import haversine_m, knots_to_ms, ms_to_kmh


def test_same_point_is_zero() -> None:
    assert haversine_m(48.8584, 2.2945, 48.8584, 2.2945) == 0.0


def test_known_distance_eiffel_to_arc() -> None:
    d = haversine_m(48.8584, 2.2945, 48.8738, 2.2950)
    assert d == pytest.approx(1713, abs=20)


def test_symmetry() -> None:
    a = haversine_m(6.5244, 3.3792, 9.0765, 7.3986)
    b = haversine_m(9.0765, 7.3986, 6.5244, 3.3792)
    assert a == pytest.approx(b)
    assert 500_000 < a < 600_000


def test_unit_conversions() -> None:
    assert ms_to_kmh(10.0) == pytest.approx(36.0)
    assert knots_to_ms(1.0) == pytest.approx(0.514444)
