import math

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius

MS_TO_KMH = 3.6
KNOTS_TO_MS = 0.514444


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in meters between two WGS84 points (degrees).
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def ms_to_kmh(speed_ms: float) -> float:
    return speed_ms * MS_TO_KMH


def knots_to_ms(speed_knots: float) -> float:
    return speed_knots * KNOTS_TO_MS
