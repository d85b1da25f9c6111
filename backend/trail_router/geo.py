from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def initial_bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compass bearing from point 1 to point 2, clockwise from true north in [0, 360)."""
    if abs(lat2 - lat1) <= 1e-12 and abs(lon2 - lon1) <= 1e-12:
        return 0.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)
    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def heading_delta_deg(a: float, b: float) -> float:
    diff = abs(float(a) - float(b)) % 360.0
    return min(diff, 360.0 - diff)


def grid_key(lat: float, lon: float, bucket_deg: float) -> tuple[int, int]:
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def ring_offsets(radius: int) -> tuple[tuple[int, int], ...]:
    if radius <= 0:
        return ((0, 0),)
    offsets: list[tuple[int, int]] = []
    for dx in range(-radius, radius + 1):
        offsets.append((dx, -radius))
        offsets.append((dx, radius))
    for dy in range(-radius + 1, radius):
        offsets.append((-radius, dy))
        offsets.append((radius, dy))
    return tuple(offsets)


def evenly_spaced_bearings(count: int, *, offset_deg: float = 0.0) -> tuple[float, ...]:
    n = max(1, int(count))
    step = 360.0 / n
    return tuple(round((float(offset_deg) + idx * step) % 360.0, 6) for idx in range(n))
