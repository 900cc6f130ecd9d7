import math
from typing import Optional

from courier_dispatch.domain.models import Location

EARTH_RADIUS_KM = 6371.0


def _coordinates(point) -> Optional[tuple[float, float]]:
    if point is None:
        return None
    if isinstance(point, Location):
        lat, lon = point.latitude, point.longitude
    else:
        try:
            lat, lon = point
        except (TypeError, ValueError):
            return None
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return None
    return lat, lon


def distance_km(a, b) -> Optional[float]:
    """Расстояние по большой окружности (Haversine) в километрах.

    Принимает пары (lat, lon) или Location. Если координаты неизвестны или
    не конечны, возвращает None вместо исключения.
    """
    start = _coordinates(a)
    end = _coordinates(b)
    if start is None or end is None:
        return None

    lat1, lon1 = map(math.radians, start)
    lat2, lon2 = map(math.radians, end)
    d_lat = lat2 - lat1
    d_lon = lon2 - lon1

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    h = min(h, 1.0)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c
