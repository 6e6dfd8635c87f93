import logging
import math
from typing import Any, Dict, List, Optional

from ..errors import GeoFormatError, ValidationError

log = logging.getLogger("uvicorn.error")


def _coord(v: Any) -> Optional[float]:
    if isinstance(v, bool) or v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def sanitize_point(raw: Any) -> Optional[Dict[str, Any]]:
    """Return a GeoJSON point for `raw`, or None when its coordinates are unusable.

    Coordinates are [longitude, latitude]. Out-of-range or non-numeric points are
    never replaced with a default position.
    """
    if not isinstance(raw, dict):
        return None
    coords = raw.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None
    lon, lat = _coord(coords[0]), _coord(coords[1])
    if lon is None or lat is None:
        return None
    if not (-180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0):
        return None
    return {
        "type": "Point",
        "coordinates": [lon, lat],
        "name": str(raw.get("name") or "Unnamed Location").strip(),
        "isUniversity": bool(raw.get("isUniversity")),
    }


def sanitize_locations(raw: Any) -> List[Dict[str, Any]]:
    if raw is None or raw == []:
        raise ValidationError("At least one location is required")
    if not isinstance(raw, list):
        raise GeoFormatError("locations must be a list of points")
    points = []
    for item in raw:
        p = sanitize_point(item)
        if p is None:
            log.warning("Dropping invalid location: %r", item)
            continue
        points.append(p)
    if not points:
        raise GeoFormatError("Location coordinates must be valid numbers within longitude/latitude ranges")
    return points
