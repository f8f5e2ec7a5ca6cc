"""
Pickup zone resolution.

Assigns a coordinate to a pickup zone using a ray-casting point-in-polygon
test. Zones are checked in a fixed priority order and the first polygon
that contains the point wins, so overlapping border areas always resolve
to the same zone.

Polygons follow GeoJSON ordering: each vertex is [lng, lat].
"""
import json
import re
from datetime import time
from pathlib import Path
from typing import Iterable, Optional

from errors import ValidationError


# Resolution priority used when seeding zones without an explicit order
ZONE_PRIORITY = ["azure", "pink", "green", "yellow"]

# "@18.7883,98.9853" as found in Google Maps place links
MAP_LINK_GPS_PATTERN = re.compile(r"@(-?\d+\.\d+),(-?\d+\.\d+)")


def is_point_in_polygon(lat: float, lng: float, ring: list) -> bool:
    """
    Ray-casting containment test.

    Casts a horizontal ray from the point and counts edge crossings; the
    point is inside iff the count is odd. Points exactly on an edge or
    vertex get whatever the parity test yields.

    Args:
        lat: Latitude of the point
        lng: Longitude of the point
        ring: Polygon vertices as [lng, lat] pairs (closing vertex optional)

    Returns:
        True if the point is inside the polygon
    """
    x, y = lng, lat
    inside = False

    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]

        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i

    return inside


def validate_polygon(ring) -> list:
    """
    Validate and normalise a polygon ring.

    Returns:
        The ring as a list of [lng, lat] float pairs

    Raises:
        ValidationError: malformed vertices or fewer than 3 distinct vertices
    """
    if not isinstance(ring, (list, tuple)):
        raise ValidationError("Polygon must be a list of [lng, lat] vertices")

    normalised = []
    for vertex in ring:
        if not isinstance(vertex, (list, tuple)) or len(vertex) < 2:
            raise ValidationError(f"Invalid polygon vertex: {vertex!r}")
        try:
            lng, lat = float(vertex[0]), float(vertex[1])
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid polygon vertex: {vertex!r}")
        if not (-180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0):
            raise ValidationError(f"Polygon vertex out of range: {vertex!r}")
        normalised.append([lng, lat])

    distinct = {(v[0], v[1]) for v in normalised}
    if len(distinct) < 3:
        raise ValidationError("Polygon needs at least 3 distinct vertices")

    return normalised


def resolve_zone(lat: float, lng: float, zones: Iterable) -> Optional[str]:
    """
    Find the first zone (in priority order) containing the point.

    Args:
        lat: Latitude
        lng: Longitude
        zones: Zones already sorted by priority; each has .id and .polygon

    Returns:
        The zone id, or None if no zone contains the point
    """
    for zone in zones:
        if is_point_in_polygon(lat, lng, zone.polygon):
            return zone.id
    return None


def extract_gps(map_link: str) -> Optional[tuple[float, float]]:
    """
    Pull (lat, lng) out of a Google Maps link.

    Example:
        https://www.google.com/maps/place/X/@18.7883,98.9853,17z -> (18.7883, 98.9853)
    """
    if not map_link:
        return None
    match = MAP_LINK_GPS_PATTERN.search(map_link)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


def _parse_window(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    parts = value.split(":")
    return time(int(parts[0]), int(parts[1]))


def load_zones_geojson(path) -> list[dict]:
    """
    Read pickup zones from a GeoJSON FeatureCollection.

    Only Polygon features are used (outer ring). Zones listed in
    ZONE_PRIORITY keep that order; any other zone follows in file order.

    Returns:
        List of dicts ready to build PickupZone rows
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))

    zones = []
    for index, feature in enumerate(data.get("features", [])):
        geometry = feature.get("geometry") or {}
        if geometry.get("type") != "Polygon":
            continue
        props = feature.get("properties") or {}
        zone_id = props.get("id")
        if not zone_id:
            raise ValidationError(f"Zone feature #{index} has no properties.id")

        if zone_id in ZONE_PRIORITY:
            priority = ZONE_PRIORITY.index(zone_id)
        else:
            priority = len(ZONE_PRIORITY) + index

        zones.append({
            "id": zone_id,
            "name": props.get("name", zone_id.title()),
            "color_code": props.get("color"),
            "description": props.get("description"),
            "polygon": validate_polygon(geometry["coordinates"][0]),
            "display_order": props.get("display_order", priority),
            "morning_pickup_time": _parse_window(props.get("morning_pickup_time")),
            "morning_pickup_end": _parse_window(props.get("morning_pickup_end")),
            "evening_pickup_time": _parse_window(props.get("evening_pickup_time")),
            "evening_pickup_end": _parse_window(props.get("evening_pickup_end")),
        })

    return sorted(zones, key=lambda z: z["display_order"])
