# app/core/dispatch/geofencing.py
"""
Geofencing: distance, service-area and travel-time geometry.

Every function here is pure and deterministic. Distances are
straight-line great-circle miles; travel time is a coarse tiered
average-speed estimate, not routing.

County and metro lookups run against a fixed Texas gazetteer.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from app.core.dispatch.domain import AppraiserProfile, Coordinates

__all__ = [
    "EARTH_RADIUS_MILES", "DEFAULT_SERVICE_RADIUS_MILES", "COUNTY_CUTOFF_MILES",
    "TEXAS_COUNTIES", "METRO_AREAS", "TEXAS_BOUNDS",
    "BoundingBox", "MetroArea",
    "distance", "is_within_service_area",
    "bounding_box", "is_within_bounding_box",
    "estimate_travel_time", "midpoint",
    "county_for_point", "county_center", "list_counties",
    "metro_area_for_point", "is_within_texas",
    "round_half_up",
]


EARTH_RADIUS_MILES = 3959.0
DEFAULT_SERVICE_RADIUS_MILES = 25.0
COUNTY_CUTOFF_MILES = 50.0

# Degrees of latitude per statute mile (longitude shrinks with cos(lat))
_MILES_PER_DEGREE = 69.0


# ---------------------------------------------------------------------------
# Gazetteer
# ---------------------------------------------------------------------------

TEXAS_COUNTIES: dict[str, Coordinates] = {
    "Travis": Coordinates(30.3074, -97.7559),
    "Harris": Coordinates(29.7604, -95.3698),
    "Dallas": Coordinates(32.7767, -96.797),
    "Tarrant": Coordinates(32.7555, -97.3308),
    "Bexar": Coordinates(29.4241, -98.4936),
    "Collin": Coordinates(33.1901, -96.6072),
    "Denton": Coordinates(33.2148, -97.1331),
    "Fort Bend": Coordinates(29.5272, -95.7741),
    "Hidalgo": Coordinates(26.2034, -98.2307),
    "El Paso": Coordinates(31.7619, -106.485),
    "Williamson": Coordinates(30.6477, -97.6011),
    "Montgomery": Coordinates(30.3075, -95.4584),
    "Cameron": Coordinates(26.1505, -97.4883),
    "Nueces": Coordinates(27.8006, -97.3964),  # Corpus Christi
    "Brazoria": Coordinates(29.1684, -95.4383),
}


@dataclass(frozen=True)
class MetroArea:
    name: str
    center: Coordinates
    radius_miles: float


METRO_AREAS: tuple[MetroArea, ...] = (
    MetroArea("Austin-Round Rock", Coordinates(30.2672, -97.7431), 40.0),
    MetroArea("Houston-The Woodlands-Sugar Land", Coordinates(29.7604, -95.3698), 50.0),
    MetroArea("Dallas-Fort Worth-Arlington", Coordinates(32.7767, -96.797), 50.0),
    MetroArea("San Antonio-New Braunfels", Coordinates(29.4241, -98.4936), 35.0),
    MetroArea("El Paso", Coordinates(31.7619, -106.485), 25.0),
    MetroArea("McAllen-Edinburg-Mission", Coordinates(26.2034, -98.2307), 25.0),
)


@dataclass(frozen=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float


TEXAS_BOUNDS = BoundingBox(north=36.5, south=25.8, east=-93.5, west=-106.6)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Distance
# ---------------------------------------------------------------------------

def distance(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in miles (Haversine)."""
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat))
        * math.cos(math.radians(b.lat))
        * math.sin(dlng / 2) ** 2
    )
    # Clamp guards against h drifting past 1.0 for antipodal points
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def is_within_service_area(point: Coordinates, appraiser: AppraiserProfile) -> bool:
    """True iff the point lies inside the appraiser's coverage circle.

    A profile without a home base has no service area.
    """
    if appraiser.home_base is None:
        return False
    radius = appraiser.coverage_radius_miles or DEFAULT_SERVICE_RADIUS_MILES
    return distance(point, appraiser.home_base) <= radius


# ---------------------------------------------------------------------------
# Bounding boxes (cheap prefilter before Haversine)
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinates, radius_miles: float) -> BoundingBox:
    lat_delta = radius_miles / _MILES_PER_DEGREE
    cos_lat = math.cos(math.radians(center.lat))
    # Near the poles a longitude degree collapses; open the box fully
    if cos_lat < 1e-9:
        lng_delta = 180.0
    else:
        lng_delta = radius_miles / (_MILES_PER_DEGREE * cos_lat)
    return BoundingBox(
        north=center.lat + lat_delta,
        south=center.lat - lat_delta,
        east=center.lng + lng_delta,
        west=center.lng - lng_delta,
    )


def is_within_bounding_box(point: Coordinates, box: BoundingBox) -> bool:
    return (
        box.south <= point.lat <= box.north
        and box.west <= point.lng <= box.east
    )


def is_within_texas(point: Coordinates) -> bool:
    return is_within_bounding_box(point, TEXAS_BOUNDS)


# ---------------------------------------------------------------------------
# Travel
# ---------------------------------------------------------------------------

def estimate_travel_time(
    origin: Coordinates,
    destination: Coordinates,
    traffic_factor: float = 1.0,
) -> int:
    """Rounded driving minutes from a tiered average-speed model.

    Under 5 miles is urban (25 mph), under 20 suburban (35 mph), anything
    longer highway (55 mph). ``traffic_factor`` divides the speed: 1.0 is
    normal, 1.5 heavy traffic.
    """
    if traffic_factor <= 0:
        raise ValueError(f"traffic_factor must be positive, got {traffic_factor}")

    miles = distance(origin, destination)
    if miles < 5:
        speed_mph = 25.0
    elif miles < 20:
        speed_mph = 35.0
    else:
        speed_mph = 55.0

    speed_mph /= traffic_factor
    return round_half_up(miles / speed_mph * 60)


def midpoint(a: Coordinates, b: Coordinates) -> Coordinates:
    """Meeting point halfway between two nearby locations (coordinate average)."""
    return Coordinates((a.lat + b.lat) / 2, (a.lng + b.lng) / 2)


# ---------------------------------------------------------------------------
# Gazetteer lookups
# ---------------------------------------------------------------------------

def county_for_point(point: Coordinates) -> Optional[str]:
    """Nearest county center, or None if even that is beyond the cutoff."""
    closest: Optional[str] = None
    min_distance = math.inf
    for name, center in TEXAS_COUNTIES.items():
        d = distance(point, center)
        if d < min_distance:
            min_distance = d
            closest = name
    return closest if min_distance <= COUNTY_CUTOFF_MILES else None


def county_center(name: str) -> Optional[Coordinates]:
    return TEXAS_COUNTIES.get(name)


def list_counties() -> list[str]:
    return list(TEXAS_COUNTIES)


def metro_area_for_point(point: Coordinates) -> Optional[str]:
    """Nearest metro whose own radius contains the point."""
    best: Optional[MetroArea] = None
    best_distance = math.inf
    for metro in METRO_AREAS:
        d = distance(point, metro.center)
        if d <= metro.radius_miles and d < best_distance:
            best = metro
            best_distance = d
    return best.name if best else None
