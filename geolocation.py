#!/usr/bin/env python3
"""
Geolocation helpers for GhostAtlas.

Great-circle distance, the proximity check used before a location
verification, coordinate validation and geohash encoding. Stored geohashes
let a radius search read only the rows in the cells around its centre.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple, Union

from ghostatlas.models import Location

EARTH_RADIUS_METERS = 6371000
DEFAULT_VERIFICATION_RADIUS_METERS = 50

_BASE32 = '0123456789bcdefghjkmnpqrstuvwxyz'

# (radius km above which, precision) pairs, widest first.
_PRECISION_BY_RADIUS = (
    (630, 1),
    (78, 2),
    (20, 3),
    (2.4, 4),
    (0.61, 5),
    (0.076, 6),
)

# Above this many sample points a covering is not worth computing.
MAX_COVERING_SAMPLES = 1024

Point = Union[Location, Tuple[float, float]]


@dataclass(frozen=True)
class Eligibility:
    is_eligible: bool
    distance: float


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two WGS84 points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (math.sin(d_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _coords(point: Point) -> Tuple[float, float]:
    if isinstance(point, Location):
        return point.latitude, point.longitude
    return float(point[0]), float(point[1])


def is_eligible(user: Point, target: Point,
                max_meters: float = DEFAULT_VERIFICATION_RADIUS_METERS) -> Eligibility:
    """Check whether *user* is close enough to *target* to verify it.

    Both arguments may be :class:`Location` objects or ``(lat, lon)`` tuples.
    The boundary is inclusive: a user exactly *max_meters* away is eligible.
    """
    meters = distance(*_coords(user), *_coords(target))
    return Eligibility(is_eligible=meters <= max_meters, distance=meters)


def format_distance(meters: float) -> str:
    """Render a distance for display: ``"42m"`` below a kilometre, else ``"1.5km"``."""
    if meters < 1000:
        return f'{round(meters)}m'
    return f'{meters / 1000:.1f}km'


def validate_coordinates(latitude, longitude) -> bool:
    for value in (latitude, longitude):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if math.isnan(value):
            return False
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def encode_geohash(latitude: float, longitude: float, precision: int = 6) -> str:
    """Encode a point as a base32 geohash of *precision* characters (1-12).

    Raises:
        ValueError: if the coordinates or the precision are out of range.
    """
    if not validate_coordinates(latitude, longitude):
        raise ValueError('Invalid coordinates')
    if not 1 <= precision <= 12:
        raise ValueError('Precision must be between 1 and 12')

    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars = []
    bit = 0
    ch = 0
    even = True
    while len(chars) < precision:
        rng, value = (lon_range, longitude) if even else (lat_range, latitude)
        mid = (rng[0] + rng[1]) / 2
        if value > mid:
            ch |= 1 << (4 - bit)
            rng[0] = mid
        else:
            rng[1] = mid
        even = not even
        if bit < 4:
            bit += 1
        else:
            chars.append(_BASE32[ch])
            bit = 0
            ch = 0
    return ''.join(chars)


def decode_geohash(geohash: str) -> Tuple[float, float]:
    """Return the ``(latitude, longitude)`` centre of the *geohash* cell.

    Raises:
        ValueError: on an empty hash or a character outside the alphabet.
    """
    if not geohash or not isinstance(geohash, str):
        raise ValueError('Invalid geohash')

    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    even = True
    for char in geohash.lower():
        index = _BASE32.find(char)
        if index == -1:
            raise ValueError(f'Invalid geohash character: {char}')
        for shift in range(4, -1, -1):
            rng = lon_range if even else lat_range
            mid = (rng[0] + rng[1]) / 2
            if (index >> shift) & 1:
                rng[0] = mid
            else:
                rng[1] = mid
            even = not even
    return (lat_range[0] + lat_range[1]) / 2, (lon_range[0] + lon_range[1]) / 2


def geohash_precision_for_radius(radius_km: float) -> int:
    """Geohash prefix length whose cell roughly covers *radius_km*."""
    for threshold, precision in _PRECISION_BY_RADIUS:
        if radius_km > threshold:
            return precision
    return 7


def geohash_cell_size(precision: int) -> Tuple[float, float]:
    """``(lat_degrees, lon_degrees)`` spanned by one cell of *precision* characters."""
    bits = 5 * precision
    return 180.0 / 2 ** (bits // 2), 360.0 / 2 ** ((bits + 1) // 2)


def _axis(low: float, high: float, step: float) -> List[float]:
    count = max(1, math.ceil((high - low) / step))
    return [low + (high - low) * i / count for i in range(count)] + [high]


def geohash_cells_covering(latitude: float, longitude: float, radius_km: float,
                           max_precision: int = 6) -> Optional[Set[str]]:
    """Geohash prefixes whose cells together cover a circle.

    Every point within *radius_km* of the centre encodes to a hash that
    starts with one of the returned prefixes.  The bounding box of the
    circle is sampled at half the cell size along each axis, endpoints
    included, so every cell overlapping the box contains a sample.

    Returns:
        A set of prefixes of at most *max_precision* characters, or ``None``
        when the circle reaches a pole or the antimeridian or would need
        more than ``MAX_COVERING_SAMPLES`` samples.  ``None`` means the
        caller should not filter by area.
    """
    angular = radius_km * 1000 / EARTH_RADIUS_METERS * 1.01
    d_lat = math.degrees(angular)
    if latitude - d_lat < -90 or latitude + d_lat > 90:
        return None
    ratio = math.sin(angular) / math.cos(math.radians(latitude))
    d_lon = math.degrees(math.asin(min(1.0, ratio)))
    if longitude - d_lon < -180 or longitude + d_lon > 180:
        return None

    precision = min(geohash_precision_for_radius(radius_km), max_precision)
    cell_lat, cell_lon = geohash_cell_size(precision)
    lats = _axis(latitude - d_lat, latitude + d_lat, cell_lat / 2)
    lons = _axis(longitude - d_lon, longitude + d_lon, cell_lon / 2)
    if len(lats) * len(lons) > MAX_COVERING_SAMPLES:
        return None
    return {encode_geohash(lat, lon, precision) for lat in lats for lon in lons}
