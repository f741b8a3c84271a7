"""
Geometry conversion utilities for City Layer Harvester.

This module converts between GeoJSON geometry dicts (the wire format features
travel in) and Shapely geometries (what the clipper computes with), and holds
the small coordinate helpers shared by the assembler, clipper and deduplicator.

Functions:
    is_valid_coordinate: Check a [lon, lat] pair is finite and in range
    geojson_to_shape: Convert a GeoJSON geometry dict to a Shapely geometry
    shape_to_geojson: Convert a Shapely geometry to a GeoJSON dict with list coordinates
    round_coordinates: Round a (nested) coordinate array to a fixed precision
    iter_coordinates: Yield every [lon, lat] pair of a GeoJSON geometry
    count_geometry_vertices: Count total vertices in a GeoJSON geometry
    boundary_bbox: Overpass bbox (south, west, north, east) over every ring vertex
    simplify_boundary: Topology-preserving simplification with fallback
"""

import math
from typing import Dict, Iterator, List, Optional, Tuple

from shapely.geometry import shape, mapping
from shapely.geometry.base import BaseGeometry

from utils.logger import get_logger

logger = get_logger(__name__)

GEOMETRY_TYPES = ('Point', 'LineString', 'MultiLineString', 'Polygon', 'MultiPolygon')


def is_valid_coordinate(coord) -> bool:
    """
    Check that a coordinate is a finite, in-range [lon, lat] pair.

    Parameters:
    -----------
    coord : Any
        Candidate coordinate

    Returns:
    --------
    bool
        True if coord has exactly two finite numeric components with
        -180 <= lon <= 180 and -90 <= lat <= 90
    """
    if not isinstance(coord, (list, tuple)) or len(coord) != 2:
        return False
    lon, lat = coord
    if isinstance(lon, bool) or isinstance(lat, bool):
        return False
    if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
        return False
    if not (math.isfinite(lon) and math.isfinite(lat)):
        return False
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def _to_lists(coords):
    """Recursively convert Shapely's tuple coordinates to lists."""
    if isinstance(coords, (list, tuple)) and coords and isinstance(coords[0], (int, float)):
        return [float(coords[0]), float(coords[1])]
    return [_to_lists(c) for c in coords]


def geojson_to_shape(geometry: Dict) -> BaseGeometry:
    """
    Convert a GeoJSON geometry dict to a Shapely geometry.

    Raises:
    -------
    ValueError
        If the dict is not a supported GeoJSON geometry
    """
    if not isinstance(geometry, dict) or geometry.get('type') not in GEOMETRY_TYPES:
        raise ValueError(f"Unsupported geometry: {geometry!r:.80}")
    return shape(geometry)


def shape_to_geojson(geom: BaseGeometry) -> Dict:
    """
    Convert a Shapely geometry to a GeoJSON geometry dict.

    Coordinates are returned as nested lists of [lon, lat] so the result
    compares equal to hand-written GeoJSON.
    """
    geo = mapping(geom)
    return {
        'type': geo['type'],
        'coordinates': _to_lists(geo['coordinates'])
    }


def round_coordinates(coords, precision: int = 6):
    """
    Round a (nested) coordinate array to a fixed number of decimals.

    Example:
        >>> round_coordinates([[10.0000001, 20.0000004], [1.23456789, 2.0]])
        [[10.0, 20.0], [1.234568, 2.0]]
    """
    if coords and isinstance(coords[0], (list, tuple)):
        return [round_coordinates(c, precision) for c in coords]
    return [round(float(coords[0]), precision), round(float(coords[1]), precision)]


def iter_coordinates(geometry: Dict) -> Iterator[List[float]]:
    """Yield every [lon, lat] pair of a GeoJSON geometry, in order."""
    def _walk(coords):
        if coords and isinstance(coords[0], (list, tuple)):
            for c in coords:
                yield from _walk(c)
        elif coords:
            yield coords

    yield from _walk(geometry.get('coordinates') or [])


def count_geometry_vertices(geometry: Optional[Dict]) -> int:
    """
    Count total vertices in a GeoJSON geometry.

    Parameters:
    -----------
    geometry : Optional[Dict]
        GeoJSON geometry dict

    Returns:
    --------
    int
        Number of coordinate pairs (0 for None or empty geometries)
    """
    if not geometry:
        return 0
    return sum(1 for _ in iter_coordinates(geometry))


def boundary_bbox(boundary: Dict) -> Tuple[float, float, float, float]:
    """
    Compute the Overpass bounding box of a boundary geometry.

    Uses the min/max longitude and latitude over every ring vertex, including
    every polygon of a MultiPolygon.

    Returns:
    --------
    Tuple[float, float, float, float]
        (south, west, north, east)

    Raises:
    -------
    ValueError
        If the boundary holds no coordinates
    """
    coords = list(iter_coordinates(boundary))
    if not coords:
        raise ValueError("No coordinates found in boundary")

    lons = [c[0] for c in coords]
    lats = [c[1] for c in coords]
    return min(lats), min(lons), max(lats), max(lons)


def simplify_boundary(geom: BaseGeometry, tolerance: float) -> BaseGeometry:
    """
    Simplify a boundary geometry, falling back to the original on failure.

    Parameters:
    -----------
    geom : BaseGeometry
        Polygon or MultiPolygon boundary
    tolerance : float
        Simplification tolerance in degrees; <= 0 disables simplification

    Returns:
    --------
    BaseGeometry
        Simplified geometry, or the original if simplification is disabled,
        fails, or produces an empty/invalid result
    """
    if tolerance <= 0:
        return geom

    try:
        simplified = geom.simplify(tolerance, preserve_topology=True)
    except Exception as e:
        logger.warning(f"Boundary simplification failed ({e}), using original boundary")
        return geom

    if simplified.is_empty or not simplified.is_valid:
        logger.warning("Simplified boundary is empty or invalid, using original boundary")
        return geom

    logger.debug(f"Simplified boundary with tolerance {tolerance}")
    return simplified
