"""
Geometry Primitives

Point-in-boundary tests, exact segment/boundary-ring crossings and the
representative-coordinate helper used by the clipper and the deduplicator.
All predicates run against the prepared boundary geometry.
"""

from typing import Dict, List, Optional, Sequence

from shapely.errors import ShapelyError
from shapely.geometry import LineString, MultiPoint, Point
from shapely.geometry.base import BaseGeometry

from geometry_input.boundary import ClipBoundary
from utils.geometry_converters import geojson_to_shape, is_valid_coordinate

# Parameters closer than this along a segment are the same crossing
CROSSING_EPSILON = 1e-12


def point_in_boundary(boundary: ClipBoundary, coord: Sequence[float]) -> bool:
    """Inclusive point-in-polygon test: points on a ring count as inside."""
    return boundary.prepared.covers(Point(coord[0], coord[1]))


def interpolate(p1: Sequence[float], p2: Sequence[float], t: float) -> List[float]:
    """Point at parameter t along the segment p1 -> p2."""
    if t <= 0.0:
        return [float(p1[0]), float(p1[1])]
    if t >= 1.0:
        return [float(p2[0]), float(p2[1])]
    return [p1[0] + (p2[0] - p1[0]) * t, p1[1] + (p2[1] - p1[1]) * t]


def _intersection_points(geom: BaseGeometry) -> List[Point]:
    """Flatten an intersection result into points (collinear overlaps give their endpoints)."""
    if geom is None or geom.is_empty:
        return []
    if geom.geom_type == 'Point':
        return [geom]
    if geom.geom_type == 'LineString':
        coords = list(geom.coords)
        return [Point(coords[0]), Point(coords[-1])]
    if hasattr(geom, 'geoms'):
        points = []
        for part in geom.geoms:
            points.extend(_intersection_points(part))
        return points
    return []


def segment_crossings(
    boundary: ClipBoundary,
    p1: Sequence[float],
    p2: Sequence[float]
) -> List[float]:
    """
    Find where a segment meets the boundary rings.

    Parameters:
    -----------
    boundary : ClipBoundary
        Boundary whose exterior and interior rings are tested
    p1, p2 : Sequence[float]
        Segment endpoints as [lon, lat]

    Returns:
    --------
    List[float]
        Sorted, de-duplicated parameters t in the open interval (0, 1) where
        the segment touches or crosses a ring. Endpoints are excluded; the
        clipper classifies those with point_in_boundary.
    """
    if p1[0] == p2[0] and p1[1] == p2[1]:
        return []

    segment = LineString([(p1[0], p1[1]), (p2[0], p2[1])])
    hits = segment.intersection(boundary.rings)
    length = segment.length

    params = []
    for point in _intersection_points(hits):
        t = segment.project(point) / length
        if CROSSING_EPSILON < t < 1.0 - CROSSING_EPSILON:
            params.append(t)

    params.sort()
    deduped: List[float] = []
    for t in params:
        if not deduped or t - deduped[-1] > CROSSING_EPSILON:
            deduped.append(t)
    return deduped


def segment_touches_boundary(boundary: ClipBoundary, coords: Sequence[Sequence[float]]) -> bool:
    """True if a coordinate sequence meets any boundary ring."""
    if len(coords) < 2:
        return boundary.rings.intersects(Point(coords[0]))
    return boundary.rings.intersects(LineString(coords))


def centroid_coordinate(geometry: Dict) -> Optional[List[float]]:
    """Centroid of a GeoJSON geometry, or None if it cannot be computed."""
    try:
        centroid = geojson_to_shape(geometry).centroid
    except (ValueError, TypeError, IndexError, AttributeError, ShapelyError):
        return None
    if centroid.is_empty:
        return None
    return [centroid.x, centroid.y]


def coordinates_centroid(coords: Sequence[Sequence[float]]) -> List[float]:
    """Centroid of a set of coordinates treated as a point cloud."""
    centroid = MultiPoint([(c[0], c[1]) for c in coords]).centroid
    return [centroid.x, centroid.y]


def representative_coordinate(geometry: Optional[Dict]) -> Optional[List[float]]:
    """
    Representative coordinate used for the coordinate fingerprint.

    Point: the point itself. LineString: first vertex. Polygon and
    MultiLineString: first point of the first ring/line. MultiPolygon: first
    point of the first ring of the first polygon. Anything else falls back to
    the centroid. Returns None when no finite coordinate can be extracted.
    """
    if not isinstance(geometry, dict):
        return None

    geom_type = geometry.get('type')
    coords = geometry.get('coordinates')
    coord = None

    try:
        if geom_type == 'Point':
            coord = coords
        elif geom_type == 'LineString' and coords:
            coord = coords[0]
        elif geom_type in ('Polygon', 'MultiLineString') and coords and coords[0]:
            coord = coords[0][0]
        elif geom_type == 'MultiPolygon' and coords and coords[0] and coords[0][0]:
            coord = coords[0][0][0]
    except (TypeError, IndexError, KeyError):
        coord = None

    if coord is None and coords:
        coord = centroid_coordinate(geometry)

    if coord is None or not is_valid_coordinate(list(coord)):
        return None
    return [coord[0], coord[1]]
