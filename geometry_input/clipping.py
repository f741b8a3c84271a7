"""
Geometry Clipping Module

Clips point, line and polygon features to a boundary polygon, keeping only the
portion that lies inside. A feature may be dropped, passed through unchanged,
or cut into several runs (emitted as a MultiLineString).

Lines are clipped with an explicit two-state machine (Inside/Outside) driven by
the exact crossings of each segment with the boundary rings. Polygons use the
GEOS intersection; numerical failures keep the original feature rather than
dropping it.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from shapely.errors import ShapelyError
from shapely.geometry import (
    LineString, MultiLineString, MultiPolygon, Polygon, GeometryCollection
)
from shapely.geometry.base import BaseGeometry
from shapely.validation import make_valid

from geometry_input.boundary import ClipBoundary
from geometry_input.primitives import (
    interpolate,
    point_in_boundary,
    segment_crossings,
    segment_touches_boundary
)
from utils.errors import GeometryOperationError
from utils.geometry_converters import (
    count_geometry_vertices,
    geojson_to_shape,
    shape_to_geojson
)
from utils.logger import get_logger

logger = get_logger(__name__)

INSIDE = 'inside'
OUTSIDE = 'outside'


class _RunBuilder:
    """
    Accumulates the inside runs of one line.

    The builder is either OUTSIDE (no open run) or INSIDE (a run is being
    extended). start_run opens a run, emit_point extends it and end_run
    closes it; runs with fewer than two distinct points are discarded.
    """

    def __init__(self):
        self.state = OUTSIDE
        self.runs: List[List[List[float]]] = []
        self._current: List[List[float]] = []

    def start_run(self, coord: Sequence[float]) -> None:
        self.state = INSIDE
        self._current = [[coord[0], coord[1]]]

    def emit_point(self, coord: Sequence[float]) -> None:
        last = self._current[-1] if self._current else None
        if last is None or last[0] != coord[0] or last[1] != coord[1]:
            self._current.append([coord[0], coord[1]])

    def end_run(self) -> None:
        if len(self._current) >= 2:
            self.runs.append(self._current)
        self._current = []
        self.state = OUTSIDE


def clip_line_coordinates(
    coords: Sequence[Sequence[float]],
    boundary: ClipBoundary
) -> List[List[List[float]]]:
    """
    Clip one coordinate sequence to the boundary.

    Each segment is split at its crossings with the boundary rings; every
    piece is classified by its midpoint. Entering an inside piece opens a run
    at the piece start, leaving it closes the run at the exit point. This
    covers in->in segments that dip outside (split), in->out (close at exit),
    out->in (start at entry) and out->out segments that pass through (keep
    the middle).

    Parameters:
    -----------
    coords : Sequence[Sequence[float]]
        Line vertices as [lon, lat]
    boundary : ClipBoundary
        Clip boundary

    Returns:
    --------
    List[List[List[float]]]
        Inside runs, each with at least two points, in line order
    """
    if len(coords) < 2:
        return []

    line = LineString([(c[0], c[1]) for c in coords])
    if boundary.prepared.contains(line) and not segment_touches_boundary(boundary, coords):
        return [[[c[0], c[1]] for c in coords]]

    builder = _RunBuilder()

    for i in range(len(coords) - 1):
        p1, p2 = coords[i], coords[i + 1]
        params = [0.0] + segment_crossings(boundary, p1, p2) + [1.0]

        for start_t, end_t in zip(params, params[1:]):
            mid = interpolate(p1, p2, (start_t + end_t) / 2.0)
            if point_in_boundary(boundary, mid):
                if builder.state == OUTSIDE:
                    builder.start_run(interpolate(p1, p2, start_t))
                if end_t >= 1.0:
                    builder.emit_point(p2)
            elif builder.state == INSIDE:
                builder.emit_point(interpolate(p1, p2, start_t))
                builder.end_run()

    builder.end_run()
    return builder.runs


def _runs_to_geometry(runs: List[List[List[float]]]) -> Optional[Dict]:
    """One run -> LineString, several -> MultiLineString, none -> None."""
    if not runs:
        return None
    if len(runs) == 1:
        return {'type': 'LineString', 'coordinates': runs[0]}
    return {'type': 'MultiLineString', 'coordinates': runs}


def extract_geometry_type(
    geometry: BaseGeometry,
    target_type: str
) -> Optional[BaseGeometry]:
    """
    Extract geometries of a specific type from a potentially mixed result.

    When .intersection() returns a GeometryCollection (a polygon touching the
    boundary along an edge yields stray lines/points), this keeps only the
    relevant geometry type.

    Args:
        geometry: Result geometry (may be GeometryCollection)
        target_type: 'line' or 'polygon'

    Returns:
        Extracted geometry of the target type, or None if no matching geometries
    """
    if geometry is None or geometry.is_empty:
        return None

    if target_type == 'polygon' and isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry
    if target_type == 'line' and geometry.geom_type in ('LineString', 'MultiLineString'):
        return geometry

    if isinstance(geometry, GeometryCollection):
        extracted = []
        for geom in geometry.geoms:
            if target_type == 'polygon' and isinstance(geom, (Polygon, MultiPolygon)):
                extracted.extend(getattr(geom, 'geoms', [geom]))
            elif target_type == 'line' and geom.geom_type in ('LineString', 'MultiLineString'):
                extracted.extend(getattr(geom, 'geoms', [geom]))

        extracted = [g for g in extracted if not g.is_empty]
        if not extracted:
            return None
        if len(extracted) == 1:
            return extracted[0]
        if target_type == 'polygon':
            return MultiPolygon(extracted)
        return MultiLineString(extracted)

    return None


def _intersect_polygon(geom: BaseGeometry, boundary: ClipBoundary) -> Optional[BaseGeometry]:
    """
    Intersect a polygonal geometry with the boundary, repairing once on failure.

    Raises:
    -------
    GeometryOperationError
        If both the direct and the repaired intersection fail
    """
    try:
        return extract_geometry_type(geom.intersection(boundary.geometry), 'polygon')
    except ShapelyError as e1:
        logger.debug(f"    Direct intersection failed: {e1}, retrying after make_valid")

    try:
        repaired = extract_geometry_type(make_valid(geom), 'polygon')
        if repaired is None:
            raise GeometryOperationError("make_valid produced no polygonal geometry")
        return extract_geometry_type(repaired.intersection(boundary.geometry), 'polygon')
    except ShapelyError as e2:
        raise GeometryOperationError(f"Intersection failed after repair: {e2}") from e2


def clip_polygon_geometry(geometry: Dict, boundary: ClipBoundary) -> Optional[Dict]:
    """
    Clip a Polygon/MultiPolygon geometry.

    Returns the geometry unchanged when it is fully covered by the boundary,
    the polygonal intersection when it is non-empty, and None when the
    feature lies outside.

    Raises:
    -------
    GeometryOperationError
        If the intersection cannot be computed; callers keep the original
    """
    try:
        geom = geojson_to_shape(geometry)
        if boundary.prepared.covers(geom):
            return geometry
    except (ValueError, ShapelyError) as e:
        raise GeometryOperationError(f"Containment test failed: {e}") from e

    clipped = _intersect_polygon(geom, boundary)
    if clipped is not None and not clipped.is_empty:
        return shape_to_geojson(clipped)

    if boundary.prepared.covers(geom):
        return geometry
    return None


def clip_geometry(geometry: Dict, boundary: ClipBoundary) -> Optional[Dict]:
    """
    Clip a single GeoJSON geometry to the boundary.

    Returns:
    --------
    Optional[Dict]
        The clipped geometry (possibly the same object, unchanged), or None
        if nothing of it lies inside the boundary

    Raises:
    -------
    GeometryOperationError
        Polygon intersection failed (see clip_polygon_geometry)
    ValueError
        Unsupported geometry type
    """
    geom_type = geometry.get('type')
    coords = geometry.get('coordinates')

    if geom_type == 'Point':
        return geometry if point_in_boundary(boundary, coords) else None

    if geom_type == 'LineString':
        runs = clip_line_coordinates(coords, boundary)
        if len(runs) == 1 and runs[0] == [[c[0], c[1]] for c in coords]:
            return geometry
        return _runs_to_geometry(runs)

    if geom_type == 'MultiLineString':
        runs = []
        for line_coords in coords:
            runs.extend(clip_line_coordinates(line_coords, boundary))
        if runs == [[[c[0], c[1]] for c in line] for line in coords]:
            return geometry
        return _runs_to_geometry(runs)

    if geom_type in ('Polygon', 'MultiPolygon'):
        return clip_polygon_geometry(geometry, boundary)

    raise ValueError(f"Unsupported geometry type: {geom_type}")


def _clip_to_feature(feature: Dict, boundary: ClipBoundary) -> Tuple[Optional[Dict], bool]:
    """
    Clip one feature, returning (result, failed).

    result is None when the feature lies outside, the same object when it is
    unchanged, or a copy carrying the clipped geometry. failed is True when
    the polygon intersection raised and the original was kept.
    """
    geometry = feature['geometry']
    try:
        clipped = clip_geometry(geometry, boundary)
    except GeometryOperationError as e:
        logger.debug(f"    Could not clip {geometry.get('type')} feature ({e}), keeping original")
        return feature, True

    if clipped is None:
        return None, False
    if clipped is geometry:
        return feature, False

    properties = dict(feature.get('properties') or {})
    if 'geometry_type' in properties:
        properties['geometry_type'] = clipped['type']
    return {**feature, 'geometry': clipped, 'properties': properties}, False


def clip_feature(feature: Dict, boundary: ClipBoundary) -> List[Dict]:
    """
    Clip one feature to the boundary.

    Returns:
    --------
    List[Dict]
        [] if the feature lies outside, [feature] if it is fully inside (the
        same object), or [clipped_copy] with a new geometry and the original
        properties. Polygon intersection failures keep the original feature.
    """
    result, _ = _clip_to_feature(feature, boundary)
    return [] if result is None else [result]


def clip_features(
    features: List[Dict],
    boundary: ClipBoundary,
    layer_name: str = "Layer"
) -> Tuple[List[Dict], Dict]:
    """
    Clip all features of a layer to the boundary.

    Parameters:
    -----------
    features : List[Dict]
        Validated GeoJSON features
    boundary : ClipBoundary
        Clip boundary
    layer_name : str
        Name of the layer (for logging)

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Clipped features (input order) and a metadata dictionary

    Metadata dictionary contains:
        - input_count: Number of features received
        - kept_count: Features that survived (kept_count + dropped_outside == input_count)
        - dropped_outside: Features confirmed to lie outside the boundary
        - features_clipped: Features whose geometry was cut
        - features_split: Line features cut into more than one run
        - original_vertex_count / clipped_vertex_count: Vertex totals
        - vertex_reduction_percent: Percentage reduction in vertices
        - clip_failures: Features where clipping failed and original was kept
    """
    clip_metadata = {
        'input_count': len(features),
        'kept_count': 0,
        'dropped_outside': 0,
        'features_clipped': 0,
        'features_split': 0,
        'original_vertex_count': 0,
        'clipped_vertex_count': 0,
        'vertex_reduction_percent': 0.0,
        'clip_failures': 0
    }

    if not features:
        return [], clip_metadata

    kept = []
    for feature in features:
        clip_metadata['original_vertex_count'] += count_geometry_vertices(feature['geometry'])

        result, failed = _clip_to_feature(feature, boundary)
        if failed:
            clip_metadata['clip_failures'] += 1
        if result is None:
            clip_metadata['dropped_outside'] += 1
            continue

        if result is not feature:
            clip_metadata['features_clipped'] += 1
            if (result['geometry']['type'] == 'MultiLineString'
                    and feature['geometry']['type'] == 'LineString'):
                clip_metadata['features_split'] += 1

        clip_metadata['clipped_vertex_count'] += count_geometry_vertices(result['geometry'])
        kept.append(result)

    clip_metadata['kept_count'] = len(kept)

    original = clip_metadata['original_vertex_count']
    if original > 0:
        reduction = (original - clip_metadata['clipped_vertex_count']) / original * 100
        clip_metadata['vertex_reduction_percent'] = round(reduction, 1)

    if clip_metadata['features_clipped'] > 0 or clip_metadata['dropped_outside'] > 0:
        logger.debug(
            f"    {layer_name}: clipped {clip_metadata['features_clipped']}, "
            f"dropped {clip_metadata['dropped_outside']} outside boundary"
        )

    if clip_metadata['clip_failures'] > 0:
        logger.warning(
            f"    {clip_metadata['clip_failures']} features could not be clipped "
            f"(original geometry kept)"
        )

    return kept, clip_metadata


def aggregate_clip_metadata(layer_metadata_list: list) -> Dict:
    """
    Aggregate clipping statistics across all layers.

    Args:
        layer_metadata_list: List of per-layer metadata dictionaries, each
            optionally carrying a 'clipping' entry from clip_features

    Returns:
        Dictionary with aggregated clipping statistics
    """
    summary = {
        'total_features_clipped': 0,
        'total_features_split': 0,
        'total_dropped_outside': 0,
        'total_original_vertices': 0,
        'total_clipped_vertices': 0,
        'total_clip_failures': 0,
        'overall_vertex_reduction_percent': 0.0
    }

    for meta in layer_metadata_list:
        clip_data = meta.get('clipping')
        if not clip_data:
            continue
        summary['total_features_clipped'] += clip_data.get('features_clipped', 0)
        summary['total_features_split'] += clip_data.get('features_split', 0)
        summary['total_dropped_outside'] += clip_data.get('dropped_outside', 0)
        summary['total_original_vertices'] += clip_data.get('original_vertex_count', 0)
        summary['total_clipped_vertices'] += clip_data.get('clipped_vertex_count', 0)
        summary['total_clip_failures'] += clip_data.get('clip_failures', 0)

    if summary['total_original_vertices'] > 0:
        reduction = (
            (summary['total_original_vertices'] - summary['total_clipped_vertices'])
            / summary['total_original_vertices']
        ) * 100
        summary['overall_vertex_reduction_percent'] = round(reduction, 1)

    return summary


def merge_clip_metadata(target: Dict, batch: Dict) -> Dict:
    """Add the counters of one clip_features batch into a running total."""
    for key, value in batch.items():
        if key == 'vertex_reduction_percent':
            continue
        target[key] = target.get(key, 0) + value

    original = target.get('original_vertex_count', 0)
    if original > 0:
        reduction = (original - target.get('clipped_vertex_count', 0)) / original * 100
        target['vertex_reduction_percent'] = round(reduction, 1)
    return target
