"""
Boundary Loading Module

Parses the caller-supplied boundary (GeoJSON dict, GeoJSON Feature, or a JSON
string of either) into an immutable ClipBoundary that the clipper and the
primitives share for the lifetime of one run.

A boundary that cannot be parsed is fatal: BoundaryParseError aborts the run,
since no geometric operation is possible without it.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Tuple, Union

from shapely.errors import ShapelyError
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep, PreparedGeometry
from shapely.validation import make_valid

from utils.errors import BoundaryParseError
from utils.geometry_converters import (
    boundary_bbox,
    geojson_to_shape,
    is_valid_coordinate,
    iter_coordinates,
    shape_to_geojson,
    simplify_boundary
)
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClipBoundary:
    """
    Read-only boundary shared by every stage of one pipeline run.

    Attributes:
        geojson: Boundary geometry as a GeoJSON dict
        geometry: Shapely Polygon/MultiPolygon
        prepared: Prepared geometry for fast repeated predicates
        rings: Boundary rings (exteriors and holes) as one linear geometry
        bbox: (south, west, north, east) over every ring vertex
    """
    geojson: Dict
    geometry: BaseGeometry
    prepared: PreparedGeometry = field(repr=False, compare=False)
    rings: BaseGeometry = field(repr=False, compare=False)
    bbox: Tuple[float, float, float, float]


def _unwrap(boundary_input: Union[str, Dict]) -> Dict:
    """Accept a JSON string, a Feature or a bare geometry and return the geometry dict."""
    if isinstance(boundary_input, (str, bytes)):
        try:
            boundary_input = json.loads(boundary_input)
        except ValueError as e:
            raise BoundaryParseError(f"Boundary is not valid JSON: {e}") from e

    if not isinstance(boundary_input, dict):
        raise BoundaryParseError(
            f"Invalid boundary: expected a GeoJSON object, got {type(boundary_input).__name__}"
        )

    if boundary_input.get('type') == 'Feature':
        boundary_input = boundary_input.get('geometry') or {}

    if not boundary_input.get('coordinates'):
        raise BoundaryParseError("Invalid boundary: No coordinates provided")

    return boundary_input


def load_boundary(
    boundary_input: Union[str, Dict],
    simplify_tolerance: float = 0.0
) -> ClipBoundary:
    """
    Parse a boundary into a ClipBoundary.

    Parameters:
    -----------
    boundary_input : Union[str, Dict]
        Polygon/MultiPolygon geometry, a Feature wrapping one, or JSON text
    simplify_tolerance : float
        Optional simplification tolerance in degrees (0 disables)

    Returns:
    --------
    ClipBoundary
        Immutable boundary with prepared geometry and bbox

    Raises:
    -------
    BoundaryParseError
        If the boundary is missing, malformed, not polygonal, or empty
    """
    if isinstance(boundary_input, ClipBoundary):
        return boundary_input

    geometry = _unwrap(boundary_input)
    geom_type = geometry.get('type')

    if geom_type not in ('Polygon', 'MultiPolygon'):
        raise BoundaryParseError(f"Unsupported boundary type: {geom_type}")

    if not all(is_valid_coordinate(c) for c in iter_coordinates(geometry)):
        raise BoundaryParseError("Boundary contains invalid coordinates")

    try:
        geom = geojson_to_shape(geometry)
    except (ValueError, TypeError, IndexError, ShapelyError) as e:
        raise BoundaryParseError(f"Boundary geometry could not be built: {e}") from e

    if geom.is_empty:
        raise BoundaryParseError("Boundary geometry is empty")

    if not geom.is_valid:
        logger.warning("  Boundary geometry is invalid, attempting repair...")
        repaired = make_valid(geom)
        polygons = [g for g in getattr(repaired, 'geoms', [repaired])
                    if isinstance(g, (Polygon, MultiPolygon))]
        if not polygons:
            raise BoundaryParseError("Boundary geometry could not be repaired")
        geom = polygons[0] if len(polygons) == 1 else MultiPolygon(
            [p for g in polygons for p in getattr(g, 'geoms', [g])]
        )
        geometry = shape_to_geojson(geom)

    geom = simplify_boundary(geom, simplify_tolerance)
    if simplify_tolerance > 0:
        geometry = shape_to_geojson(geom)

    bbox = boundary_bbox(geometry)
    logger.debug(f"Boundary loaded: {geometry['type']}, bbox {bbox}")

    return ClipBoundary(
        geojson=geometry,
        geometry=geom,
        prepared=prep(geom),
        rings=geom.boundary,
        bbox=bbox
    )
