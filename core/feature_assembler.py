"""
Feature assembly module for City Layer Harvester.

Converts raw Overpass elements (nodes, ways, relations returned with
`out geom`) into validated GeoJSON features whose geometry matches the
declared geometry family of their layer, and prepares uploaded or drawn
features for the same downstream clip/dedup chain.

Functions:
    resolve_geometry_family: Decide 'line' / 'polygon' / 'mixed' for a layer
    is_closed: Way closure test (>= 4 points, ends within tolerance)
    validate_geometry: Raise FeatureValidationError for malformed geometries
    is_valid_geometry: Boolean wrapper around validate_geometry
    assemble_feature: One element -> Optional[feature]
    assemble_features: Many elements -> (features, metadata)
    prepare_user_features: Validate and denormalise caller-supplied features
    split_multi_geometries: Split Multi* features into single-part features
"""

import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shapely.geometry import Point, Polygon

from geometry_input.primitives import coordinates_centroid
from utils.errors import FeatureValidationError
from utils.geometry_converters import is_valid_coordinate
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CLOSED_TOLERANCE = 1e-4
NAME_TAGS = ('name', 'brand', 'operator', 'ref')


def resolve_geometry_family(
    layer_name: str,
    geometry_family: Optional[str] = None,
    line_layers: Iterable[str] = (),
    polygon_layers: Iterable[str] = ()
) -> str:
    """
    Decide the geometry family for a layer.

    An explicit family wins; otherwise layers listed in line_layers are 'line',
    those in polygon_layers are 'polygon', and everything else is 'mixed'.
    """
    if geometry_family:
        return geometry_family
    if layer_name in line_layers:
        return 'line'
    if layer_name in polygon_layers:
        return 'polygon'
    return 'mixed'


def _to_float(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _element_coordinate(point: Dict) -> Optional[List[float]]:
    """[lon, lat] from an Overpass {'lat': .., 'lon': ..} record, or None."""
    if not isinstance(point, dict):
        return None
    coord = [_to_float(point.get('lon')), _to_float(point.get('lat'))]
    return coord if is_valid_coordinate(coord) else None


def _clean_coordinates(points: Sequence) -> List[List[float]]:
    """Drop records without a finite, in-range coordinate."""
    coords = []
    for point in points or []:
        coord = _element_coordinate(point)
        if coord is not None:
            coords.append(coord)
    return coords


def _ends_match(coords: Sequence[Sequence[float]], tolerance: float) -> bool:
    return (abs(coords[0][0] - coords[-1][0]) < tolerance
            and abs(coords[0][1] - coords[-1][1]) < tolerance)


def is_closed(coords: Sequence[Sequence[float]], tolerance: float = DEFAULT_CLOSED_TOLERANCE) -> bool:
    """A way is closed iff it has >= 4 points and its ends match within tolerance."""
    return len(coords) >= 4 and _ends_match(coords, tolerance)


def _as_line(coords: List[List[float]], tolerance: float) -> Optional[List[List[float]]]:
    """Open a closed way for use as a line; None if fewer than 2 points remain."""
    line = list(coords)
    if is_closed(line, tolerance) and len(line) > 3:
        line.pop()
    return line if len(line) >= 2 else None


def _as_ring(coords: List[List[float]], tolerance: float) -> Optional[List[List[float]]]:
    """Close an open way for use as a polygon ring; None if fewer than 4 points result."""
    ring = list(coords)
    if len(ring) >= 3 and not _ends_match(ring, tolerance):
        ring.append(list(ring[0]))
    return ring if len(ring) >= 4 else None


def way_geometry(
    coords: List[List[float]],
    family: str,
    tolerance: float = DEFAULT_CLOSED_TOLERANCE
) -> Optional[Dict]:
    """
    Build the geometry of a way for a geometry family.

    line: always LineString (a closed way loses its closing vertex).
    polygon: always Polygon (an open way is closed).
    mixed: closed way -> Polygon, otherwise LineString.
    """
    if len(coords) < 2:
        return None

    if family == 'line':
        line = _as_line(coords, tolerance)
        return {'type': 'LineString', 'coordinates': line} if line else None

    if family == 'polygon':
        ring = _as_ring(coords, tolerance)
        return {'type': 'Polygon', 'coordinates': [ring]} if ring else None

    if is_closed(coords, tolerance):
        return {'type': 'Polygon', 'coordinates': [coords]}
    return {'type': 'LineString', 'coordinates': coords}


def _relation_groups(element: Dict) -> List[Tuple[str, List[List[float]]]]:
    """
    Collect (role, coordinates) groups from a relation.

    Members returned by `out geom` carry their own geometry arrays (ways) or
    lat/lon (nodes). A relation without member geometry falls back to its own
    'geometry' array as a single group.
    """
    groups = []
    for member in element.get('members') or []:
        if not isinstance(member, dict):
            continue
        role = member.get('role') or ''
        if isinstance(member.get('geometry'), list):
            coords = _clean_coordinates(member['geometry'])
        else:
            coord = _element_coordinate(member)
            coords = [coord] if coord else []
        if coords:
            groups.append((role, coords))

    if not groups and isinstance(element.get('geometry'), list):
        coords = _clean_coordinates(element['geometry'])
        if coords:
            groups.append(('', coords))

    return groups


def _attach_inner_rings(outer: List[List], inner: List[List]) -> List[List]:
    """Attach each inner ring as a hole of the first outer polygon that contains it."""
    polygons = [[ring] for ring in outer]
    shells = [Polygon(ring) for ring in outer]
    for ring in inner:
        probe = Point(ring[0])
        for shell, polygon in zip(shells, polygons):
            if shell.is_valid and shell.contains(probe):
                polygon.append(ring)
                break
        else:
            polygons.append([ring])
    return polygons


def relation_geometry(
    groups: List[Tuple[str, List[List[float]]]],
    family: str,
    tolerance: float = DEFAULT_CLOSED_TOLERANCE
) -> Optional[Dict]:
    """
    Build the geometry of a relation from its member coordinate groups.

    polygon: every group with >= 3 points becomes a ring; outer rings become
        polygons and 'inner' rings are attached as holes -> Polygon/MultiPolygon.
    line: every group with >= 2 points becomes a line -> LineString/MultiLineString.
    mixed: a single coordinate -> Point; several disjoint groups collapse to
        the centroid Point of all coordinates; a single group is shaped like a way.
    """
    if not groups:
        return None

    if family == 'polygon':
        outer, inner = [], []
        for role, coords in groups:
            if len(coords) < 3:
                continue
            ring = _as_ring(coords, tolerance)
            if ring:
                (inner if role == 'inner' else outer).append(ring)

        if not outer:
            outer, inner = inner, []
        polygons = _attach_inner_rings(outer, inner) if inner else [[ring] for ring in outer]

        if len(polygons) == 1:
            return {'type': 'Polygon', 'coordinates': polygons[0]}
        if polygons:
            return {'type': 'MultiPolygon', 'coordinates': polygons}
        return None

    if family == 'line':
        lines = [line for line in (_as_line(coords, tolerance) for _, coords in groups) if line]
        if len(lines) == 1:
            return {'type': 'LineString', 'coordinates': lines[0]}
        if lines:
            return {'type': 'MultiLineString', 'coordinates': lines}
        return None

    all_coords = [coord for _, coords in groups for coord in coords]
    if len(all_coords) == 1:
        return {'type': 'Point', 'coordinates': all_coords[0]}
    if len(groups) > 1:
        return {'type': 'Point', 'coordinates': coordinates_centroid(all_coords)}
    return way_geometry(all_coords, 'mixed', tolerance)


def _check_line(coords, label: str) -> None:
    if not isinstance(coords, list) or len(coords) < 2:
        raise FeatureValidationError(f"{label} needs at least 2 points")
    if not all(is_valid_coordinate(c) for c in coords):
        raise FeatureValidationError(f"{label} has invalid coordinates")


def _check_polygon(rings, label: str) -> None:
    if not isinstance(rings, list) or not rings:
        raise FeatureValidationError(f"{label} has no rings")
    for ring in rings:
        if not isinstance(ring, list) or len(ring) < 4:
            raise FeatureValidationError(f"{label} ring needs at least 4 points")
        if not all(is_valid_coordinate(c) for c in ring):
            raise FeatureValidationError(f"{label} has invalid coordinates")


def validate_geometry(geometry: Optional[Dict]) -> None:
    """
    Validate a GeoJSON geometry.

    Rejects a missing or unknown type, a Point without exactly two finite
    in-range components, a LineString with fewer than 2 points, a Polygon ring
    with fewer than 4 points, and any Multi-geometry whose member fails its
    single-geometry rule.

    Raises:
    -------
    FeatureValidationError
        Describing the first problem found
    """
    if not isinstance(geometry, dict) or not geometry.get('type'):
        raise FeatureValidationError("Missing geometry type")

    geom_type = geometry['type']
    coords = geometry.get('coordinates')

    if geom_type == 'Point':
        if not is_valid_coordinate(coords):
            raise FeatureValidationError(f"Invalid point coordinates: {coords!r:.60}")
    elif geom_type == 'LineString':
        _check_line(coords, 'LineString')
    elif geom_type == 'Polygon':
        _check_polygon(coords, 'Polygon')
    elif geom_type == 'MultiLineString':
        if not isinstance(coords, list) or not coords:
            raise FeatureValidationError("MultiLineString has no lines")
        for line in coords:
            _check_line(line, 'MultiLineString member')
    elif geom_type == 'MultiPolygon':
        if not isinstance(coords, list) or not coords:
            raise FeatureValidationError("MultiPolygon has no polygons")
        for polygon in coords:
            _check_polygon(polygon, 'MultiPolygon member')
    else:
        raise FeatureValidationError(f"Unsupported geometry type: {geom_type}")


def is_valid_geometry(geometry: Optional[Dict]) -> bool:
    try:
        validate_geometry(geometry)
    except FeatureValidationError:
        return False
    return True


def feature_name(tags: Optional[Dict]) -> Optional[str]:
    """First of name/brand/operator/ref present in the tags."""
    if not tags:
        return None
    for key in NAME_TAGS:
        if tags.get(key):
            return tags[key]
    return None


def _element_geometry(element: Dict, family: str, tolerance: float) -> Optional[Dict]:
    element_type = element.get('type')

    if element_type == 'node':
        coord = _element_coordinate(element)
        return {'type': 'Point', 'coordinates': coord} if coord else None

    if element_type == 'way':
        if not isinstance(element.get('geometry'), list):
            return None
        return way_geometry(_clean_coordinates(element['geometry']), family, tolerance)

    if element_type == 'relation':
        return relation_geometry(_relation_groups(element), family, tolerance)

    return None


def assemble_feature(
    element: Dict,
    family: str,
    layer_name: str,
    domain_name: str,
    tolerance: float = DEFAULT_CLOSED_TOLERANCE
) -> Optional[Dict]:
    """
    Convert one Overpass element to a validated GeoJSON feature.

    Parameters:
    -----------
    element : Dict
        Overpass element ('node' with lat/lon, 'way' or 'relation' with geometry)
    family : str
        Geometry family of the layer ('line', 'polygon' or 'mixed')
    layer_name : str
        Layer the feature belongs to
    domain_name : str
        Domain the layer belongs to
    tolerance : float
        Way closure tolerance in degrees

    Returns:
    --------
    Optional[Dict]
        GeoJSON feature, or None if the element is malformed or its geometry
        fails validation
    """
    if not isinstance(element, dict) or not element.get('type'):
        return None

    geometry = _element_geometry(element, family, tolerance)
    if not is_valid_geometry(geometry):
        return None

    tags = element.get('tags') or {}
    name = feature_name(tags)

    properties = {'name': name, 'geometry_type': geometry['type']}
    properties.update(tags)
    properties['name'] = name
    properties['osm_type'] = element['type']
    properties['osm_id'] = element.get('id')
    properties['feature_name'] = name
    properties['layer_name'] = layer_name
    properties['domain_name'] = domain_name

    return {'type': 'Feature', 'geometry': geometry, 'properties': properties}


def assemble_features(
    elements: List[Dict],
    family: str,
    layer_name: str,
    domain_name: str,
    tolerance: float = DEFAULT_CLOSED_TOLERANCE
) -> Tuple[List[Dict], Dict]:
    """
    Assemble a batch of elements, skipping rejects.

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Features in element order and metadata with 'element_count',
        'assembled_count' and 'rejected_count'
    """
    features = []
    rejected = 0
    for element in elements:
        feature = assemble_feature(element, family, layer_name, domain_name, tolerance)
        if feature is None:
            rejected += 1
            continue
        features.append(feature)

    if rejected:
        logger.debug(f"    {layer_name}: skipped {rejected} malformed element(s)")

    return features, {
        'element_count': len(elements),
        'assembled_count': len(features),
        'rejected_count': rejected
    }


def prepare_user_features(
    features: List[Dict],
    layer_name: str,
    domain_name: str
) -> Tuple[List[Dict], int]:
    """
    Validate uploaded or drawn features and denormalise their layer properties.

    Parameters:
    -----------
    features : List[Dict]
        GeoJSON features from a file reader or a drawing tool
    layer_name : str
        Layer the features will be saved into
    domain_name : str
        Domain of that layer

    Returns:
    --------
    Tuple[List[Dict], int]
        Valid features (copies with name/feature_name/layer_name/domain_name
        set) and the number of rejected features
    """
    prepared = []
    rejected = 0

    for index, feature in enumerate(features):
        if not isinstance(feature, dict) or feature.get('type') != 'Feature':
            logger.debug(f"    Invalid feature at index {index}: missing or invalid type")
            rejected += 1
            continue
        try:
            validate_geometry(feature.get('geometry'))
        except FeatureValidationError as e:
            logger.debug(f"    Invalid geometry at index {index}: {e}")
            rejected += 1
            continue

        source = feature.get('properties') or {}
        name = source.get('name') or source.get('feature_name') or feature_name(source)
        properties = {'name': name}
        properties.update(source)
        properties['name'] = name
        properties['feature_name'] = name
        properties['layer_name'] = layer_name
        properties['domain_name'] = domain_name
        prepared.append({'type': 'Feature', 'geometry': feature['geometry'], 'properties': properties})

    if rejected:
        logger.info(f"    Skipped {rejected} invalid feature(s)")

    return prepared, rejected


def split_multi_geometries(features: List[Dict]) -> List[Dict]:
    """
    Split MultiPolygon/MultiLineString features into single-part features.

    Each part keeps the original properties with its name suffixed
    "(Part n)"; unnamed features are labelled "Feature <index> (Part n)".
    """
    split = []
    for index, feature in enumerate(features):
        geometry = feature.get('geometry') or {}
        part_type = {'MultiPolygon': 'Polygon', 'MultiLineString': 'LineString'}.get(geometry.get('type'))
        if part_type is None:
            split.append(feature)
            continue

        properties = feature.get('properties') or {}
        base_name = properties.get('name') or f"Feature {index + 1}"
        for part_index, part_coords in enumerate(geometry['coordinates']):
            part_properties = dict(properties)
            part_properties['name'] = f"{base_name} (Part {part_index + 1})"
            if 'geometry_type' in part_properties:
                part_properties['geometry_type'] = part_type
            split.append({
                **feature,
                'geometry': {'type': part_type, 'coordinates': part_coords},
                'properties': part_properties
            })
    return split
