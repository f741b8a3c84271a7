"""
Feature deduplication module for City Layer Harvester.

Drops features whose coordinate fingerprint or full-geometry fingerprint has
already been seen, either earlier in the same candidate list or in a seed set
of already known features (possibly from other domains).

Fingerprints:
    CoordKey: representative coordinate rounded to 6 decimals, "lat,lon"
    GeomKey:  "<geometry type>:<json of the rounded coordinate array>"

Classes:
    FingerprintIndex: The two key sets owned by one pipeline run

Functions:
    coordinate_key: CoordKey of a feature (or None)
    geometry_key: GeomKey of a feature (or None)
    remove_duplicate_features: Filter candidates against a seed/index
"""

import json
from typing import Dict, Iterable, List, Optional, Set, Tuple

from geometry_input.primitives import representative_coordinate
from utils.geometry_converters import round_coordinates
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_PRECISION = 6

# Outcomes of FingerprintIndex.admit
KEPT = 'kept'
UNKEYED = 'unkeyed'
COORDINATE_DUPLICATE = 'coordinate'
GEOMETRY_DUPLICATE = 'geometry'


def coordinate_key(feature: Dict, precision: int = DEFAULT_PRECISION) -> Optional[str]:
    """
    Coordinate fingerprint of a feature.

    Example:
        >>> coordinate_key({'geometry': {'type': 'Point', 'coordinates': [10.0000001, 20.0000001]}})
        '20.000000,10.000000'
    """
    coord = representative_coordinate((feature or {}).get('geometry'))
    if coord is None:
        return None
    return f"{coord[1]:.{precision}f},{coord[0]:.{precision}f}"


def geometry_key(feature: Dict, precision: int = DEFAULT_PRECISION) -> Optional[str]:
    """Full-geometry fingerprint of a feature, or None if it has no coordinates."""
    geometry = (feature or {}).get('geometry')
    if not isinstance(geometry, dict) or not geometry.get('type'):
        return None
    coords = geometry.get('coordinates')
    if not coords:
        return None
    try:
        rounded = round_coordinates(coords, precision)
    except (TypeError, ValueError, IndexError):
        return None
    return f"{geometry['type']}:{json.dumps(rounded, separators=(',', ':'))}"


class FingerprintIndex:
    """
    Coordinate and geometry key sets of one pipeline run.

    The sets only ever grow. Each run owns its own index so that concurrent
    runs never see each other's features.
    """

    def __init__(self, precision: int = DEFAULT_PRECISION):
        self.precision = precision
        self.coordinate_keys: Set[str] = set()
        self.geometry_keys: Set[str] = set()

    def __len__(self) -> int:
        return len(self.geometry_keys)

    @classmethod
    def from_features(
        cls,
        seed: Iterable[Dict] = (),
        exclude_layers: Iterable[str] = (),
        precision: int = DEFAULT_PRECISION
    ) -> 'FingerprintIndex':
        """
        Build an index pre-seeded with already known features.

        Parameters:
        -----------
        seed : Iterable[Dict]
            Existing features, e.g. every layer of every domain already saved
        exclude_layers : Iterable[str]
            Layer names to leave out of the seed (the layer being edited, so
            its own features can be replaced)
        precision : int
            Decimal places used for both fingerprints

        Returns:
        --------
        FingerprintIndex
        """
        index = cls(precision)
        excluded = set(exclude_layers)
        seeded = 0

        for feature in seed or ():
            properties = (feature or {}).get('properties') or {}
            if properties.get('layer_name') in excluded:
                continue
            index.add(feature)
            seeded += 1

        if seeded:
            logger.debug(f"  Seeded fingerprint index with {seeded} existing feature(s)")
        return index

    def keys(self, feature: Dict) -> Tuple[Optional[str], Optional[str]]:
        return coordinate_key(feature, self.precision), geometry_key(feature, self.precision)

    def add(self, feature: Dict) -> None:
        coord_key, geom_key = self.keys(feature)
        if coord_key:
            self.coordinate_keys.add(coord_key)
        if geom_key:
            self.geometry_keys.add(geom_key)

    def admit(self, feature: Dict) -> str:
        """
        Check a candidate and record its keys when it is new.

        The coordinate check runs first, so a feature matching both ways is
        reported as a coordinate duplicate.

        Returns:
        --------
        str
            KEPT, UNKEYED (kept, no keys to record), COORDINATE_DUPLICATE or
            GEOMETRY_DUPLICATE
        """
        coord_key, geom_key = self.keys(feature)

        if coord_key is None and geom_key is None:
            return UNKEYED
        if coord_key is not None and coord_key in self.coordinate_keys:
            return COORDINATE_DUPLICATE
        if geom_key is not None and geom_key in self.geometry_keys:
            return GEOMETRY_DUPLICATE

        if coord_key is not None:
            self.coordinate_keys.add(coord_key)
        if geom_key is not None:
            self.geometry_keys.add(geom_key)
        return KEPT


def remove_duplicate_features(
    candidates: List[Dict],
    seed: Iterable[Dict] = (),
    exclude_layers: Iterable[str] = (),
    index: Optional[FingerprintIndex] = None
) -> Tuple[List[Dict], Dict]:
    """
    Remove features that duplicate a seed feature or an earlier candidate.

    Candidates are processed in order and the first occurrence always wins,
    so the kept list preserves the input order.

    Parameters:
    -----------
    candidates : List[Dict]
        Features to filter
    seed : Iterable[Dict]
        Already known features (ignored when an index is passed)
    exclude_layers : Iterable[str]
        Seed layers to leave out (ignored when an index is passed)
    index : Optional[FingerprintIndex]
        Index to check against and extend; lets a run share its fingerprints
        across several calls

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Kept features and metadata:
        - input_count, kept_count
        - coordinate_duplicates, geometry_duplicates
        - unkeyed_features (kept, but had no extractable coordinates)

    Example:
        >>> a = {'geometry': {'type': 'Point', 'coordinates': [10.0, 20.0]}}
        >>> b = {'geometry': {'type': 'Point', 'coordinates': [10.0000001, 20.0000001]}}
        >>> kept, meta = remove_duplicate_features([a, b])
        >>> len(kept), meta['coordinate_duplicates']
        (1, 1)
    """
    if index is None:
        index = FingerprintIndex.from_features(seed, exclude_layers)

    kept = []
    counts = {COORDINATE_DUPLICATE: 0, GEOMETRY_DUPLICATE: 0, UNKEYED: 0}

    for feature in candidates:
        outcome = index.admit(feature)
        if outcome in (KEPT, UNKEYED):
            kept.append(feature)
        if outcome != KEPT:
            counts[outcome] += 1

    metadata = {
        'input_count': len(candidates),
        'kept_count': len(kept),
        'coordinate_duplicates': counts[COORDINATE_DUPLICATE],
        'geometry_duplicates': counts[GEOMETRY_DUPLICATE],
        'unkeyed_features': counts[UNKEYED]
    }

    duplicates = counts[COORDINATE_DUPLICATE] + counts[GEOMETRY_DUPLICATE]
    if duplicates:
        logger.debug(
            f"    Removed {duplicates} duplicate(s) "
            f"({counts[COORDINATE_DUPLICATE]} coordinate, {counts[GEOMETRY_DUPLICATE]} geometry)"
        )
    if counts[UNKEYED]:
        logger.warning(f"    ⚠ Kept {counts[UNKEYED]} feature(s) without extractable coordinates")

    return kept, metadata
