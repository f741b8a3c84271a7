"""
Direct Feature Pipeline

Runs caller-supplied features (file uploads, drawn features) through the
same chain as harvested elements, without the Overpass fetcher:

1. Validate geometries and denormalise layer properties
2. Clip to the boundary
3. Split multi-part geometries (optional)
4. Deduplicate against the seed features
"""

from typing import Dict, Iterable, List, Tuple, Union

from core.deduplicator import FingerprintIndex, remove_duplicate_features
from core.feature_assembler import prepare_user_features, split_multi_geometries
from geometry_input.boundary import ClipBoundary, load_boundary
from geometry_input.clipping import clip_features
from utils.logger import get_logger

logger = get_logger(__name__)


def process_input_features(
    features: List[Dict],
    boundary: Union[ClipBoundary, Dict, str],
    layer_name: str,
    domain_name: str,
    seed_features: Iterable[Dict] = (),
    exclude_layers: Iterable[str] = (),
    split_multipart: bool = True
) -> Tuple[List[Dict], Dict]:
    """
    Validate, clip, split and deduplicate caller-supplied features.

    Parameters:
    -----------
    features : List[Dict]
        GeoJSON features (EPSG:4326)
    boundary : Union[ClipBoundary, Dict, str]
        Polygon/MultiPolygon boundary
    layer_name : str
        Layer the features are saved into
    domain_name : str
        Domain of that layer
    seed_features : Iterable[Dict]
        Already known features to deduplicate against
    exclude_layers : Iterable[str]
        Seed layers to ignore, typically [layer_name] when re-uploading a layer
    split_multipart : bool
        Split MultiPolygon/MultiLineString results into single parts

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Kept features and metadata:
        - input_count, kept_count
        - invalid_features: rejected by validation
        - outside_boundary: dropped by the clipper
        - clipping: clip_features() statistics
        - deduplication: remove_duplicate_features() statistics

    Raises:
    -------
    BoundaryParseError
        If the boundary cannot be parsed
    """
    clip_boundary = load_boundary(boundary)

    logger.info(f"Processing {len(features)} feature(s) for {layer_name} ({domain_name})")

    valid, invalid_count = prepare_user_features(features, layer_name, domain_name)

    clipped, clip_metadata = clip_features(valid, clip_boundary, layer_name)
    if clip_metadata['dropped_outside']:
        logger.info(f"  - {clip_metadata['dropped_outside']} feature(s) outside boundary")

    if split_multipart:
        before = len(clipped)
        clipped = split_multi_geometries(clipped)
        if len(clipped) > before:
            logger.info(f"  - Split multi-part geometries into {len(clipped) - before} additional feature(s)")

    index = FingerprintIndex.from_features(seed_features, exclude_layers)
    kept, dedup_metadata = remove_duplicate_features(clipped, index=index)

    duplicates = dedup_metadata['coordinate_duplicates'] + dedup_metadata['geometry_duplicates']
    if duplicates:
        logger.info(f"  - Removed {duplicates} duplicate(s)")

    logger.info(f"  ✓ Kept {len(kept)} feature(s)")

    metadata = {
        'input_count': len(features),
        'kept_count': len(kept),
        'invalid_features': invalid_count,
        'outside_boundary': clip_metadata['dropped_outside'],
        'clipping': clip_metadata,
        'deduplication': dedup_metadata
    }
    return kept, metadata
