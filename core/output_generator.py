"""
Output generation module for City Layer Harvester.

This module saves harvested or processed features to disk. Creates a
timestamped directory with the combined GeoJSON, one GeoJSON per layer, the
boundary and a metadata file.

Functions:
    write_feature_collection: Save features as a GeoJSON FeatureCollection
    generate_output: Save features, boundary and metadata to an output directory
"""

import json
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from config.config_loader import OUTPUT_DIR
from utils.logger import get_logger

logger = get_logger(__name__)


def _safe_name(layer_name: str) -> str:
    return layer_name.replace(' ', '_').replace('/', '_').lower()


def write_feature_collection(features: List[Dict], file_path: Union[str, Path]) -> Path:
    """Write features to a GeoJSON FeatureCollection file."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, 'w', encoding='utf-8') as f:
        json.dump({'type': 'FeatureCollection', 'features': features}, f, default=str)
    return file_path


def generate_output(
    features: List[Dict],
    summary: Dict,
    boundary: Optional[Dict] = None,
    output_name: Optional[str] = None,
    output_dir: Optional[Path] = None
) -> Path:
    """
    Generate an output directory with GeoJSON data files and metadata.

    Creates a timestamped output directory containing:
    - features.geojson: All kept features
    - data/<layer>.geojson: Features grouped by layer_name
    - boundary.geojson: The clip boundary (if given)
    - metadata.json: Run summary

    Parameters:
    -----------
    features : List[Dict]
        Kept features
    summary : Dict
        Run or pipeline metadata
    boundary : Optional[Dict]
        Boundary geometry
    output_name : Optional[str]
        Custom output directory name (defaults to harvest_<timestamp>)
    output_dir : Optional[Path]
        Parent directory (defaults to OUTPUT_DIR)

    Returns:
    --------
    Path
        Path to the output directory

    Example:
        >>> output_path = generate_output(features, summary, boundary)
        >>> output_path
        Path('outputs/harvest_20250108_143022')
    """
    logger.info("=" * 80)
    logger.info("Generating Output Files")
    logger.info("=" * 80)

    if output_name is None:
        output_name = f"harvest_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    output_path = Path(output_dir or OUTPUT_DIR) / output_name
    output_path.mkdir(parents=True, exist_ok=True)
    data_path = output_path / 'data'
    data_path.mkdir(exist_ok=True)

    logger.info(f"Output directory: {output_path}")

    write_feature_collection(features, output_path / 'features.geojson')

    layers: Dict[str, List[Dict]] = OrderedDict()
    for feature in features:
        layer_name = (feature.get('properties') or {}).get('layer_name') or 'unassigned'
        layers.setdefault(layer_name, []).append(feature)

    for layer_name, layer_features in layers.items():
        logger.info(f"  - Saving {layer_name} ({len(layer_features)} features)...")
        write_feature_collection(layer_features, data_path / f'{_safe_name(layer_name)}.geojson')

    if boundary is not None:
        with open(output_path / 'boundary.geojson', 'w', encoding='utf-8') as f:
            json.dump({'type': 'Feature', 'geometry': boundary, 'properties': {}}, f)

    logger.info("  - Saving metadata...")
    metadata = {
        'generated_at': datetime.now().isoformat(),
        'total_features': len(features),
        'layers': {name: len(items) for name, items in layers.items()},
        'summary': summary
    }
    with open(output_path / 'metadata.json', 'w', encoding='utf-8') as f:
        json.dump(metadata, f, indent=2, default=str)

    return output_path
