"""
Configuration loading for City Layer Harvester.

This module handles loading and validation of the layer configuration JSON file.

Constants:
    PROJECT_ROOT: Root directory of the project
    CONFIG_DIR: Configuration files directory
    OUTPUT_DIR: Output files directory

Functions:
    load_config: Load and validate layer configuration from JSON
    load_fetch_settings: Query service settings merged over defaults
    load_geometry_settings: Geometry processing settings merged over defaults
    jobs_from_config: Expand the layer catalogue into fetcher Jobs
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

from core.models import Job

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_DIR = PROJECT_ROOT / 'config'
OUTPUT_DIR = PROJECT_ROOT / 'outputs'

FETCH_DEFAULTS = {
    'overpass_url': 'https://overpass-api.de/api/interpreter',
    'user_agent': 'CityLayerHarvester/1.0',
    'query_timeout_seconds': 45,
    'request_timeout_seconds': 90,
    'max_attempts': 3,
    'batch_size': 25,
    'yield_every_batches': 2,
    'yield_seconds': 0.01,
    'job_delay_seconds': 1.0
}

GEOMETRY_DEFAULTS = {
    'line_layers': ['roads', 'sidewalks', 'subways', 'railways', 'waterways'],
    'polygon_layers': ['nature', 'lakes', 'parks', 'open_green_spaces'],
    'boundary_simplify_tolerance': 0.0,
    'coordinate_precision': 6,
    'closed_ring_tolerance': 0.0001,
    'split_multipart_uploads': True
}


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict:
    """
    Load layer configuration from JSON file.

    Reads the layers_config.json file and validates basic structure.

    Parameters:
    -----------
    config_path : Optional[Union[str, Path]]
        Alternative configuration file (defaults to config/layers_config.json)

    Returns:
    --------
    Dict
        Configuration dictionary with 'layers' and 'settings' keys

    Raises:
    -------
    FileNotFoundError
        If configuration file doesn't exist
    json.JSONDecodeError
        If configuration file contains invalid JSON
    KeyError
        If required configuration keys are missing
    """
    config_path = Path(config_path) if config_path else CONFIG_DIR / 'layers_config.json'

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = json.load(f)

    if 'layers' not in config:
        raise KeyError("Configuration missing required 'layers' key")
    if 'settings' not in config:
        raise KeyError("Configuration missing required 'settings' key")

    return config


def load_fetch_settings(config: Optional[Dict] = None) -> Dict:
    """
    Load query service settings from configuration.

    Args:
        config: Configuration dictionary (optional, defaults only if not provided)

    Returns:
        Dictionary with fetch settings; config values override FETCH_DEFAULTS
    """
    fetch_settings = (config or {}).get('settings', {}).get('fetch_settings', {})
    return {**FETCH_DEFAULTS, **fetch_settings}


def load_geometry_settings(config: Optional[Dict] = None) -> Dict:
    """
    Load geometry processing settings from configuration.

    Args:
        config: Configuration dictionary (optional, defaults only if not provided)

    Returns:
        Dictionary with geometry settings

    Defaults:
        - line_layers / polygon_layers: layers whose geometry family is fixed
        - boundary_simplify_tolerance: 0.0 (boundary used as supplied)
        - coordinate_precision: 6 decimals for fingerprints
        - closed_ring_tolerance: 1e-4 degrees for way closure
        - split_multipart_uploads: True
    """
    geometry_settings = (config or {}).get('geometry_settings', {})
    return {**GEOMETRY_DEFAULTS, **geometry_settings}


def jobs_from_config(config: Dict, domains: Optional[List[str]] = None) -> List[Job]:
    """
    Expand the configured layer catalogue into Jobs.

    Parameters:
    -----------
    config : Dict
        Configuration dictionary with a 'layers' list
    domains : Optional[List[str]]
        Restrict to these domains (all domains if None)

    Returns:
    --------
    List[Job]
        Jobs in catalogue order, skipping layers with "enabled": false
    """
    jobs = []
    for layer in config['layers']:
        if not layer.get('enabled', True):
            continue
        if domains and layer.get('domain') not in domains:
            continue
        jobs.append(Job.from_dict(layer))
    return jobs
