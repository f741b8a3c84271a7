"""
City Layer Harvester - Main Entry Point

Collects city map layers from OpenStreetMap (Overpass API) or from vector
files, clips them to a city boundary, and removes duplicates across layers.

Commands:
    harvest: Query every configured layer for a boundary
    clip: Run features from a file through validation, clipping and dedup

Usage:
    python city_layer_harvester.py harvest city.geojson
    python city_layer_harvester.py clip parks.gpkg city.geojson --layer parks --domain nature
"""

import time
from pathlib import Path
from typing import Optional, Tuple

import click

from config.config_loader import jobs_from_config, load_config, load_geometry_settings
from core.layer_processor import process_all_layers
from core.output_generator import generate_output, write_feature_collection
from geometry_input.load_input import load_boundary_file, load_feature_file
from geometry_input.pipeline import process_input_features
from utils.errors import HarvestError
from utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _load_seed(seed: Optional[str]):
    if not seed:
        return []
    features, _ = load_feature_file(seed)
    logger.info(f"Seed features loaded: {len(features)}")
    return features


def _finish(features, summary, boundary, output: Optional[str], start_time: float, log_file: Path) -> None:
    if output:
        path = write_feature_collection(features, output)
        logger.info(f"✓ Features saved to: {path}")
    else:
        path = generate_output(features, summary, boundary)
        logger.info(f"✓ Output directory: {path}")

    logger.info("")
    logger.info("✓ WORKFLOW COMPLETE")
    logger.info(f"✓ Total execution time: {time.time() - start_time:.2f} seconds")
    logger.info(f"✓ Log file: {log_file}")
    logger.info("")


def _fail(error: Exception, start_time: float, log_file: Path) -> None:
    logger.error("")
    logger.error("=" * 80)
    logger.error("✗ WORKFLOW FAILED")
    logger.error("=" * 80)
    logger.error(f"Error: {error}", exc_info=not isinstance(error, HarvestError))
    logger.error(f"Workflow failed after {time.time() - start_time:.2f} seconds")
    logger.error(f"See log file for details: {log_file}")
    logger.error("=" * 80)
    raise click.ClickException(str(error))


def _banner(title: str, log_file: Path) -> None:
    logger.info("=" * 80)
    logger.info(f"CITY LAYER HARVESTER - {title}")
    logger.info("=" * 80)
    logger.info(f"Log file: {log_file}")
    logger.info("")


@click.group()
def cli():
    """Collect, clip and deduplicate city map layers."""
    pass


@cli.command()
@click.argument('boundary', type=click.Path(exists=True, dir_okay=False))
@click.option('--layers-config', '-c', type=click.Path(exists=True, dir_okay=False),
              help='Layer configuration JSON (defaults to config/layers_config.json)')
@click.option('--domain', '-d', 'domains', multiple=True, help='Only harvest layers of this domain')
@click.option('--seed', '-s', type=click.Path(exists=True, dir_okay=False),
              help='Existing features to deduplicate against')
@click.option('--exclude-layer', 'exclude_layers', multiple=True,
              help='Seed layer to ignore during deduplication')
@click.option('--output', '-o', type=click.Path(dir_okay=False),
              help='Write a single GeoJSON FeatureCollection instead of an output directory')
@click.option('--verbose', '-v', is_flag=True, help='Print debug messages to the console')
def harvest(boundary: str, layers_config: Optional[str], domains: Tuple[str, ...], seed: Optional[str],
            exclude_layers: Tuple[str, ...], output: Optional[str], verbose: bool):
    """Harvest every configured layer inside BOUNDARY from OpenStreetMap."""
    log_file = setup_logging(verbose=verbose)
    start_time = time.time()
    _banner("Overpass Harvest", log_file)

    try:
        config = load_config(layers_config)
        jobs = jobs_from_config(config, list(domains) or None)
        logger.info(f"Configuration loaded: {len(jobs)} layer(s) selected")

        boundary_geometry = load_boundary_file(boundary)
        seed_features = _load_seed(seed)
        logger.info("")

        def report(progress):
            if progress['status'] == 'complete':
                click.echo(f"Harvest complete: {progress['saved']} of {progress['total']} "
                           f"layer(s) with features")
            else:
                click.echo(f"[{progress['processed']}/{progress['total']}] "
                           f"{progress['saved']} layer(s) with features")

        features, summary = process_all_layers(
            boundary_geometry,
            jobs,
            config=config,
            seed_features=seed_features,
            exclude_layers=exclude_layers,
            progress_callback=report
        )

        if not features:
            logger.warning("⚠ WARNING: No features found inside the boundary in any layer.")

        _finish(features, summary, boundary_geometry, output, start_time, log_file)
    except (HarvestError, FileNotFoundError, KeyError, ValueError) as e:
        _fail(e, start_time, log_file)


@cli.command()
@click.argument('features_file', metavar='FEATURES', type=click.Path(exists=True, dir_okay=False))
@click.argument('boundary', type=click.Path(exists=True, dir_okay=False))
@click.option('--layer', '-l', required=True, help='Layer the features belong to')
@click.option('--domain', '-d', required=True, help='Domain the layer belongs to')
@click.option('--seed', '-s', type=click.Path(exists=True, dir_okay=False),
              help='Existing features to deduplicate against')
@click.option('--layers-config', '-c', type=click.Path(exists=True, dir_okay=False),
              help='Layer configuration JSON (defaults to config/layers_config.json)')
@click.option('--keep-multipart', is_flag=True, help='Do not split multi-part geometries')
@click.option('--output', '-o', type=click.Path(dir_okay=False),
              help='Write a single GeoJSON FeatureCollection instead of an output directory')
@click.option('--verbose', '-v', is_flag=True, help='Print debug messages to the console')
def clip(features_file: str, boundary: str, layer: str, domain: str, seed: Optional[str],
         layers_config: Optional[str], keep_multipart: bool, output: Optional[str], verbose: bool):
    """Clip and deduplicate the features in FEATURES to BOUNDARY."""
    log_file = setup_logging(verbose=verbose)
    start_time = time.time()
    _banner("Feature Upload", log_file)

    try:
        geometry_settings = load_geometry_settings(load_config(layers_config))
        features, file_metadata = load_feature_file(features_file)
        boundary_geometry = load_boundary_file(boundary)
        seed_features = _load_seed(seed)
        logger.info("")

        kept, metadata = process_input_features(
            features,
            boundary_geometry,
            layer,
            domain,
            seed_features=seed_features,
            exclude_layers=[layer],
            split_multipart=geometry_settings['split_multipart_uploads'] and not keep_multipart
        )
        metadata['input_file'] = file_metadata

        click.echo(
            f"{metadata['kept_count']} kept, {metadata['outside_boundary']} outside boundary, "
            f"{metadata['invalid_features']} invalid, "
            f"{metadata['deduplication']['coordinate_duplicates'] + metadata['deduplication']['geometry_duplicates']}"
            f" duplicate(s)"
        )
        _finish(kept, metadata, boundary_geometry, output, start_time, log_file)
    except (HarvestError, FileNotFoundError, KeyError, ValueError) as e:
        _fail(e, start_time, log_file)


if __name__ == "__main__":
    cli()
