"""
Geometry Input Loading Module

Reads vector files through GeoPandas for the direct (non-Overpass) pipeline
and for boundaries supplied as files. Everything is reprojected to
EPSG:4326 and handed on as GeoJSON dicts.

Supports any format GeoPandas can read (GeoJSON, GeoPackage, KML,
Shapefile), including shapefiles wrapped in a ZIP archive.
"""

import json
import tempfile
import zipfile
from pathlib import Path
from typing import Dict, List, Tuple, Union

import geopandas as gpd
import shapely
from pyproj import CRS
from shapely.ops import unary_union

from utils.errors import BoundaryParseError
from utils.geometry_converters import shape_to_geojson
from utils.logger import get_logger

logger = get_logger(__name__)

WGS84 = CRS.from_epsg(4326)
SUPPORTED_TYPES = {'Point', 'MultiPoint', 'LineString', 'MultiLineString', 'Polygon', 'MultiPolygon'}


def load_geometry_file(file_path: Union[str, Path]) -> gpd.GeoDataFrame:
    """
    Load geospatial file and return GeoDataFrame with original CRS.

    Args:
        file_path: Path to geospatial file

    Returns:
        GeoDataFrame with geometries in original CRS

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If file cannot be read or has no features
    """
    file_path_obj = Path(file_path)

    if not file_path_obj.exists():
        raise FileNotFoundError(f"Input file not found: {file_path}")

    logger.info(f"Loading geometry from: {file_path}")

    try:
        # ZIP files containing shapefiles are extracted to a temp directory
        if file_path_obj.suffix.lower() == '.zip':
            logger.info("  - Detected ZIP file, extracting to read shapefile...")
            with tempfile.TemporaryDirectory() as tmpdir:
                with zipfile.ZipFile(file_path, 'r') as zip_ref:
                    zip_ref.extractall(tmpdir)
                shp_files = list(Path(tmpdir).rglob('*.shp'))
                if not shp_files:
                    raise ValueError("No shapefile (.shp) found in ZIP archive")
                if len(shp_files) > 1:
                    logger.warning(f"  - Multiple shapefiles found in ZIP, using first: {shp_files[0].name}")
                gdf = gpd.read_file(shp_files[0])
        else:
            gdf = gpd.read_file(file_path)
    except zipfile.BadZipFile:
        raise ValueError("Invalid ZIP file - file appears to be corrupted")
    except ValueError:
        raise
    except Exception as e:
        raise ValueError(f"Failed to read geospatial file: {e}")

    if gdf.empty:
        raise ValueError("Input file contains no features")

    logger.info(f"  - Loaded {len(gdf)} feature(s)")
    logger.debug(f"  - Geometry types: {gdf.geometry.geom_type.unique().tolist()}")

    return gdf


def to_wgs84(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """
    Reproject a GeoDataFrame to EPSG:4326.

    Files without a CRS are assumed to already hold longitude/latitude, the
    GeoJSON default.
    """
    if gdf.crs is None:
        logger.warning("  ⚠ No CRS defined, assuming EPSG:4326")
        return gdf.set_crs(WGS84)

    if CRS(gdf.crs) == WGS84:
        return gdf

    logger.info(f"  - Reprojecting from {gdf.crs} to EPSG:4326")
    return gdf.to_crs(WGS84)


def load_feature_file(file_path: Union[str, Path]) -> Tuple[List[Dict], Dict]:
    """
    Read a vector file into GeoJSON feature dicts in EPSG:4326.

    MultiPoint geometries are exploded into Points; null and unsupported
    geometries are skipped and counted.

    Parameters:
    -----------
    file_path : Union[str, Path]
        Path to the vector file

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Features and metadata with 'original_file', 'original_crs',
        'feature_count', 'skipped_count' and 'geometry_types'
    """
    gdf = load_geometry_file(file_path)
    original_crs = str(gdf.crs) if gdf.crs is not None else None
    gdf = to_wgs84(gdf)

    null_mask = gdf.geometry.isnull() | gdf.geometry.is_empty
    supported_mask = gdf.geometry.geom_type.isin(SUPPORTED_TYPES)
    usable = gdf[~null_mask & supported_mask]
    skipped = len(gdf) - len(usable)

    if skipped:
        logger.warning(f"  ⚠ Skipped {skipped} feature(s) with null or unsupported geometry")

    # Features travel as [lon, lat]; KML and other 3D sources carry Z
    if usable.geometry.has_z.any():
        logger.info("  - Dropping Z coordinates")
        usable = usable.set_geometry(
            gpd.GeoSeries(shapely.force_2d(usable.geometry.to_numpy()), index=usable.index, crs=usable.crs)
        )

    multipoints = usable.geometry.geom_type == 'MultiPoint'
    if multipoints.any():
        usable = usable.explode(index_parts=False)

    collection = json.loads(usable.to_json(na='drop', drop_id=True, default=str))
    features = collection.get('features', [])

    metadata = {
        'original_file': Path(file_path).name,
        'original_crs': original_crs,
        'feature_count': len(features),
        'skipped_count': skipped,
        'geometry_types': sorted(usable.geometry.geom_type.unique().tolist())
    }
    return features, metadata


def load_boundary_file(file_path: Union[str, Path]) -> Dict:
    """
    Read a boundary file and dissolve its polygons into one geometry.

    Returns:
    --------
    Dict
        GeoJSON Polygon or MultiPolygon in EPSG:4326

    Raises:
    -------
    BoundaryParseError
        If the file cannot be read or contains no polygons
    """
    try:
        gdf = to_wgs84(load_geometry_file(file_path))
    except (FileNotFoundError, ValueError) as e:
        raise BoundaryParseError(str(e)) from e

    polygons = gdf[gdf.geometry.geom_type.isin(['Polygon', 'MultiPolygon'])]
    if polygons.empty:
        raise BoundaryParseError(f"No polygon geometries found in {file_path}")

    if len(polygons) == 1:
        geom = polygons.geometry.iloc[0]
    else:
        logger.info(f"  - Dissolving {len(polygons)} polygons into one boundary")
        geom = unary_union(list(polygons.geometry))

    logger.info(f"  - Boundary: {geom.geom_type}")
    return shape_to_geojson(geom)
