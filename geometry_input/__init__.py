"""
Geometry Input Processing Package

This package holds the geometric core of City Layer Harvester: boundary
loading, geometry primitives, the boundary clipper, file input and the
direct (non-Overpass) feature pipeline.

Modules:
    boundary: Parse and prepare the clip boundary
    primitives: Point-in-boundary, segment crossings, centroid fallback
    clipping: Clip features to the boundary
    load_input: Read vector files and boundaries through GeoPandas
    pipeline: Validate, clip, split and deduplicate caller-supplied features

Usage:
    from geometry_input.boundary import load_boundary
    from geometry_input.clipping import clip_feature

    boundary = load_boundary(city_polygon)
    parts = clip_feature(feature, boundary)
"""

__version__ = '1.0.0'
