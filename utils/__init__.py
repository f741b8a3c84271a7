"""
Utility modules for City Layer Harvester.

This package contains utility functions and helpers used throughout the application.

Modules:
    logger: Logging configuration and setup
    errors: Exception taxonomy shared by all pipeline stages
    geometry_converters: GeoJSON <-> Shapely conversion, coordinate rounding, bbox helpers
"""

__version__ = '1.0.0'
