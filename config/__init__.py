"""
Configuration package for City Layer Harvester.

This package contains configuration loading and validation.

Modules:
    config_loader: Load and validate layer configuration from JSON
"""

__version__ = '1.0.0'
