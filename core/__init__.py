"""
Core modules for City Layer Harvester.

This package contains the acquisition side of the harvester: turning
Overpass elements into features, deduplicating them, and running the
resilient per-layer fetch loop.

Modules:
    models: Job and Progress data models
    feature_assembler: Convert Overpass elements into validated features
    deduplicator: Coordinate and geometry fingerprint deduplication
    retry_policy: Declarative retry table and retry helper
    overpass_query: Build and send Overpass queries
    layer_processor: Harvest all layers for a boundary
    worker: Run a harvest on a background thread
    output_generator: Write harvested features and run metadata to disk
"""

__version__ = '1.0.0'
