"""
Exception taxonomy for City Layer Harvester.

Only BoundaryParseError, RunCancelledError and unexpected exceptions ever
reach the caller of a harvest run. The other errors are raised at element or
job level and absorbed into counters by the layer processor and the clipper.

Classes:
    HarvestError: Base class for all harvester errors
    FeatureValidationError: Malformed element or geometry (skipped)
    GeometryOperationError: A clip/intersection operation failed
    FetchError: Base for per-job acquisition failures
    NetworkError: Transport failure (connection reset, timeout, bad JSON)
    HTTPStatusError: Non-success HTTP status from the query service
    BoundaryParseError: Caller supplied an unusable boundary (fatal)
    RunCancelledError: The run was cancelled between jobs (fatal)
"""

from typing import Optional


class HarvestError(Exception):
    """Base class for all harvester errors."""


class FeatureValidationError(HarvestError):
    """Raised when an element or geometry fails validation."""


class GeometryOperationError(HarvestError):
    """Raised when a geometric operation (intersection, repair) fails."""


class FetchError(HarvestError):
    """Base class for failures while acquiring data for a single job."""


class NetworkError(FetchError):
    """Transport-level failure talking to the query service."""


class HTTPStatusError(FetchError):
    """The query service answered with a non-success status code."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")


class BoundaryParseError(HarvestError):
    """The boundary geometry could not be parsed; aborts the whole run."""


class RunCancelledError(HarvestError):
    """The run was cancelled by its host before all jobs were processed."""
