"""
Data models for City Layer Harvester.

Job is one acquisition unit (one topic/layer) issued to the query service;
Progress is the per-job status message a harvest run emits. Features and
geometries stay plain GeoJSON dicts.
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

TagValue = Union[bool, str, list]

GEOMETRY_FAMILIES = ('line', 'polygon', 'mixed')


class JobState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


class ProgressStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Job:
    """
    One acquisition unit for the batch fetcher.

    Attributes:
        tag_filter: OSM tag filter, key -> True | "value" | ["v1", "v2"]
        layer_name: Output layer the features belong to
        domain_name: Domain (category) the layer belongs to
        geometry_family: 'line', 'polygon' or 'mixed'; None resolves the
            family from the configured line/polygon layer lists
    """
    tag_filter: Mapping[str, TagValue]
    layer_name: str
    domain_name: str
    geometry_family: Optional[str] = None

    def __post_init__(self):
        if not self.layer_name:
            raise ValueError("Job requires a layer name")
        if self.geometry_family is not None and self.geometry_family not in GEOMETRY_FAMILIES:
            raise ValueError(f"Unknown geometry family: {self.geometry_family}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Job':
        """
        Build a Job from a caller message or a layers_config.json entry.

        Accepts both the message keys (tagFilter, layerName, domainName) and
        the catalogue keys (tags, name/filename, domain).
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"Job must be a mapping, got {type(data).__name__}")

        tag_filter = data.get('tagFilter', data.get('tags'))
        if not isinstance(tag_filter, Mapping) or not tag_filter:
            raise ValueError(f"Job has no tag filter: {dict(data)!r:.120}")

        return cls(
            tag_filter=dict(tag_filter),
            layer_name=data.get('layerName') or data.get('name') or data.get('filename'),
            domain_name=data.get('domainName') or data.get('domain') or '',
            geometry_family=data.get('geometryFamily') or data.get('geometry_type')
        )


@dataclass
class Progress:
    """Run progress after a job: processed/saved counts out of total."""
    processed: int = 0
    saved: int = 0
    total: int = 0
    status: ProgressStatus = ProgressStatus.PROCESSING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data
