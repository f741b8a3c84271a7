"""
Layer processing module for City Layer Harvester.

This module runs the resilient batch fetcher: for every job (one layer) it
queries Overpass with the retry policy, pushes the returned elements in
batches through assembly, clipping and deduplication, and reports progress.
Jobs run strictly one at a time with a fixed delay between them.

Classes:
    LayerHarvestRun: One harvest run and all of its mutable state

Functions:
    process_all_layers: Build a run for a boundary and job list and execute it
"""

import time
from threading import Event
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import requests

from config.config_loader import load_fetch_settings, load_geometry_settings
from core.deduplicator import FingerprintIndex, remove_duplicate_features
from core.feature_assembler import assemble_features, resolve_geometry_family
from core.models import Job, JobState, Progress, ProgressStatus
from core.overpass_query import fetch_overpass_elements
from geometry_input.boundary import ClipBoundary, load_boundary
from geometry_input.clipping import aggregate_clip_metadata, clip_features, merge_clip_metadata
from utils.errors import RunCancelledError
from utils.logger import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[Dict], None]


class LayerHarvestRun:
    """
    A single harvest run.

    The run owns its boundary, fingerprint index, result buffer and progress
    counters. Two runs never share mutable state, so separate boundaries can
    be harvested concurrently with separate instances.

    Parameters:
    -----------
    boundary : Union[ClipBoundary, Dict, str]
        Polygon/MultiPolygon boundary (GeoJSON dict, Feature or JSON string)
    jobs : Iterable[Union[Job, Dict]]
        Jobs, or job dicts accepted by Job.from_dict. An entry that does not
        parse is recorded as an aborted job and the run moves on
    config : Optional[Dict]
        Configuration from load_config() (defaults when None)
    seed_features : Optional[Iterable[Dict]]
        Already known features; candidates matching them are dropped
    exclude_layers : Iterable[str]
        Seed layers to ignore (the layer being edited)
    session : Optional[requests.Session]
        HTTP session (one is created per run if None)
    progress_callback : Optional[Callable[[Dict], None]]
        Receives a progress dict after every job, then a final one with
        status complete
    cancel_event : Optional[Event]
        Checked before every job and every retry wait
    sleep : Callable[[float], None]
        Wait function for delays, backoff and cooperative yields

    Raises:
    -------
    BoundaryParseError
        If the boundary cannot be parsed (raised by the constructor)
    """

    def __init__(
        self,
        boundary: Union[ClipBoundary, Dict, str],
        jobs: Iterable[Union[Job, Dict]],
        config: Optional[Dict] = None,
        seed_features: Optional[Iterable[Dict]] = None,
        exclude_layers: Iterable[str] = (),
        session=None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[Event] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.fetch_settings = load_fetch_settings(config)
        self.geometry_settings = load_geometry_settings(config)

        self.boundary = load_boundary(
            boundary, self.geometry_settings['boundary_simplify_tolerance']
        )
        self.bbox = self.boundary.bbox
        # Parsed one entry at a time in run()
        self.jobs = list(jobs)

        self.index = FingerprintIndex.from_features(
            seed_features or (),
            exclude_layers,
            self.geometry_settings['coordinate_precision']
        )

        self.session = session
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self.sleep = sleep

        self.results: List[Dict] = []
        self.job_metadata: List[Dict] = []
        self.progress = Progress(total=len(self.jobs))

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelledError(
                f"Run cancelled after {self.progress.processed} of {self.progress.total} jobs"
            )

    def _emit_progress(self) -> None:
        if self.progress_callback is not None:
            self.progress_callback(self.progress.to_dict())

    def _process_elements(self, elements: List[Dict], job: Job, family: str, metadata: Dict) -> None:
        """
        Assemble, clip and deduplicate elements in fixed-size batches.

        Each batch's survivors join the run results as soon as the batch is
        deduplicated, so every fingerprint in the index belongs to a returned
        feature even if a later batch fails.
        """
        batch_size = self.fetch_settings['batch_size']
        yield_every = self.fetch_settings['yield_every_batches']

        metadata.update({
            'assembled_count': 0,
            'rejected_count': 0,
            'clipping': {},
            'deduplication': {'coordinate_duplicates': 0, 'geometry_duplicates': 0, 'unkeyed_features': 0}
        })

        for batch_number, start in enumerate(range(0, len(elements), batch_size), start=1):
            batch = elements[start:start + batch_size]

            features, assembly = assemble_features(
                batch, family, job.layer_name, job.domain_name,
                self.geometry_settings['closed_ring_tolerance']
            )
            metadata['assembled_count'] += assembly['assembled_count']
            metadata['rejected_count'] += assembly['rejected_count']

            clipped, clip_meta = clip_features(features, self.boundary, job.layer_name)
            merge_clip_metadata(metadata['clipping'], clip_meta)

            unique, dedup_meta = remove_duplicate_features(clipped, index=self.index)
            for key in metadata['deduplication']:
                metadata['deduplication'][key] += dedup_meta[key]

            self.results.extend(unique)
            metadata['feature_count'] += len(unique)

            if yield_every and batch_number % yield_every == 0:
                self.sleep(self.fetch_settings['yield_seconds'])

    def _invalid_job_metadata(self, entry, position: int, error: Exception) -> Dict:
        """Metadata for a job entry that could not be turned into a Job."""
        layer_name = None
        if isinstance(entry, Mapping):
            layer_name = entry.get('layerName') or entry.get('name') or entry.get('filename')
            domain_name = entry.get('domainName') or entry.get('domain') or ''
        else:
            domain_name = ''

        metadata = {
            'layer_name': layer_name or f"job {position + 1}",
            'domain_name': domain_name,
            'geometry_family': None,
            'state': JobState.ABORTED,
            'attempts': 0,
            'element_count': 0,
            'feature_count': 0,
            'query_time': 0.0,
            'error': f"Invalid job: {error}"
        }
        logger.error(f"  ✗ Skipping {metadata['layer_name']}: {metadata['error']}")
        return metadata

    def process_job(self, job: Job) -> Dict:
        """
        Fetch and process one job.

        Failures inside the job are logged and recorded in the returned
        metadata; only cancellation propagates. Features kept by batches
        that finished before a failure stay in the results.

        Returns:
        --------
        Dict
            Job metadata (state, attempts, element/feature counts, clipping
            and deduplication statistics, query_time, error)
        """
        family = resolve_geometry_family(
            job.layer_name,
            job.geometry_family,
            self.geometry_settings['line_layers'],
            self.geometry_settings['polygon_layers']
        )
        metadata = {
            'layer_name': job.layer_name,
            'domain_name': job.domain_name,
            'geometry_family': family,
            'state': JobState.PENDING,
            'attempts': 0,
            'element_count': 0,
            'feature_count': 0,
            'query_time': 0.0,
            'error': None
        }

        logger.info(f"  Querying {job.layer_name} ({job.domain_name}, {family})...")
        start_time = time.time()

        try:
            metadata['state'] = JobState.FETCHING
            elements, fetch_meta = fetch_overpass_elements(
                job.tag_filter,
                self.bbox,
                family,
                self.fetch_settings,
                session=self.session,
                sleep=self.sleep,
                cancel_event=self.cancel_event,
                label=job.layer_name
            )
            metadata['state'] = fetch_meta['state']
            metadata['attempts'] = fetch_meta['attempts']
            metadata['error'] = fetch_meta['last_error'] if fetch_meta['state'] != JobState.SUCCESS else None
            metadata['element_count'] = len(elements)

            self._process_elements(elements, job, family, metadata)

        except RunCancelledError:
            raise
        except Exception as e:
            metadata['state'] = JobState.EXHAUSTED
            metadata['error'] = f"Error processing {job.layer_name}: {e}"
            logger.error(f"    ✗ {metadata['error']}", exc_info=True)

        metadata['query_time'] = time.time() - start_time

        if metadata['feature_count'] > 0:
            logger.info(f"    ✓ Kept {metadata['feature_count']} of {metadata['element_count']} elements")
        elif metadata['state'] == JobState.SUCCESS:
            logger.info("    - No features inside boundary")

        return metadata

    def run(self) -> Tuple[List[Dict], Dict]:
        """
        Process every job in order.

        Returns:
        --------
        Tuple[List[Dict], Dict]
            All kept features in job order, and the run summary (see summary())

        Raises:
        -------
        RunCancelledError
            If the cancel event is set before a job or a retry wait
        """
        logger.info("=" * 80)
        logger.info(f"Harvesting {len(self.jobs)} layer(s) from Overpass")
        logger.info("=" * 80)
        south, west, north, east = self.bbox
        logger.info(f"Bounding box: S {south:.5f}, W {west:.5f}, N {north:.5f}, E {east:.5f}")
        if len(self.index):
            logger.info(f"Deduplicating against {len(self.index)} existing feature(s)")

        run_start = time.time()

        for position, entry in enumerate(self.jobs):
            self._check_cancelled()

            try:
                job = entry if isinstance(entry, Job) else Job.from_dict(entry)
            except ValueError as e:
                metadata = self._invalid_job_metadata(entry, position, e)
            else:
                metadata = self.process_job(job)
            self.job_metadata.append(metadata)

            self.progress.processed += 1
            if metadata['feature_count'] > 0:
                self.progress.saved += 1
            self._emit_progress()
            logger.info("")

            if position < len(self.jobs) - 1:
                self.sleep(self.fetch_settings['job_delay_seconds'])

        self.progress.status = ProgressStatus.COMPLETE
        self._emit_progress()
        summary = self.summary(time.time() - run_start)
        self._log_summary(summary)
        return self.results, summary

    def summary(self, total_time: float = 0.0) -> Dict:
        metas = self.job_metadata
        failed = [m for m in metas if m['state'] in (JobState.EXHAUSTED, JobState.ABORTED)]

        def total(key):
            return sum(m.get('deduplication', {}).get(key, 0) for m in metas)

        return {
            'total_jobs': len(self.jobs),
            'jobs_processed': len(metas),
            'jobs_with_features': sum(1 for m in metas if m['feature_count'] > 0),
            'failed_jobs': [m['layer_name'] for m in failed],
            'total_features': len(self.results),
            'rejected_elements': sum(m.get('rejected_count', 0) for m in metas),
            'coordinate_duplicates': total('coordinate_duplicates'),
            'geometry_duplicates': total('geometry_duplicates'),
            'unkeyed_features': total('unkeyed_features'),
            'clipping': aggregate_clip_metadata(metas),
            'total_time': round(total_time, 2),
            'progress': self.progress.to_dict(),
            'layers': [
                {**m, 'state': m['state'].value} for m in metas
            ]
        }

    def _log_summary(self, summary: Dict) -> None:
        logger.info("=" * 80)
        logger.info("Harvest Summary")
        logger.info("=" * 80)
        logger.info(f"Layers processed: {summary['jobs_processed']} of {summary['total_jobs']}")
        logger.info(f"Layers with features: {summary['jobs_with_features']}")
        logger.info(f"Total features kept: {summary['total_features']}")
        duplicates = summary['coordinate_duplicates'] + summary['geometry_duplicates']
        if duplicates:
            logger.info(
                f"Duplicates removed: {duplicates} "
                f"({summary['coordinate_duplicates']} coordinate, {summary['geometry_duplicates']} geometry)"
            )
        clip_stats = summary['clipping']
        if clip_stats['total_features_clipped'] or clip_stats['total_dropped_outside']:
            logger.info(
                f"Clipping: {clip_stats['total_features_clipped']} clipped, "
                f"{clip_stats['total_dropped_outside']} outside boundary"
            )
            if clip_stats['total_clip_failures']:
                logger.warning(
                    f"  Clip failures: {clip_stats['total_clip_failures']} (original geometry kept)"
                )
        if summary['failed_jobs']:
            logger.warning(f"⚠ {len(summary['failed_jobs'])} layer(s) returned no data after errors:")
            for layer_name in summary['failed_jobs']:
                logger.warning(f"  - {layer_name}")
        logger.info(f"Total time: {summary['total_time']:.2f} seconds")
        logger.info("")


def process_all_layers(
    boundary: Union[ClipBoundary, Dict, str],
    jobs: Iterable[Union[Job, Dict]],
    config: Optional[Dict] = None,
    seed_features: Optional[Iterable[Dict]] = None,
    exclude_layers: Iterable[str] = (),
    session=None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[Event] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Tuple[List[Dict], Dict]:
    """
    Harvest all jobs for a boundary.

    Creates a LayerHarvestRun with a shared HTTP session and runs it. See
    LayerHarvestRun for the parameters.

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Kept features and the run summary

    Example:
        >>> features, summary = process_all_layers(boundary, jobs_from_config(config), config)
        >>> summary['progress']['status']
        'complete'
    """
    own_session = session is None
    session = session or requests.Session()
    try:
        harvest = LayerHarvestRun(
            boundary,
            jobs,
            config=config,
            seed_features=seed_features,
            exclude_layers=exclude_layers,
            session=session,
            progress_callback=progress_callback,
            cancel_event=cancel_event,
            sleep=sleep
        )
        return harvest.run()
    finally:
        if own_session:
            session.close()
