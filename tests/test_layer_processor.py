"""Tests for the sequential harvest run: progress, retries, batching, cancellation."""

import threading

import pytest

from conftest import FakeResponse, node, ok, way
from core.layer_processor import LayerHarvestRun, process_all_layers
from core.models import Job
from utils.errors import BoundaryParseError, RunCancelledError

CAFES = {'tagFilter': {'amenity': 'cafe'}, 'layerName': 'cafes', 'domainName': 'food'}
PARKS = {'tagFilter': {'leisure': 'park'}, 'layerName': 'parks', 'domainName': 'nature'}
ROADS = {'tagFilter': {'highway': True}, 'layerName': 'roads', 'domainName': 'mobility'}


def run(square, jobs, session, sleep, config=None, **kwargs):
    progress = []
    features, summary = process_all_layers(
        square, jobs, config=config, session=session,
        progress_callback=progress.append, sleep=sleep, **kwargs
    )
    return features, summary, progress


def test_job_exhausting_429_retries_yields_nothing_and_run_continues(square, make_session, recording_sleep):
    session = make_session(
        FakeResponse(429), FakeResponse(429), FakeResponse(429),
        ok([node(1, 1, 1, name='Lawn')])
    )

    features, summary, progress = run(square, [CAFES, PARKS], session, recording_sleep)

    assert progress == [
        {'processed': 1, 'saved': 0, 'total': 2, 'status': 'processing'},
        {'processed': 2, 'saved': 1, 'total': 2, 'status': 'processing'},
        {'processed': 2, 'saved': 1, 'total': 2, 'status': 'complete'},
    ]
    assert summary['progress'] == {'processed': 2, 'saved': 1, 'total': 2, 'status': 'complete'}
    assert [f['properties']['layer_name'] for f in features] == ['parks']
    assert summary['failed_jobs'] == ['cafes']
    assert recording_sleep.calls == [3.0, 6.0, 1.0]


def test_client_error_aborts_only_that_job(square, make_session, recording_sleep):
    session = make_session(FakeResponse(400), ok([node(1, 2, 2)]))

    features, summary, progress = run(square, [CAFES, PARKS], session, recording_sleep)

    assert len(session.posts) == 2
    assert progress[-1]['saved'] == 1
    assert summary['layers'][0]['state'] == 'aborted'
    assert len(features) == 1


def test_delay_between_jobs_but_not_after_last(square, make_session, recording_sleep):
    session = make_session(ok([]), ok([]), ok([]))

    run(square, [CAFES, PARKS, ROADS], session, recording_sleep)

    assert recording_sleep.calls == [1.0, 1.0]


def test_elements_are_assembled_clipped_and_deduplicated(square, make_session, recording_sleep):
    session = make_session(
        ok([
            node(1, 1, 1, name='Inside'),
            node(2, 9, 9, name='Outside'),
            node(3, 1.0000001, 1.0000001, name='Duplicate'),
            {'type': 'node', 'id': 4},
        ]),
        ok([way(5, [[-1, 2], [2, 2], [2, 5], [5, 5]], highway='primary', name='Main St')]),
    )

    features, summary, _ = run(square, [CAFES, ROADS], session, recording_sleep)

    assert [f['properties']['name'] for f in features] == ['Inside', 'Main St']
    road = features[1]
    assert road['geometry']['type'] == 'LineString'
    assert road['geometry']['coordinates'][0] == pytest.approx([0, 2])
    assert summary['coordinate_duplicates'] == 1
    assert summary['rejected_elements'] == 1
    assert summary['clipping']['total_dropped_outside'] == 1
    assert summary['layers'][1]['geometry_family'] == 'line'


def test_line_layers_query_ways_and_relations_only(square, make_session, recording_sleep):
    session = make_session(ok([]))
    run(square, [ROADS], session, recording_sleep)
    assert session.posts[0]['data']['data'] == (
        '[out:json][timeout:45];(way[highway](0,0,4,4);relation[highway](0,0,4,4););out geom;'
    )


def test_duplicates_across_jobs_are_removed(square, make_session, recording_sleep):
    same = node(1, 2, 2, name='Shared')
    session = make_session(ok([same]), ok([same]))

    features, summary, progress = run(square, [CAFES, PARKS], session, recording_sleep)

    assert len(features) == 1
    assert progress[-1]['saved'] == 1
    assert summary['coordinate_duplicates'] == 1


def test_seed_features_suppress_known_features(square, make_session, recording_sleep, make_feature):
    seed = [make_feature('Point', [2, 2], layer_name='cafes')]
    session = make_session(ok([node(1, 2, 2)]))

    features, _, progress = run(square, [CAFES], session, recording_sleep, seed_features=seed)

    assert features == []
    assert progress[-1]['saved'] == 0


def test_excluded_seed_layer_does_not_suppress(square, make_session, recording_sleep, make_feature):
    seed = [make_feature('Point', [2, 2], layer_name='cafes')]
    session = make_session(ok([node(1, 2, 2)]))

    features, _, _ = run(square, [CAFES], session, recording_sleep,
                         seed_features=seed, exclude_layers=['cafes'])

    assert len(features) == 1


def test_cooperative_yield_every_second_batch(square, make_session, recording_sleep):
    elements = [node(i, 0.01 * (i + 1), 1) for i in range(60)]
    session = make_session(ok(elements))

    features, _, _ = run(square, [CAFES], session, recording_sleep)

    assert len(features) == 60
    assert recording_sleep.calls == [0.01]


def test_internal_job_failure_does_not_abort_run(square, make_session, recording_sleep, monkeypatch):
    from core import layer_processor

    calls = []

    def flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        return [], {'element_count': 0, 'assembled_count': 0, 'rejected_count': 0}

    monkeypatch.setattr(layer_processor, 'assemble_features', lambda *a, **k: flaky())
    session = make_session(ok([node(1, 1, 1)]), ok([node(2, 2, 2)]))

    features, summary, progress = run(square, [CAFES, PARKS], session, recording_sleep)

    assert [p['processed'] for p in progress] == [1, 2, 2]
    assert summary['layers'][0]['error'].startswith('Error processing cafes')


def test_config_overrides_fetch_settings(square, make_session, recording_sleep):
    config = {'layers': [], 'settings': {'fetch_settings': {'job_delay_seconds': 2.5, 'max_attempts': 1}}}
    session = make_session(FakeResponse(429), ok([]))

    run(square, [CAFES, PARKS], session, recording_sleep, config=config)

    assert recording_sleep.calls == [2.5]


def test_invalid_boundary_is_fatal(make_session, recording_sleep):
    with pytest.raises(BoundaryParseError):
        run({'type': 'Point', 'coordinates': [0, 0]}, [CAFES], make_session(), recording_sleep)


class TestCancellation:
    def test_cancel_before_start(self, square, make_session, recording_sleep):
        cancel = threading.Event()
        cancel.set()
        session = make_session(ok([]))

        with pytest.raises(RunCancelledError):
            run(square, [CAFES], session, recording_sleep, cancel_event=cancel)

        assert session.posts == []

    def test_cancel_between_jobs(self, square, make_session, recording_sleep):
        cancel = threading.Event()
        session = make_session(ok([node(1, 1, 1)]), ok([]))
        harvest = LayerHarvestRun(
            square, [CAFES, PARKS], session=session,
            progress_callback=lambda progress: cancel.set(),
            cancel_event=cancel, sleep=recording_sleep
        )

        with pytest.raises(RunCancelledError):
            harvest.run()

        assert len(session.posts) == 1


def test_runs_do_not_share_state(square, make_session, recording_sleep):
    jobs = [Job.from_dict(CAFES)]
    first = LayerHarvestRun(square, jobs, session=make_session(ok([node(1, 1, 1)])), sleep=recording_sleep)
    second = LayerHarvestRun(square, jobs, session=make_session(ok([node(1, 1, 1)])), sleep=recording_sleep)

    first_features, _ = first.run()
    second_features, _ = second.run()

    assert len(first_features) == 1
    assert len(second_features) == 1
    assert first.index is not second.index


def test_features_from_finished_batches_survive_a_later_batch_failure(square, make_session, recording_sleep,
                                                                      monkeypatch):
    from core import layer_processor

    real_clip = layer_processor.clip_features
    calls = []

    def clip_then_fail(*args, **kwargs):
        calls.append(1)
        if len(calls) == 2:
            raise RuntimeError("clipper crashed")
        return real_clip(*args, **kwargs)

    monkeypatch.setattr(layer_processor, 'clip_features', clip_then_fail)
    cafes = [node(i, 0.1 * (i + 1), 1) for i in range(30)]
    session = make_session(ok(cafes), ok([node(100, 0.1, 1, name='Same spot')]))

    features, summary, _ = run(square, [CAFES, PARKS], session, recording_sleep)

    assert len(features) == 25
    assert all(f['properties']['layer_name'] == 'cafes' for f in features)
    assert summary['layers'][0]['state'] == 'exhausted'
    assert summary['layers'][0]['feature_count'] == 25
    assert summary['layers'][1]['deduplication']['coordinate_duplicates'] == 1
    assert summary['progress']['saved'] == 1


class TestMalformedJobs:
    def test_bad_job_is_aborted_and_the_rest_run(self, square, make_session, recording_sleep):
        broken = {'tagFilter': {}, 'layerName': 'broken'}
        session = make_session(ok([node(1, 1, 1)]), ok([node(2, 2, 2)]))

        features, summary, progress = run(square, [CAFES, broken, PARKS], session, recording_sleep)

        assert len(session.posts) == 2
        assert [f['properties']['layer_name'] for f in features] == ['cafes', 'parks']
        assert [p['processed'] for p in progress] == [1, 2, 3, 3]
        assert progress[-1] == {'processed': 3, 'saved': 2, 'total': 3, 'status': 'complete'}
        assert summary['layers'][1]['state'] == 'aborted'
        assert summary['layers'][1]['error'].startswith('Invalid job')
        assert summary['failed_jobs'] == ['broken']

    def test_entry_that_is_not_a_mapping(self, square, make_session, recording_sleep):
        session = make_session(ok([node(1, 1, 1)]))

        features, summary, _ = run(square, [CAFES, 'amenity=bar'], session, recording_sleep)

        assert len(features) == 1
        assert summary['layers'][1]['layer_name'] == 'job 2'
        assert summary['jobs_processed'] == 2
