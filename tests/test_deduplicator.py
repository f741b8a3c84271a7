"""Tests for coordinate and geometry fingerprint deduplication."""

import pytest

from core.deduplicator import (
    GEOMETRY_DUPLICATE,
    KEPT,
    FingerprintIndex,
    coordinate_key,
    geometry_key,
    remove_duplicate_features
)


def test_points_within_rounding_are_duplicates(make_feature):
    first = make_feature('Point', [10.000000, 20.000000])
    second = make_feature('Point', [10.0000001, 20.0000001])

    kept, metadata = remove_duplicate_features([first, second])

    assert kept == [first]
    assert metadata['coordinate_duplicates'] == 1


def test_coordinate_key_format(make_feature):
    assert coordinate_key(make_feature('Point', [10.0000001, 20.0000001])) == '20.000000,10.000000'


def test_geometry_key_is_deterministic(make_feature):
    a = make_feature('LineString', [[1.00000001, 2], [3, 4]])
    b = make_feature('LineString', [[1.0, 2.0], [3.0, 4.0]])
    assert geometry_key(a) == geometry_key(b)
    assert geometry_key(a).startswith('LineString:')


def test_first_occurrence_wins_in_original_order(make_feature):
    uniques = [
        make_feature('Point', [1, 1], name='a'),
        make_feature('LineString', [[2, 2], [3, 3]], name='b'),
        make_feature('Polygon', [[[5, 5], [6, 5], [6, 6], [5, 5]]], name='c'),
    ]
    candidates = []
    for feature in uniques:
        candidates.append(feature)
        candidates.append({**feature, 'properties': {'name': 'copy'}})

    kept, metadata = remove_duplicate_features(candidates)

    assert kept == uniques
    assert (len(kept) + metadata['coordinate_duplicates'] + metadata['geometry_duplicates']
            == len(candidates))


@pytest.mark.parametrize('count', [0, 1, 7, 40])
def test_count_conservation(make_feature, count):
    candidates = [make_feature('Point', [i % 5, i % 3]) for i in range(count)]

    kept, metadata = remove_duplicate_features(candidates)

    total = len(kept) + metadata['coordinate_duplicates'] + metadata['geometry_duplicates']
    assert total == count


def test_seed_features_are_not_returned_again(make_feature):
    seed = [make_feature('Point', [1, 1], layer_name='cafes')]
    candidates = [make_feature('Point', [1, 1]), make_feature('Point', [2, 2])]

    kept, metadata = remove_duplicate_features(candidates, seed=seed)

    assert kept == [candidates[1]]
    assert metadata['coordinate_duplicates'] == 1


def test_excluded_seed_layer_is_ignored(make_feature):
    seed = [
        make_feature('Point', [1, 1], layer_name='parks'),
        make_feature('Point', [2, 2], layer_name='cafes'),
    ]
    candidates = [make_feature('Point', [1, 1]), make_feature('Point', [2, 2])]

    kept, _ = remove_duplicate_features(candidates, seed=seed, exclude_layers=['parks'])

    assert kept == [candidates[0]]


def test_unkeyed_features_are_kept_and_counted(make_feature):
    broken = {'type': 'Feature', 'geometry': None, 'properties': {}}
    good = make_feature('Point', [1, 1])

    kept, metadata = remove_duplicate_features([broken, good, broken])

    assert kept == [broken, good, broken]
    assert metadata['unkeyed_features'] == 2
    assert metadata['coordinate_duplicates'] == 0


def test_geometry_match_without_coordinate_match(make_feature):
    feature = make_feature('LineString', [[1, 1], [2, 2]])
    index = FingerprintIndex()
    index.geometry_keys.add(geometry_key(feature))

    assert index.admit(feature) == GEOMETRY_DUPLICATE


def test_shared_index_spans_calls(make_feature):
    index = FingerprintIndex()
    feature = make_feature('Point', [3, 3])

    first, _ = remove_duplicate_features([feature], index=index)
    second, metadata = remove_duplicate_features([feature], index=index)

    assert first == [feature]
    assert second == []
    assert metadata['coordinate_duplicates'] == 1


def test_independent_indexes_share_nothing(make_feature):
    feature = make_feature('Point', [3, 3])
    a, b = FingerprintIndex(), FingerprintIndex()

    assert a.admit(feature) == KEPT
    assert b.admit(feature) == KEPT
