"""Tests for converting Overpass elements into validated features."""

import pytest

from conftest import node, way
from core.feature_assembler import (
    assemble_feature,
    assemble_features,
    is_closed,
    prepare_user_features,
    relation_geometry,
    resolve_geometry_family,
    split_multi_geometries,
    validate_geometry
)
from utils.errors import FeatureValidationError

SQUARE_RING = [[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]


class TestNodes:
    def test_node_becomes_point_with_layer_properties(self):
        element = node(7, 2.5, 48.1, name='Cafe Central', amenity='cafe')

        feature = assemble_feature(element, 'mixed', 'cafes', 'food')

        assert feature['geometry'] == {'type': 'Point', 'coordinates': [2.5, 48.1]}
        props = feature['properties']
        assert props['name'] == 'Cafe Central'
        assert props['feature_name'] == 'Cafe Central'
        assert props['layer_name'] == 'cafes'
        assert props['domain_name'] == 'food'
        assert props['amenity'] == 'cafe'
        assert props['osm_type'] == 'node'
        assert props['osm_id'] == 7
        assert list(props)[:2] == ['name', 'geometry_type']

    @pytest.mark.parametrize('tags, expected', [
        ({'brand': 'Acme', 'operator': 'City'}, 'Acme'),
        ({'operator': 'City', 'ref': 'A1'}, 'City'),
        ({'ref': 'A1'}, 'A1'),
        ({}, None),
    ])
    def test_name_fallback_order(self, tags, expected):
        feature = assemble_feature(node(1, 0, 0, **tags), 'mixed', 'layer', 'domain')
        assert feature['properties']['name'] == expected

    def test_string_coordinates_are_parsed(self):
        element = {'type': 'node', 'id': 1, 'lat': '48.5', 'lon': '2.25'}
        feature = assemble_feature(element, 'mixed', 'layer', 'domain')
        assert feature['geometry']['coordinates'] == [2.25, 48.5]

    @pytest.mark.parametrize('element', [
        {'type': 'node', 'id': 1, 'lat': 95, 'lon': 0},
        {'type': 'node', 'id': 1, 'lat': 'abc', 'lon': 0},
        {'type': 'node', 'id': 1},
        {'id': 1, 'lat': 1, 'lon': 1},
        {'type': 'area', 'id': 1},
        'not an element',
    ])
    def test_malformed_elements_rejected(self, element):
        assert assemble_feature(element, 'mixed', 'layer', 'domain') is None


class TestWays:
    def test_closure_rule(self):
        assert is_closed([[0, 0], [1, 0], [1, 1], [0.00005, 0.00005]])
        assert not is_closed([[0, 0], [1, 0], [1, 1], [0.0002, 0]])
        assert not is_closed([[0, 0], [1, 0], [0, 0]])

    def test_line_family_opens_closed_way(self):
        feature = assemble_feature(way(1, SQUARE_RING, highway='footway'), 'line', 'sidewalks', 'mobility')
        assert feature['geometry'] == {'type': 'LineString', 'coordinates': SQUARE_RING[:-1]}

    def test_polygon_family_closes_open_way(self):
        feature = assemble_feature(way(1, SQUARE_RING[:-1]), 'polygon', 'parks', 'nature')
        assert feature['geometry'] == {'type': 'Polygon', 'coordinates': [SQUARE_RING]}

    def test_polygon_family_rejects_two_point_way(self):
        assert assemble_feature(way(1, [[0, 0], [1, 1]]), 'polygon', 'parks', 'nature') is None

    def test_mixed_family_infers_polygon_for_closed_way(self):
        feature = assemble_feature(way(1, SQUARE_RING, building='yes'), 'mixed', 'buildings', 'urban')
        assert feature['geometry']['type'] == 'Polygon'
        assert feature['properties']['geometry_type'] == 'Polygon'

    def test_mixed_family_infers_line_for_open_way(self):
        feature = assemble_feature(way(1, SQUARE_RING[:-1]), 'mixed', 'layer', 'domain')
        assert feature['geometry'] == {'type': 'LineString', 'coordinates': SQUARE_RING[:-1]}

    def test_invalid_vertices_are_dropped(self):
        element = way(1, [[0, 0], [500, 0], [1, 1]])
        feature = assemble_feature(element, 'line', 'roads', 'mobility')
        assert feature['geometry']['coordinates'] == [[0, 0], [1, 1]]

    def test_way_without_geometry_rejected(self):
        assert assemble_feature({'type': 'way', 'id': 1}, 'line', 'roads', 'mobility') is None


class TestRelations:
    def test_polygon_relation_with_inner_ring(self):
        outer = [[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]]
        inner = [[1, 1], [2, 1], [2, 2], [1, 2], [1, 1]]

        geometry = relation_geometry([('outer', outer), ('inner', inner)], 'polygon')

        assert geometry == {'type': 'Polygon', 'coordinates': [outer, inner]}

    def test_polygon_relation_with_two_outers(self):
        other = [[10, 10], [11, 10], [11, 11], [10, 11], [10, 10]]
        geometry = relation_geometry([('outer', SQUARE_RING), ('outer', other)], 'polygon')
        assert geometry['type'] == 'MultiPolygon'
        assert len(geometry['coordinates']) == 2

    def test_line_relation_members(self):
        element = {
            'type': 'relation',
            'id': 9,
            'tags': {'route': 'subway', 'name': 'M1'},
            'members': [
                {'type': 'way', 'role': '', 'geometry': [{'lat': 0, 'lon': 0}, {'lat': 1, 'lon': 1}]},
                {'type': 'way', 'role': '', 'geometry': [{'lat': 2, 'lon': 2}, {'lat': 3, 'lon': 3}]},
                {'type': 'node', 'role': 'stop', 'lat': 5, 'lon': 5},
            ]
        }

        feature = assemble_feature(element, 'line', 'subways', 'mobility')

        assert feature['geometry'] == {
            'type': 'MultiLineString',
            'coordinates': [[[0, 0], [1, 1]], [[2, 2], [3, 3]]]
        }
        assert feature['properties']['name'] == 'M1'

    def test_mixed_relation_with_several_groups_collapses_to_centroid(self):
        geometry = relation_geometry([('', [[0, 0], [2, 0]]), ('', [[0, 2], [2, 2]])], 'mixed')
        assert geometry['type'] == 'Point'
        assert geometry['coordinates'] == pytest.approx([1, 1])

    def test_mixed_relation_single_coordinate(self):
        assert relation_geometry([('', [[3, 4]])], 'mixed') == {'type': 'Point', 'coordinates': [3, 4]}

    def test_relation_falls_back_to_own_geometry(self):
        element = {
            'type': 'relation',
            'id': 3,
            'geometry': [{'lat': lat, 'lon': lon} for lon, lat in SQUARE_RING[:-1]]
        }
        feature = assemble_feature(element, 'polygon', 'parks', 'nature')
        assert feature['geometry'] == {'type': 'Polygon', 'coordinates': [SQUARE_RING]}

    def test_empty_relation_rejected(self):
        assert assemble_feature({'type': 'relation', 'id': 1, 'members': []}, 'mixed', 'l', 'd') is None


class TestValidation:
    @pytest.mark.parametrize('geometry', [
        None,
        {},
        {'type': 'Circle', 'coordinates': [0, 0]},
        {'type': 'Point', 'coordinates': [1]},
        {'type': 'Point', 'coordinates': [float('nan'), 0]},
        {'type': 'Point', 'coordinates': [181, 0]},
        {'type': 'LineString', 'coordinates': [[0, 0]]},
        {'type': 'Polygon', 'coordinates': [[[0, 0], [1, 0], [0, 0]]]},
        {'type': 'MultiLineString', 'coordinates': [[[0, 0], [1, 1]], [[2, 2]]]},
        {'type': 'MultiPolygon', 'coordinates': [[SQUARE_RING], [[[0, 0], [1, 1]]]]},
    ])
    def test_rejects(self, geometry):
        with pytest.raises(FeatureValidationError):
            validate_geometry(geometry)

    def test_accepts_valid_multipolygon(self):
        validate_geometry({'type': 'MultiPolygon', 'coordinates': [[SQUARE_RING]]})


def test_assemble_features_counts_rejects():
    elements = [node(1, 0, 0), {'type': 'node', 'id': 2}, node(3, 1, 1)]

    features, metadata = assemble_features(elements, 'mixed', 'layer', 'domain')

    assert [f['properties']['osm_id'] for f in features] == [1, 3]
    assert metadata == {'element_count': 3, 'assembled_count': 2, 'rejected_count': 1}


@pytest.mark.parametrize('layer, family, expected', [
    ('roads', None, 'line'),
    ('parks', None, 'polygon'),
    ('cafes', None, 'mixed'),
    ('roads', 'mixed', 'mixed'),
])
def test_resolve_geometry_family(layer, family, expected):
    assert resolve_geometry_family(layer, family, ['roads'], ['parks']) == expected


class TestUserFeatures:
    def test_prepare_sets_layer_properties_and_skips_invalid(self, make_feature):
        features = [
            make_feature('Point', [1, 1], name='Kiosk', kind='shop'),
            make_feature('Point', [1, 999]),
            {'type': 'Point', 'coordinates': [1, 1]},
        ]

        prepared, rejected = prepare_user_features(features, 'kiosks', 'commerce')

        assert rejected == 2
        assert len(prepared) == 1
        props = prepared[0]['properties']
        assert props['name'] == 'Kiosk'
        assert props['feature_name'] == 'Kiosk'
        assert props['layer_name'] == 'kiosks'
        assert props['domain_name'] == 'commerce'
        assert props['kind'] == 'shop'
        assert features[0]['properties'] == {'name': 'Kiosk', 'kind': 'shop'}

    def test_split_multi_geometries(self, make_feature):
        other = [[10, 10], [11, 10], [11, 11], [10, 11], [10, 10]]
        features = [
            make_feature('MultiPolygon', [[SQUARE_RING], [other]], name='Park'),
            make_feature('MultiLineString', [[[0, 0], [1, 1]], [[2, 2], [3, 3]]]),
            make_feature('Point', [0, 0], name='Bench'),
        ]

        split = split_multi_geometries(features)

        assert [f['properties']['name'] for f in split] == [
            'Park (Part 1)', 'Park (Part 2)',
            'Feature 2 (Part 1)', 'Feature 2 (Part 2)',
            'Bench'
        ]
        assert split[0]['geometry'] == {'type': 'Polygon', 'coordinates': [SQUARE_RING]}
        assert split[2]['geometry']['type'] == 'LineString'
        assert split[4] is features[2]
