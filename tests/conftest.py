"""Shared fixtures: a square boundary, feature factories and a scripted HTTP session."""

import pytest

from geometry_input.boundary import load_boundary

SQUARE = {
    'type': 'Polygon',
    'coordinates': [[[0, 0], [4, 0], [4, 4], [0, 4], [0, 0]]]
}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Returns (or raises) the scripted responses in order and records every post."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []
        self.closed = False

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({'url': url, 'data': data, 'headers': headers, 'timeout': timeout})
        if not self.responses:
            raise AssertionError("Unexpected request")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def ok(elements):
    return FakeResponse(200, {'elements': elements})


def node(node_id, lon, lat, **tags):
    return {'type': 'node', 'id': node_id, 'lat': lat, 'lon': lon, 'tags': tags}


def way(way_id, coords, **tags):
    return {
        'type': 'way',
        'id': way_id,
        'geometry': [{'lat': lat, 'lon': lon} for lon, lat in coords],
        'tags': tags
    }


@pytest.fixture
def square():
    return SQUARE


@pytest.fixture
def boundary():
    return load_boundary(SQUARE)


@pytest.fixture
def make_feature():
    def _make(geom_type, coordinates, **properties):
        return {
            'type': 'Feature',
            'geometry': {'type': geom_type, 'coordinates': coordinates},
            'properties': dict(properties)
        }
    return _make


@pytest.fixture
def make_session():
    return lambda *responses: FakeSession(responses)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def harvest_config():
    """Configuration with default fetch settings and no catalogue layers."""
    return {'layers': [], 'settings': {}}
