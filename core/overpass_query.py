"""
Overpass API query module.

This module builds Overpass QL queries for a layer's tag filter over the
boundary's bounding box and posts them to the interpreter endpoint. Queries
are sent with POST (form field 'data') to avoid URI length limits.

Functions:
    compile_tag_filter: Tag filter mapping -> Overpass filter clauses
    format_bbox: (south, west, north, east) -> "s,w,n,e"
    build_overpass_query: Full Overpass QL query for one layer
    post_overpass_query: One POST attempt; raises FetchError subclasses
    fetch_overpass_elements: Query with the retry policy applied
"""

import time
from threading import Event
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import requests

from core.retry_policy import request_with_retry
from utils.errors import HTTPStatusError, NetworkError
from utils.logger import get_logger

logger = get_logger(__name__)


def _quote(value) -> str:
    text = str(value).replace('\\', '\\\\').replace('"', '\\"')
    return f'"{text}"'


def compile_tag_filter(tag_filter: Mapping) -> str:
    """
    Compile a tag filter into Overpass filter clauses.

    True selects any value of the key, a list adds one clause per value (all
    must match), and any other value selects that exact value.

    Example:
        >>> compile_tag_filter({'amenity': ['cafe'], 'wheelchair': True, 'shop': 'bakery'})
        '[amenity="cafe"][wheelchair][shop="bakery"]'
    """
    clauses = []
    for key, value in tag_filter.items():
        if value is True:
            clauses.append(f'[{key}]')
        elif isinstance(value, (list, tuple)):
            clauses.extend(f'[{key}={_quote(item)}]' for item in value)
        else:
            clauses.append(f'[{key}={_quote(value)}]')
    return ''.join(clauses)


def format_bbox(bbox: Tuple[float, float, float, float]) -> str:
    south, west, north, east = bbox
    return f"{south},{west},{north},{east}"


def build_overpass_query(
    tag_filter: Mapping,
    bbox: Tuple[float, float, float, float],
    geometry_family: str = 'mixed',
    timeout_seconds: int = 45
) -> str:
    """
    Build the Overpass QL query for one layer.

    Line layers only query ways and relations; every other layer queries
    nodes, ways and relations. Results are requested with 'out geom' so way
    and relation members carry their coordinates inline.

    Parameters:
    -----------
    tag_filter : Mapping
        Layer tag filter (key -> True | value | [values])
    bbox : Tuple[float, float, float, float]
        (south, west, north, east) of the boundary
    geometry_family : str
        'line', 'polygon' or 'mixed'
    timeout_seconds : int
        Server-side query timeout

    Returns:
    --------
    str
        Overpass QL query text
    """
    clauses = compile_tag_filter(tag_filter)
    box = format_bbox(bbox)
    header = f"[out:json][timeout:{timeout_seconds}];"

    if geometry_family == 'line':
        return f"{header}(way{clauses}({box});relation{clauses}({box}););out geom;"
    return f"{header}(nwr{clauses}({box}););out geom;"


def post_overpass_query(
    session,
    url: str,
    query: str,
    user_agent: str,
    timeout: float = 90
) -> List[Dict]:
    """
    Perform one Overpass request.

    Returns:
    --------
    List[Dict]
        The response's 'elements' array

    Raises:
    -------
    HTTPStatusError
        If the server answers with a non-success status
    NetworkError
        On transport failures and unreadable response bodies
    """
    try:
        response = session.post(
            url,
            data={'data': query},
            headers={'User-Agent': user_agent},
            timeout=timeout
        )
    except requests.exceptions.Timeout as e:
        raise NetworkError(f"Request timeout after {timeout}s") from e
    except requests.exceptions.RequestException as e:
        raise NetworkError(f"Request error: {e}") from e

    if response.status_code != 200:
        raise HTTPStatusError(response.status_code)

    try:
        data = response.json()
    except ValueError as e:
        raise NetworkError(f"Invalid JSON response: {e}") from e

    elements = data.get('elements') if isinstance(data, dict) else None
    if not isinstance(elements, list):
        # Overpass reports server-side timeouts in 'remark' with a 200 status
        remark = data.get('remark') if isinstance(data, dict) else None
        raise NetworkError(f"Response has no elements array{': ' + remark if remark else ''}")

    if isinstance(data, dict) and data.get('remark'):
        logger.warning(f"    ⚠ Overpass remark: {data['remark']}")

    return elements


def fetch_overpass_elements(
    tag_filter: Mapping,
    bbox: Tuple[float, float, float, float],
    geometry_family: str,
    fetch_settings: Dict,
    session=None,
    sleep: Callable[[float], None] = time.sleep,
    cancel_event: Optional[Event] = None,
    label: str = 'query'
) -> Tuple[List[Dict], Dict]:
    """
    Query Overpass for one layer, applying the retry policy.

    Parameters:
    -----------
    tag_filter : Mapping
        Layer tag filter
    bbox : Tuple[float, float, float, float]
        (south, west, north, east)
    geometry_family : str
        Geometry family of the layer
    fetch_settings : Dict
        Settings from load_fetch_settings()
    session : Optional[requests.Session]
        HTTP session (a new one is created if None)
    sleep : Callable[[float], None]
        Wait function for retry backoff
    cancel_event : Optional[Event]
        Checked before each retry wait
    label : str
        Layer name for log messages

    Returns:
    --------
    Tuple[List[Dict], Dict]
        Elements (empty when retries are exhausted or the job is aborted) and
        the retry metadata from request_with_retry plus 'query'
    """
    query = build_overpass_query(
        tag_filter, bbox, geometry_family, fetch_settings['query_timeout_seconds']
    )
    logger.debug(f"Overpass query for {label}: {query}")

    own_session = session is None
    session = session or requests.Session()

    def send():
        return post_overpass_query(
            session,
            fetch_settings['overpass_url'],
            query,
            fetch_settings['user_agent'],
            fetch_settings['request_timeout_seconds']
        )

    try:
        elements, metadata = request_with_retry(
            send,
            max_attempts=fetch_settings['max_attempts'],
            sleep=sleep,
            cancel_event=cancel_event,
            label=label
        )
    finally:
        if own_session:
            session.close()

    metadata['query'] = query
    return elements or [], metadata
