"""
Retry policy for query service requests.

The policy is a declarative table mapping a failure class to its backoff
formula; request_with_retry is the one generic helper that consumes it. The
fetch loop never contains retry logic of its own.

Failure classes (attempt is 0-based):
    rate_limited  HTTP 429       wait 3000 ms * 2^attempt, retry
    gateway       HTTP 502/504   wait 5000 ms * 2^attempt, retry
    server_error  other 5xx      wait 2000 ms, retry
    client_error  other 4xx      abort the job, no retry
    network       transport      wait 2000 ms * 2^attempt, retry
"""

import time
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.models import JobState
from utils.errors import FetchError, HTTPStatusError, RunCancelledError
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryRule:
    """How to react to one class of failure."""
    retry: bool
    base_delay_ms: float = 0.0
    exponential: bool = False

    def delay_seconds(self, attempt: int) -> float:
        """Wait before the next attempt, given the 0-based failed attempt."""
        factor = 2 ** attempt if self.exponential else 1
        return self.base_delay_ms * factor / 1000.0


RETRY_POLICY: Dict[str, RetryRule] = {
    'rate_limited': RetryRule(retry=True, base_delay_ms=3000, exponential=True),
    'gateway': RetryRule(retry=True, base_delay_ms=5000, exponential=True),
    'server_error': RetryRule(retry=True, base_delay_ms=2000),
    'client_error': RetryRule(retry=False),
    'network': RetryRule(retry=True, base_delay_ms=2000, exponential=True),
}


def classify_failure(error: FetchError) -> str:
    """Map a fetch failure to its RETRY_POLICY key."""
    if isinstance(error, HTTPStatusError):
        status = error.status_code
        if status == 429:
            return 'rate_limited'
        if status in (502, 504):
            return 'gateway'
        if 500 <= status < 600:
            return 'server_error'
        if 400 <= status < 500:
            return 'client_error'
        # Unexpected 1xx/3xx answers are treated like a broken transport
        return 'network'
    return 'network'


def _check_cancelled(cancel_event: Optional[Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RunCancelledError("Run cancelled")


def request_with_retry(
    send: Callable[[], Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    policy: Optional[Dict[str, RetryRule]] = None,
    sleep: Callable[[float], None] = time.sleep,
    cancel_event: Optional[Event] = None,
    label: str = 'request'
) -> Tuple[Optional[Any], Dict]:
    """
    Call send() until it succeeds, the policy forbids a retry, or attempts run out.

    send() must raise a FetchError subclass (HTTPStatusError, NetworkError)
    for failures the policy should govern; any other exception propagates.

    Parameters:
    -----------
    send : Callable[[], Any]
        Performs one attempt and returns its result
    max_attempts : int
        Attempt cap (default: 3)
    policy : Optional[Dict[str, RetryRule]]
        Override of RETRY_POLICY
    sleep : Callable[[float], None]
        Wait function (injected in tests)
    cancel_event : Optional[Event]
        Checked before every retry wait
    label : str
        Name used in log messages

    Returns:
    --------
    Tuple[Optional[Any], Dict]
        The result (None unless SUCCESS) and metadata:
        - state: JobState.SUCCESS, EXHAUSTED or ABORTED
        - attempts: number of attempts made
        - waits: seconds waited before each retry
        - last_error: message of the last failure, or None

    Raises:
    -------
    RunCancelledError
        If cancel_event is set before a retry wait
    """
    policy = policy or RETRY_POLICY
    waits: List[float] = []
    last_error = None

    for attempt in range(max_attempts):
        try:
            result = send()
        except FetchError as e:
            last_error = str(e)
            failure = classify_failure(e)
            rule = policy[failure]

            if not rule.retry:
                logger.warning(f"    ✗ {label}: {e} (not retryable)")
                return None, {'state': JobState.ABORTED, 'attempts': attempt + 1,
                              'waits': waits, 'last_error': last_error}

            if attempt + 1 >= max_attempts:
                break

            delay = rule.delay_seconds(attempt)
            logger.warning(
                f"    ⚠ {label}: {e} ({failure}), retrying in {delay:.1f}s "
                f"(attempt {attempt + 2}/{max_attempts})"
            )
            _check_cancelled(cancel_event)
            waits.append(delay)
            sleep(delay)
            continue

        return result, {'state': JobState.SUCCESS, 'attempts': attempt + 1,
                        'waits': waits, 'last_error': last_error}

    logger.warning(f"    ✗ {label}: giving up after {max_attempts} attempt(s): {last_error}")
    return None, {'state': JobState.EXHAUSTED, 'attempts': max_attempts,
                  'waits': waits, 'last_error': last_error}
