"""
Background harvest worker.

Runs a harvest off the caller's thread. The caller sends one message
(boundary + job list) and reads a queue of messages back:

    {'progress': {...}}                              after every job
    {'results': [...], 'progress': {...}, 'summary': {...}}   once, at the end
    {'error': '...'}                                 instead of results, on failure
    {'error': '...', 'cancelled': True}              when the run was cancelled

Exactly one terminal message (results or error) is put on the queue.
"""

import queue
import threading
import time
from typing import Callable, Dict, Optional

import requests

from core.layer_processor import LayerHarvestRun
from core.models import ProgressStatus
from utils.errors import BoundaryParseError, RunCancelledError
from utils.logger import get_logger

logger = get_logger(__name__)


class HarvestWorker:
    """Handle to a running harvest: its message queue, thread and cancel event."""

    def __init__(self, messages: queue.Queue, thread: threading.Thread, cancel_event: threading.Event):
        self.messages = messages
        self.thread = thread
        self.cancel_event = cancel_event

    def cancel(self) -> None:
        """Ask the run to stop before its next job or retry wait."""
        self.cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        self.thread.join(timeout)

    def iter_messages(self, timeout: Optional[float] = None):
        """Yield messages until (and including) the terminal one."""
        while True:
            message = self.messages.get(timeout=timeout)
            yield message
            if 'results' in message or 'error' in message:
                return


def _run(message: Dict, messages: queue.Queue, cancel_event: threading.Event,
         config: Optional[Dict], session, sleep: Callable[[float], None]) -> None:
    def report(progress: Dict) -> None:
        # The complete progress travels with the results message
        if progress['status'] != ProgressStatus.COMPLETE.value:
            messages.put({'progress': progress})

    own_session = session is None
    session = session or requests.Session()
    try:
        harvest = LayerHarvestRun(
            message.get('boundary'),
            message.get('jobs') or [],
            config=config,
            seed_features=message.get('existingFeatures') or message.get('seed_features'),
            exclude_layers=message.get('excludeLayers') or (),
            session=session,
            progress_callback=report,
            cancel_event=cancel_event,
            sleep=sleep
        )
        results, summary = harvest.run()
        messages.put({
            'results': results,
            'progress': summary['progress'],
            'summary': summary
        })
    except RunCancelledError as e:
        logger.warning(f"⚠ {e}")
        messages.put({'error': str(e), 'cancelled': True})
    except BoundaryParseError as e:
        logger.error(f"✗ Invalid boundary: {e}")
        messages.put({'error': f"Invalid boundary: {e}"})
    except Exception as e:
        logger.error(f"✗ Harvest failed: {e}", exc_info=True)
        messages.put({'error': str(e) or e.__class__.__name__})
    finally:
        if own_session:
            session.close()


def start_worker(
    message: Dict,
    config: Optional[Dict] = None,
    session=None,
    sleep: Callable[[float], None] = time.sleep,
    cancel_event: Optional[threading.Event] = None
) -> HarvestWorker:
    """
    Start a harvest on a daemon thread.

    Parameters:
    -----------
    message : Dict
        {'boundary': geometry or JSON string, 'jobs': [job dicts],
         optional 'existingFeatures': [features], 'excludeLayers': [layer names]}
    config : Optional[Dict]
        Configuration from load_config() (defaults when None)
    session : Optional[requests.Session]
        HTTP session (one is created and closed by the worker if None)
    sleep : Callable[[float], None]
        Wait function (injected in tests)
    cancel_event : Optional[threading.Event]
        Event the host sets to cancel the run (a new one if None)

    Returns:
    --------
    HarvestWorker
        Handle with the message queue and a cancel() method
    """
    messages: queue.Queue = queue.Queue()
    cancel_event = cancel_event or threading.Event()

    thread = threading.Thread(
        target=_run,
        args=(message, messages, cancel_event, config, session, sleep),
        name='harvest-worker',
        daemon=True
    )
    thread.start()
    return HarvestWorker(messages, thread, cancel_event)
