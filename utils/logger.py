"""
Logging for City Layer Harvester.

All modules log under the 'citylayers' logger. A harvest prints its layer
banners and ✓/⚠/✗ lines to the console; the per-run log file additionally
keeps DEBUG detail such as rejected elements, retry waits and clip fallbacks.

Example:
    >>> log_file = setup_logging()
    >>> get_logger(__name__).info("Harvest started")
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional

ROOT_LOGGER_NAME = 'citylayers'
LOG_DIR = Path(__file__).parent.parent / 'logs'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Optional[Path] = None, verbose: bool = False) -> Path:
    """
    Attach a console handler and a timestamped harvest log file.

    Calling it again (one call per CLI command or test) replaces the
    handlers of the previous run.

    Parameters:
    -----------
    log_dir : Optional[Path]
        Directory for harvest_<timestamp>.log files (defaults to logs/ in
        the project root)
    verbose : bool
        Also print DEBUG records to the console

    Returns:
    --------
    Path
        The log file of this run
    """
    log_dir = Path(log_dir or LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"harvest_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter('%(message)s'))
    root.addHandler(console)

    run_file = logging.FileHandler(log_file, encoding='utf-8')
    run_file.setLevel(logging.DEBUG)
    run_file.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    root.addHandler(run_file)

    root.debug(f"Harvest log: {log_file}")
    return log_file


def get_logger(name: str) -> logging.Logger:
    """Module logger below 'citylayers', e.g. citylayers.core.worker."""
    return logging.getLogger(f'{ROOT_LOGGER_NAME}.{name}')
