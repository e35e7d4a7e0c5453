"""
Logging configuration for orcs.

Quiet by default; ORCS_VERBOSE=1 or --verbose turns on debug output.
Every store also keeps an operations log (orcs-ops.log) of its mutations.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_NAME = "orcs-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

_logger = logging.getLogger("orcs")


def configure_quiet_mode(quiet: bool = True):
    """
    Keep orcs chatter off the terminal.

    Args:
        quiet: If True, only warnings and errors reach stderr.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        _logger.setLevel(logging.WARNING)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send orcs debug output to stderr."""
    warnings.filterwarnings("default")
    if not _has_stderr_handler(_logger):
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(
            "%(asctime)s %(name)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S",
        ))
        _logger.addHandler(console)
    _logger.setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Attach the rotating operations log for a store.

    The log lives at {store_path}/orcs-ops.log and records INFO and above
    whether or not --verbose is set. The handler is returned so the
    store can detach it on close().
    """
    ops_path = Path(store_path) / OPS_LOG_NAME
    ops_path.parent.mkdir(parents=True, exist_ok=True)
    ops = RotatingFileHandler(ops_path, maxBytes=OPS_LOG_MAX_BYTES, backupCount=OPS_LOG_BACKUPS)
    ops.setLevel(logging.INFO)
    ops.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%dT%H:%M:%S",
    ))
    _logger.addHandler(ops)
    # Quiet mode raises the logger to WARNING; the file still wants INFO
    if _logger.level == logging.NOTSET or _logger.level > logging.INFO:
        _logger.setLevel(logging.INFO)
    return ops


def remove_ops_log(handler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    if handler is None:
        return
    _logger.removeHandler(handler)
    handler.close()
