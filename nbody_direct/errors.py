"""
nbody_direct.errors
Exception taxonomy and the fail-fast helper for device calls.

Device failures are never recovered: the helper logs the failing call site
and terminates the process with ``EXIT_FAILURE``.
"""
from __future__ import annotations

import functools
import logging
import os
import sys

from .config import EXIT_FAILURE

logger = logging.getLogger(__name__)


class NbodyDirectError(Exception):
    """Base class for package errors."""


class DeviceError(NbodyDirectError, RuntimeError):
    """An allocation, transfer, launch or synchronisation failed."""


class CapacityError(NbodyDirectError, ValueError):
    """A host target sub-range exceeds the per-call capacity."""


class UsageError(NbodyDirectError, ValueError):
    """Malformed or out-of-range command line argument."""


def _caller_site(depth: int = 2) -> tuple[str, int]:
    frame = sys._getframe(depth)
    return os.path.basename(frame.f_code.co_filename), frame.f_lineno


def fatal_device_error(err: BaseException, site: tuple[str, int] | None = None):
    """Log ``err`` with file/line context and exit the process."""
    filename, lineno = site if site is not None else _caller_site()
    logger.critical("GPU error %s:%d: '%s'!", filename, lineno, err)
    sys.exit(EXIT_FAILURE)


def gpu_check(func):
    """
    Decorate a device-touching call so that a ``DeviceError`` is fatal.

    The reported site is the line that called the decorated function.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DeviceError as err:
            fatal_device_error(err, site=_caller_site())
    return wrapper


__all__ = [
    'NbodyDirectError',
    'DeviceError',
    'CapacityError',
    'UsageError',
    'fatal_device_error',
    'gpu_check',
]
