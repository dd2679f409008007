"""
Decorators shared by the GPU passthrough tools.

- handle_errors: turn expected failures (an unreadable sysfs attribute) into a default
- retry: re-run a probe that fails while a container is still starting
- require_root: gate commands that write host or container configuration
- timed: debug-log how long a scan or probe took
"""

from __future__ import annotations

import functools
import logging
import os
import time
from typing import Type, Tuple, Callable, Any, Optional

from .exceptions import PermissionDenied

logger = logging.getLogger(__name__)


def handle_errors(
    *exception_types: Type[Exception],
    default: Any = None,
    log_level: int = logging.ERROR,
    reraise: bool = False,
    message: Optional[str] = None,
):
    """
    Catch the given exception types, log them and return ``default``.

    With no types given, any Exception is caught. Tracebacks are only
    attached at ERROR and above so that DEBUG-level misses stay one line.

    Example:
        @handle_errors(OSError, default="", log_level=logging.DEBUG)
        def read_attr(path):
            return path.read_text().strip()
    """
    caught = exception_types or (Exception,)

    def decorator(func: Callable) -> Callable:
        label = message or f"{func.__name__} failed"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except caught as e:
                logger.log(log_level, f"{label}: {e}", exc_info=log_level >= logging.ERROR)
                if reraise:
                    raise
                return default
        return wrapper
    return decorator


def retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
):
    """
    Retry on the given exceptions, sleeping ``delay * backoff**n`` between tries.

    The last exception is re-raised once ``max_attempts`` is used up.
    ``on_retry`` receives the exception and the 1-based attempt that failed.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f"{func.__name__} gave up after {attempt} attempts: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__} attempt {attempt}/{max_attempts} failed: {e}; "
                        f"retrying in {wait:.1f}s"
                    )
                    if on_retry:
                        on_retry(e, attempt)
                    time.sleep(wait)
                    wait *= backoff
        return wrapper
    return decorator


def require_root(func: Callable) -> Callable:
    """Raise PermissionDenied unless running as uid 0."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if os.geteuid() != 0:
            raise PermissionDenied(func.__name__, "run without root privileges")
        return func(*args, **kwargs)
    return wrapper


def timed(func: Callable) -> Callable:
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start = time.monotonic()
        try:
            return func(*args, **kwargs)
        finally:
            elapsed = time.monotonic() - start
            logger.debug(f"{func.__name__} completed in {elapsed:.3f}s")
    return wrapper
