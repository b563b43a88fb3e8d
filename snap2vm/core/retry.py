# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Bounded retry helpers.

Every wait in a recovery run is bounded by an attempt count, never by a
wall-clock deadline: `poll_until` for fixed-delay polling (device visibility,
task completion) and `retry_operation` for exponential backoff on transient
transport errors.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, Tuple, Type, TypeVar, Union

T = TypeVar("T")

Sleep = Callable[[float], None]


def poll_until(
    check: Callable[[int], Optional[T]],
    *,
    attempts: int,
    delay_s: float,
    what: str = "condition",
    logger: Optional[logging.Logger] = None,
    sleep: Sleep = time.sleep,
) -> Optional[T]:
    """
    Call `check(attempt)` up to `attempts` times with a fixed `delay_s` between calls.

    Returns the first non-None check result, or None when all attempts are used.
    Exceptions raised by `check` propagate to the caller.

    Example:
        ds = poll_until(lambda n: find_datastore(serial), attempts=5, delay_s=10, what="datastore")
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        found = check(attempt)
        if found is not None:
            return found
        if attempt < attempts:
            if logger:
                logger.debug("Waiting for %s (attempt %d/%d), next check in %.1fs", what, attempt, attempts, delay_s)
            sleep(delay_s)
    if logger:
        logger.debug("Gave up waiting for %s after %d attempts", what, attempts)
    return None


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 1.0,
    max_backoff_s: float = 30.0,
    jitter_s: float = 0.5,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    sleep: Sleep = time.sleep,
) -> T:
    """
    Retry an operation with exponential backoff; re-raises the last error.

    Example:
        items = retry_operation(
            lambda: session.get(url).json(),
            exceptions=(requests.ConnectionError,),
            operation_name="GET /hosts",
            logger=logger,
        )
    """
    last_exception: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            last_exception = e
            if attempt >= max_attempts:
                if logger:
                    logger.error("%s failed after %d attempts: %s", operation_name, max_attempts, e)
                break

            sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
            if jitter_s > 0:
                sleep_time += random.uniform(0, jitter_s)
            if logger:
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                    sleep_time,
                )
            sleep(sleep_time)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError(f"{operation_name} failed with no exception recorded")
