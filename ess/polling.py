from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def poll_until(
    check: Callable[[], T | None],
    *,
    description: str,
    timeout_s: float | None,
    interval_s: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``check`` every ``interval_s`` until it returns something truthy.

    ``timeout_s=None`` waits forever. Otherwise PollTimeoutError is raised
    once the deadline passes without a truthy result.
    """
    start = clock()
    while True:
        result = check()
        if result:
            return result
        elapsed = clock() - start
        if timeout_s is not None and elapsed >= timeout_s:
            raise PollTimeoutError(f"{description} not observed after {timeout_s:g} seconds")
        logger.debug("Waiting for %s (%.1fs elapsed)", description, elapsed)
        sleep(interval_s)
