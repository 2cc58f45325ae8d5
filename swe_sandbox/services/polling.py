"""Poll a probe until it yields a value or time runs out."""

from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


def wait_until(
    probe: Callable[[], Optional[T]],
    timeout_sec: float,
    interval_sec: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Call ``probe`` every ``interval_sec`` until it returns non-None.

    The probe always runs at least once. Returns None when ``timeout_sec``
    elapses first.
    """
    deadline = clock() + timeout_sec
    while True:
        value = probe()
        if value is not None:
            return value
        remaining = deadline - clock()
        if remaining <= 0:
            return None
        sleep(min(interval_sec, remaining))
