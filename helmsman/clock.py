from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], int]

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
