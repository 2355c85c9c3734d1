"""Time source and interruptible waits used by every polling loop."""

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        """Wait up to ``seconds``; return True if ``cancel`` was set before the time ran out."""
        ...


class SystemClock:
    """Wall-clock time; waits block on an Event so they can be cut short."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if seconds <= 0:
            return cancel.is_set() if cancel else False
        if cancel is None:
            time.sleep(seconds)
            return False
        return cancel.wait(seconds)
