import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic time source and blocking waiter used by polling loops"""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by the time module"""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)
