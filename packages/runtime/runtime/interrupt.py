from __future__ import annotations

import threading
from typing import Optional


class InterruptSignal:
    """A flag set by a wall-clock timer and polled by the Python runtime.

    The runtime checks it at its safe points (awaits, ``time.sleep``,
    ``asyncio.sleep``); nothing can stop code that never reaches one.
    """

    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._timeout = timeout_seconds
        self._timer: Optional[threading.Timer] = None

    @property
    def timeout_seconds(self) -> Optional[float]:
        return self._timeout

    def arm(self) -> None:
        if self._timeout is None or self._timer is not None:
            return
        self._timer = threading.Timer(self._timeout, self._event.set)
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def trip(self) -> None:
        self._event.set()

    @property
    def tripped(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True early if the signal trips."""
        return self._event.wait(seconds)

    def __enter__(self) -> "InterruptSignal":
        self.arm()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disarm()
