"""
Failure counter and liveness watchdog.

Both trip a recovery callback; neither performs the recovery itself. The
supervisor wires the callbacks to its reset path.
"""

import threading
import time
from typing import Callable, Optional

from securestream.config import CONFIG
from securestream.logging_utils import get_logger

logger = get_logger("securestream")


def _check_threshold(threshold: int) -> int:
    threshold = int(threshold)
    if threshold < 1:
        raise ValueError("threshold must be >= 1")
    return threshold


class FailureCounter:
    """Consecutive failure count that trips once per threshold crossing."""

    def __init__(self, threshold: Optional[int] = None, on_trip: Optional[Callable[[], None]] = None):
        self._threshold = _check_threshold(CONFIG["DECRYPT_FAILURE_THRESHOLD"] if threshold is None else threshold)
        self._on_trip = on_trip
        self._count = 0
        self._lock = threading.Lock()

    @property
    def threshold(self) -> int:
        with self._lock:
            return self._threshold

    def set_threshold(self, threshold: int) -> None:
        """Change the threshold; the current count is kept."""
        threshold = _check_threshold(threshold)
        with self._lock:
            self._threshold = threshold

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def record_success(self) -> None:
        with self._lock:
            self._count = 0

    def record_failure(self) -> bool:
        """Count one failure; return True when this failure tripped the counter."""
        with self._lock:
            self._count += 1
            threshold = self._threshold
            tripped = self._count >= threshold
            if tripped:
                self._count = 0
        if tripped:
            logger.warning("Failure threshold reached", extra={"threshold": threshold})
            if self._on_trip is not None:
                self._on_trip()
        return tripped


class LivenessWatchdog:
    """Deadline re-armed by inbound traffic or an explicit pong.

    A limit <= 0 disables the watchdog. Once fired it stays quiet; the owner
    is expected to discard it as part of the reset that follows.
    """

    def __init__(
        self,
        limit_s: float,
        on_timeout: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
        poll_s: Optional[float] = None,
    ):
        self.limit_s = float(limit_s)
        self._on_timeout = on_timeout
        self._clock = clock
        self._poll_s = CONFIG["WATCHDOG_POLL_S"] if poll_s is None else float(poll_s)
        self._lock = threading.Lock()
        self._last_alive = clock()
        self._fired = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.limit_s > 0

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._fired

    def mark_alive(self) -> None:
        with self._lock:
            self._last_alive = self._clock()

    pong = mark_alive

    def check(self, now: Optional[float] = None) -> bool:
        """Fire the timeout hook if the deadline has passed; return True if it fired."""
        if not self.enabled:
            return False
        if now is None:
            now = self._clock()
        with self._lock:
            if self._fired or now - self._last_alive < self.limit_s:
                return False
            self._fired = True
            silent_for = now - self._last_alive
        logger.warning(
            "Liveness timeout",
            extra={"limit_s": self.limit_s, "silent_s": round(silent_for, 3)},
        )
        self._on_timeout()
        return True

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self.mark_alive()
        self._thread = threading.Thread(target=self._run, name="liveness-watchdog", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _run(self) -> None:
        while not self._stop.wait(self._poll_s):
            if self.check():
                return
