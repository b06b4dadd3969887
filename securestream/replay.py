"""Replay guard: monotonic timestamps inside a bounded jitter window."""

import threading
from typing import Callable, Optional, Union

from securestream.codec import current_timestamp, parse_timestamp
from securestream.config import CONFIG
from securestream.logging_utils import get_logger

logger = get_logger("securestream")


def _check_jitter(jitter_ms: int) -> int:
    jitter_ms = int(jitter_ms)
    if jitter_ms < 0:
        raise ValueError("jitter_ms must be >= 0")
    return jitter_ms


class ReplayGuard:
    def __init__(self, jitter_ms: Optional[int] = None, clock: Callable[[], int] = current_timestamp):
        self._jitter_ms = _check_jitter(CONFIG["REPLAY_JITTER_MS"] if jitter_ms is None else jitter_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_accepted = clock()

    @property
    def jitter_ms(self) -> int:
        with self._lock:
            return self._jitter_ms

    def set_jitter(self, jitter_ms: int) -> None:
        jitter_ms = _check_jitter(jitter_ms)
        with self._lock:
            self._jitter_ms = jitter_ms

    @property
    def last_accepted(self) -> int:
        with self._lock:
            return self._last_accepted

    def authenticate(self, additional_data: Union[bytes, str, None]) -> bool:
        t = parse_timestamp(additional_data)
        if t is None:
            logger.debug("Replay guard rejected unparseable timestamp")
            return False
        with self._lock:
            if t <= self._last_accepted:
                logger.debug(
                    "Replay guard rejected non-monotonic timestamp",
                    extra={"timestamp": t, "last_accepted": self._last_accepted},
                )
                return False
            delta = self._clock() - t
            if delta < 0 or delta > self._jitter_ms:
                logger.debug(
                    "Replay guard rejected timestamp outside jitter window",
                    extra={"timestamp": t, "delta_ms": delta, "jitter_ms": self._jitter_ms},
                )
                return False
            self._last_accepted = t
            return True

    __call__ = authenticate


def auth_timestamp(guard: ReplayGuard, additional_data: Union[bytes, str, None]) -> bool:
    return guard.authenticate(additional_data)
