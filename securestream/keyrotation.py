"""Detect public-key blocks in helper output and hot-swap the external key."""

import re
import threading
from typing import Callable, Optional

from securestream.config import CONFIG
from securestream.exceptions import KeyExchangeError, KeyRotationError
from securestream.keyexchange import KeyExchangeStore
from securestream.logging_utils import METRICS, get_logger, key_fingerprint

logger = get_logger("securestream")

# Any body is captured; load_public_key() decides whether it is a key.
PUBLIC_KEY_BLOCK = re.compile(
    r"-----BEGIN ([A-Z0-9 ]*PUBLIC KEY)-----"
    r".*?"
    r"-----END \1-----",
    re.DOTALL,
)
_BEGIN_MARKER = "-----BEGIN "


def find_public_key_block(text: str) -> Optional[str]:
    match = PUBLIC_KEY_BLOCK.search(text)
    return match.group(0) if match else None


class KeyRotationWatcher:
    """Feeds PEM blocks found in helper stdout into the current session.

    Output arrives in arbitrary chunks, so a block split across two reads is
    reassembled from a bounded rolling buffer.
    """

    def __init__(
        self,
        session_provider: Callable[[], Optional[KeyExchangeStore]],
        on_failure: Callable[[KeyRotationError], None],
        buffer_bytes: Optional[int] = None,
    ):
        self._session_provider = session_provider
        self._on_failure = on_failure
        self._limit = CONFIG["KEY_ROTATION_BUFFER_BYTES"] if buffer_bytes is None else int(buffer_bytes)
        self._buffer = ""
        self._lock = threading.Lock()
        self.rotations = 0

    def feed(self, chunk: str) -> int:
        """Scan one output chunk; return the number of keys applied."""
        blocks = []
        with self._lock:
            self._buffer += chunk
            while True:
                match = PUBLIC_KEY_BLOCK.search(self._buffer)
                if match is None:
                    break
                blocks.append(match.group(0))
                self._buffer = self._buffer[match.end():]
            self._trim()

        applied = 0
        for block in blocks:
            session = self._session_provider()
            if session is None:
                continue
            try:
                session.set_external_public_key(block)
            except KeyExchangeError as exc:
                logger.error("Rejected rotated public key", extra={"error": str(exc)})
                self._on_failure(KeyRotationError(f"malformed public key block: {exc}"))
                return applied
            applied += 1
            self.rotations += 1
            METRICS.counter("key_rotations").inc()
            logger.info(
                "External public key rotated",
                extra={"fingerprint": key_fingerprint(session.external_public_key() or "")},
            )
        return applied

    def _trim(self) -> None:
        # Keep only a possible unfinished block.
        start = self._buffer.rfind(_BEGIN_MARKER)
        if start == -1:
            # A marker may be split at the chunk boundary.
            self._buffer = self._buffer[-(len(_BEGIN_MARKER) - 1):]
        elif start > 0:
            self._buffer = self._buffer[start:]
        if len(self._buffer) > self._limit:
            self._buffer = self._buffer[-self._limit:]

    def reset(self) -> None:
        with self._lock:
            self._buffer = ""
