import hashlib
import json
import logging
import sys
import threading
import time
from pathlib import Path
from typing import Optional

_RESERVED = frozenset((
    "name", "msg", "args", "exc_info", "exc_text", "stack_info", "stack_level", "created",
    "msecs", "relativeCreated", "levelno", "levelname", "pathname", "filename",
    "module", "lineno", "funcName", "thread", "threadName", "processName", "process",
    "taskName",
))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        # Extra fields passed via logger.x(..., extra={...})
        for k, v in record.__dict__.items():
            if k in _RESERVED:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        return json.dumps(payload)


def get_logger(name: str = "securestream") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    level_name = "INFO"
    try:
        from securestream.config import CONFIG
        level_name = str(CONFIG.get("LOG_LEVEL", "INFO")).upper()
    except ImportError:
        pass
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(JsonFormatter())
    logger.addHandler(h)
    logger.propagate = False
    return logger


def configure_file_logger(role: str, logger: Optional[logging.Logger] = None) -> Path:
    """Attach a JSON file handler and return log path."""

    active_logger = logger or get_logger()

    # Drop any previous file handlers we attached to avoid duplicate writes during tests.
    for handler in list(active_logger.handlers):
        if getattr(handler, "_securestream_file_handler", False):
            active_logger.removeHandler(handler)
            handler.close()

    logs_dir = Path("logs")
    logs_dir.mkdir(exist_ok=True)
    timestamp = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    path = logs_dir / f"{role}-{timestamp}.log"

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(JsonFormatter())
    file_handler._securestream_file_handler = True  # type: ignore[attr-defined]
    active_logger.addHandler(file_handler)

    return path


def key_fingerprint(public_key: str) -> str:
    """Short SHA-256 fingerprint so public keys can be logged without dumping them."""
    return hashlib.sha256(public_key.encode("utf-8")).hexdigest()[:16]


# Very small metrics hook (no deps)
class Counter:
    def __init__(self):
        self.value = 0
        self._lock = threading.Lock()

    def inc(self, n: int = 1):
        with self._lock:
            self.value += n

class Gauge:
    def __init__(self): self.value = 0
    def set(self, v: float): self.value = v

class Metrics:
    def __init__(self):
        self.counters = {}
        self.gauges = {}
    def counter(self, name: str) -> Counter:
        self.counters.setdefault(name, Counter()); return self.counters[name]
    def gauge(self, name: str) -> Gauge:
        self.gauges.setdefault(name, Gauge()); return self.gauges[name]
    def snapshot(self) -> dict:
        return {
            "counters": {k: c.value for k, c in self.counters.items()},
            "gauges": {k: g.value for k, g in self.gauges.items()},
        }

METRICS = Metrics()
