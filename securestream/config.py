"""
Configuration for the securestream channel supervisor.

Process-wide defaults live in CONFIG (env-overridable, validated at import).
Per-channel settings live in the frozen ChannelConfig dataclass; a connect
cycle snapshots the ChannelConfig it was started with.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from securestream.exceptions import ConfigurationError


# Default configuration - all required keys with correct types
CONFIG = {
    # Liveness watchdog: seconds without inbound traffic before a reset.
    # Values <= 0 disable the watchdog entirely.
    "PING_TIME_LIMIT_S": 65.0,
    # Poll granularity of the watchdog thread (seconds).
    "WATCHDOG_POLL_S": 0.25,

    # Replay guard: maximum age (ms) of an accepted additional-data timestamp.
    # 10 ms is very tight for real links; raise it per channel if messages
    # cross a slow path.
    "REPLAY_JITTER_MS": 10,

    # Consecutive decrypt/decode/auth failures that force a reset.
    "DECRYPT_FAILURE_THRESHOLD": 10,

    # Helper process lifecycle
    "HELPER_RETRY_DELAY_S": 1.0,
    "HELPER_STOP_TIMEOUT_S": 5.0,
    # Directory searched for helper binaries given by bare name ("" -> PATH only).
    "HELPER_BIN_DIR": "",

    # Transport (re)connect pacing; the helper may not be listening yet when
    # the transport is opened.
    "TRANSPORT_RECONNECT_S": 0.5,
    "TRANSPORT_OPEN_TIMEOUT_S": 10.0,

    # Rolling buffer for helper stdout while searching for PEM blocks.
    "KEY_ROTATION_BUFFER_BYTES": 65536,

    "LOG_LEVEL": "INFO",
}


# Required keys with their expected types
_REQUIRED_KEYS = {
    "PING_TIME_LIMIT_S": float,
    "WATCHDOG_POLL_S": float,
    "REPLAY_JITTER_MS": int,
    "DECRYPT_FAILURE_THRESHOLD": int,
    "HELPER_RETRY_DELAY_S": float,
    "HELPER_STOP_TIMEOUT_S": float,
    "HELPER_BIN_DIR": str,
    "TRANSPORT_RECONNECT_S": float,
    "TRANSPORT_OPEN_TIMEOUT_S": float,
    "KEY_ROTATION_BUFFER_BYTES": int,
    "LOG_LEVEL": str,
}

# Keys that can be overridden by environment variables
_ENV_OVERRIDABLE = set(_REQUIRED_KEYS)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_config(cfg: Dict[str, Any]) -> None:
    """
    Ensure all required keys exist with correct types/ranges.
    Raise ConfigurationError("<reason>") on any violation.
    No return value on success.
    """
    missing_keys = set(_REQUIRED_KEYS.keys()) - set(cfg.keys())
    if missing_keys:
        raise ConfigurationError(f"CONFIG missing required keys: {', '.join(sorted(missing_keys))}")

    for key, expected_type in _REQUIRED_KEYS.items():
        value = cfg[key]
        if expected_type is float:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"CONFIG[{key}] must be float seconds, got {type(value).__name__}")
            continue
        if expected_type is int and isinstance(value, bool):
            raise ConfigurationError(f"CONFIG[{key}] must be int, got bool")
        if not isinstance(value, expected_type):
            raise ConfigurationError(f"CONFIG[{key}] must be {expected_type.__name__}, got {type(value).__name__}")

    if cfg["REPLAY_JITTER_MS"] < 0:
        raise ConfigurationError(f"CONFIG[REPLAY_JITTER_MS] must be >= 0, got {cfg['REPLAY_JITTER_MS']}")
    if cfg["DECRYPT_FAILURE_THRESHOLD"] < 1:
        raise ConfigurationError(
            f"CONFIG[DECRYPT_FAILURE_THRESHOLD] must be >= 1, got {cfg['DECRYPT_FAILURE_THRESHOLD']}"
        )
    for key in ("WATCHDOG_POLL_S", "TRANSPORT_RECONNECT_S", "TRANSPORT_OPEN_TIMEOUT_S"):
        if cfg[key] <= 0:
            raise ConfigurationError(f"CONFIG[{key}] must be > 0, got {cfg[key]}")
    for key in ("HELPER_RETRY_DELAY_S", "HELPER_STOP_TIMEOUT_S"):
        if cfg[key] < 0:
            raise ConfigurationError(f"CONFIG[{key}] must be >= 0, got {cfg[key]}")
    if cfg["KEY_ROTATION_BUFFER_BYTES"] < 1024:
        raise ConfigurationError("CONFIG[KEY_ROTATION_BUFFER_BYTES] must be >= 1024")
    if cfg["LOG_LEVEL"].upper() not in _LOG_LEVELS:
        raise ConfigurationError(f"CONFIG[LOG_LEVEL] must be one of {sorted(_LOG_LEVELS)}")


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config."""
    result = cfg.copy()

    for key in _ENV_OVERRIDABLE:
        env_var = key
        if env_var in os.environ:
            env_value = os.environ[env_var]
            expected_type = _REQUIRED_KEYS[key]
            try:
                if expected_type == int:
                    result[key] = int(env_value)
                elif expected_type == str:
                    result[key] = str(env_value)
                elif expected_type == bool:
                    lowered = str(env_value).strip().lower()
                    if lowered in {"1", "true", "yes", "on"}:
                        result[key] = True
                    elif lowered in {"0", "false", "no", "off"}:
                        result[key] = False
                    else:
                        raise ValueError(f"invalid boolean literal: {env_value}")
                elif expected_type == float:
                    result[key] = float(env_value)
                else:
                    raise ConfigurationError(f"Unsupported type for env override: {expected_type}")
            except ValueError:
                raise ConfigurationError(f"Invalid {expected_type.__name__} value for {env_var}: {env_value}")

    return result


def _default(key: str):
    return lambda: CONFIG[key]


@dataclass(frozen=True)
class ChannelConfig:
    """Settings for one supervised channel.

    ``base_url`` is the endpoint without a path (``ws://127.0.0.1``); ``port``
    is applied on top of it. The ``*_argument_key`` fields name helper
    arguments that receive ``-KEY=VALUE`` at spawn time.
    """

    base_url: Optional[str] = None
    port: Optional[int] = None
    stream_path: Optional[str] = None
    request_headers: Tuple[Tuple[str, str], ...] = ()
    helper: Optional[str] = None
    helper_args: Tuple[str, ...] = ()
    with_retry: bool = True
    with_pem_watcher: bool = False
    ping_time_limit: float = field(default_factory=_default("PING_TIME_LIMIT_S"))
    pid_argument_key: Optional[str] = None
    url_argument_key: Optional[str] = None
    port_argument_key: Optional[str] = None
    bearer_token_argument_key: Optional[str] = None
    replay_jitter_ms: int = field(default_factory=_default("REPLAY_JITTER_MS"))
    failure_threshold: int = field(default_factory=_default("DECRYPT_FAILURE_THRESHOLD"))
    retry_delay: float = field(default_factory=_default("HELPER_RETRY_DELAY_S"))

    def __post_init__(self):
        # Accept plain dicts for headers but store them immutably.
        if isinstance(self.request_headers, Mapping):
            object.__setattr__(self, "request_headers", tuple(self.request_headers.items()))
        else:
            object.__setattr__(self, "request_headers", tuple(tuple(item) for item in self.request_headers))
        object.__setattr__(self, "helper_args", tuple(self.helper_args))

    def validate(self, *, require_helper: bool = False) -> "ChannelConfig":
        """Fail fast on settings that would otherwise break mid-cycle."""
        if self.port is not None:
            if isinstance(self.port, bool) or not isinstance(self.port, int) or not (1 <= self.port <= 65535):
                raise ConfigurationError(f"port must be valid port (1-65535), got {self.port!r}")
        if self.base_url is not None:
            parts = urlsplit(self.base_url)
            if not parts.scheme or not parts.hostname:
                raise ConfigurationError(f"base_url must include scheme and host, got {self.base_url!r}")
        if self.url_argument_key and not self.base_url:
            raise ConfigurationError("url_argument_key is set but base_url is missing")
        if self.port_argument_key and self.port is None:
            raise ConfigurationError("port_argument_key is set but port is missing")
        for name in ("pid_argument_key", "url_argument_key", "port_argument_key", "bearer_token_argument_key"):
            key = getattr(self, name)
            if key is None:
                continue
            if not isinstance(key, str) or not key or "=" in key or key.startswith("-"):
                raise ConfigurationError(f"{name} must be a bare argument name, got {key!r}")
        if self.replay_jitter_ms < 0:
            raise ConfigurationError(f"replay_jitter_ms must be >= 0, got {self.replay_jitter_ms}")
        if self.failure_threshold < 1:
            raise ConfigurationError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.retry_delay < 0:
            raise ConfigurationError(f"retry_delay must be >= 0, got {self.retry_delay}")
        if require_helper and not self.helper:
            raise ConfigurationError("helper binary is required to connect with a helper")
        return self

    def with_changes(self, **changes: Any) -> "ChannelConfig":
        return replace(self, **changes)

    def stream_url(self, path: Optional[str] = None) -> str:
        """Compose base_url, port and path into the transport URL."""
        if not self.base_url:
            raise ConfigurationError("base_url is required to open the transport")
        parts = urlsplit(self.base_url)
        netloc = parts.netloc
        if self.port is not None:
            host = parts.hostname or ""
            if ":" in host:
                host = f"[{host}]"
            userinfo = netloc.rpartition("@")[0]
            netloc = f"{userinfo}@{host}:{self.port}" if userinfo else f"{host}:{self.port}"
        stream_path = path if path is not None else self.stream_path
        full_path = parts.path.rstrip("/")
        if stream_path:
            full_path = f"{full_path}/{stream_path.lstrip('/')}"
        return urlunsplit((parts.scheme, netloc, full_path, parts.query, ""))


# Apply environment overrides and validate
CONFIG = _apply_env_overrides(CONFIG)
validate_config(CONFIG)
