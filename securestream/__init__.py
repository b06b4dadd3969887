"""
Secure channel supervisor for locally spawned helper processes.

Architecture:
    securestream/
    ├── __init__.py       # Public API
    ├── config.py         # CONFIG defaults + ChannelConfig
    ├── exceptions.py     # Error taxonomy
    ├── logging_utils.py  # JSON logger, tiny metrics registry
    ├── keyexchange.py    # X25519 + HKDF + AES-256-GCM session store
    ├── codec.py          # JSON payloads in the AEAD envelope, timestamps
    ├── replay.py         # Monotonic timestamp replay guard
    ├── watchdog.py       # Failure counter + liveness watchdog
    ├── keyrotation.py    # PEM public-key blocks in helper output
    ├── arguments.py      # -KEY=VALUE helper argument injection
    ├── process.py        # Helper subprocess lifecycle
    ├── transport.py      # Transport interface + WebSocket transport
    └── supervisor.py     # ChannelSupervisor

Usage:
    from securestream import ChannelConfig, ChannelSupervisor

    supervisor = ChannelSupervisor(ChannelConfig(
        base_url="ws://127.0.0.1", port=8765, helper="my-helper",
        bearer_token_argument_key="token", port_argument_key="port",
        with_pem_watcher=True,
    ))
    supervisor.connect_with_helper(on_payload=print, authenticate_timestamps=True)
"""

from securestream.codec import TypeIdData, current_timestamp, current_timestamp_bytes
from securestream.config import CONFIG, ChannelConfig
from securestream.exceptions import (
    ConfigurationError,
    DecryptAndDecodeFailure,
    HelperProcessError,
    KeyExchangeError,
    KeyRotationError,
    LivenessTimeout,
    PublishError,
    SecureStreamError,
    StaleHandleError,
    TransportError,
)
from securestream.keyexchange import (
    KeyExchangeStore,
    curve25519_sha256_hkdf_aesgcm,
    curve25519_sha384_hkdf_aesgcm,
    curve25519_sha512_hkdf_aesgcm,
)
from securestream.supervisor import ChannelCallbacks, ChannelHandle, ChannelState, ChannelSupervisor

__version__ = "0.1.0"

__all__ = [
    "CONFIG",
    "ChannelCallbacks",
    "ChannelConfig",
    "ChannelHandle",
    "ChannelState",
    "ChannelSupervisor",
    "ConfigurationError",
    "DecryptAndDecodeFailure",
    "HelperProcessError",
    "KeyExchangeError",
    "KeyExchangeStore",
    "KeyRotationError",
    "LivenessTimeout",
    "PublishError",
    "SecureStreamError",
    "StaleHandleError",
    "TransportError",
    "TypeIdData",
    "current_timestamp",
    "current_timestamp_bytes",
    "curve25519_sha256_hkdf_aesgcm",
    "curve25519_sha384_hkdf_aesgcm",
    "curve25519_sha512_hkdf_aesgcm",
]
