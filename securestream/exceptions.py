"""Project-specific exception types for clearer error semantics."""


class SecureStreamError(Exception):
    """Base class for every error raised by securestream."""
    pass

class ConfigurationError(SecureStreamError, ValueError):
    """Configuration validation errors (subclass of ValueError for plain callers)."""
    pass

class TransportError(SecureStreamError):
    """Transport could not be opened or a send failed."""
    pass

class StaleHandleError(TransportError):
    """Handle was invalidated by a reset or cancel."""
    pass

class KeyExchangeError(SecureStreamError, ValueError):
    """Key material malformed or AEAD authentication failed."""
    pass

class DecryptAndDecodeFailure(SecureStreamError):
    """Decrypt, JSON decode or additional-data authentication failed."""
    pass

class KeyRotationError(SecureStreamError):
    """External public key announced by the helper was rejected."""
    pass

class LivenessTimeout(SecureStreamError):
    """No inbound traffic within the ping time limit."""
    pass

class HelperProcessError(SecureStreamError):
    """Helper binary missing, failed to spawn, or exited abnormally."""
    pass

class PublishError(SecureStreamError):
    """Outbound payload could not be encoded or encrypted."""
    pass
