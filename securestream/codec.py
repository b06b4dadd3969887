"""
Message codec wrapper: JSON payloads sealed in the session's AEAD envelope.

Outbound values are serialized to JSON and encrypted with additional data that
defaults to the current millisecond timestamp (string-decimal). Inbound
envelopes are decrypted, the additional data is handed to an auth predicate,
and the JSON body is decoded into the caller's type.
"""

import dataclasses
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from securestream.exceptions import DecryptAndDecodeFailure, KeyExchangeError, PublishError
from securestream.keyexchange import AeadEnvelope, KeyExchangeStore


AuthPredicate = Callable[[bytes], bool]


@dataclass(frozen=True)
class TypeIdData:
    type: str
    id: str
    data: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "id": self.id, "data": self.data}

    @classmethod
    def from_dict(cls, obj: Any) -> "TypeIdData":
        if not isinstance(obj, dict):
            raise ValueError("TypeIdData expects a JSON object")
        try:
            values = {name: obj[name] for name in ("type", "id", "data")}
        except KeyError as exc:
            raise ValueError(f"TypeIdData missing field {exc.args[0]}") from exc
        for name, value in values.items():
            if not isinstance(value, str):
                raise ValueError(f"TypeIdData field {name} must be a string")
        return cls(**values)


def current_timestamp() -> int:
    """Milliseconds since the Unix epoch."""
    return time.time_ns() // 1_000_000


def current_timestamp_bytes() -> bytes:
    return str(current_timestamp()).encode("ascii")


def parse_timestamp(value: Union[bytes, str, None]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError:
            return None
    text = value.strip()
    if not text or not (text.isdigit() or (text[0] in "+-" and text[1:].isdigit())):
        return None
    return int(text)


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict") and callable(value.to_dict):
        return value.to_dict()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


def encode_and_encrypt(
    session: KeyExchangeStore,
    value: Any,
    additional_data: Optional[bytes] = None,
) -> bytes:
    if additional_data is None:
        additional_data = current_timestamp_bytes()
    elif isinstance(additional_data, str):
        additional_data = additional_data.encode("utf-8")
    try:
        body = json.dumps(_to_jsonable(value), separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise PublishError(f"payload is not JSON-encodable: {exc}") from exc
    try:
        envelope = session.encrypt(body, additional_data)
    except (KeyExchangeError, TypeError) as exc:
        raise PublishError(f"encryption failed: {exc}") from exc
    return envelope.to_json()


def decrypt_and_decode(
    session: KeyExchangeStore,
    message: Union[bytes, str],
    auth: Optional[AuthPredicate] = None,
    factory: Optional[Callable[[Any], Any]] = None,
) -> Any:
    """Open an envelope produced by ``encode_and_encrypt``.

    ``auth`` receives the additional data and must return True for the message
    to be accepted; ``factory`` turns the decoded JSON into the target type.
    Every failure surfaces as ``DecryptAndDecodeFailure``.
    """
    try:
        envelope = AeadEnvelope.from_json(message)
        plaintext = session.decrypt(envelope)
    except KeyExchangeError as exc:
        raise DecryptAndDecodeFailure(f"decrypt failed: {exc}") from exc

    if auth is not None and not auth(envelope.additional_data):
        raise DecryptAndDecodeFailure("additional data rejected by auth predicate")

    try:
        decoded = json.loads(plaintext)
    except ValueError as exc:
        raise DecryptAndDecodeFailure(f"decode failed: {exc}") from exc

    if factory is None:
        return decoded
    try:
        return factory(decoded)
    except (TypeError, ValueError, KeyError) as exc:
        raise DecryptAndDecodeFailure(f"decode into target type failed: {exc}") from exc
