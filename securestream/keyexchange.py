"""
Key exchange store for the secure channel.

X25519 key agreement, per-message HKDF key derivation and AES-256-GCM with the
caller's additional data bound as AAD. One store is the "current" session of a
supervisor; a reset discards it and builds a fresh one through a factory.
"""

import base64
import binascii
import json
import os
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from securestream.exceptions import KeyExchangeError


KDF_NONCE_LEN = 32
AEAD_NONCE_LEN = 12
AEAD_KEY_LEN = 32
HKDF_INFO = b"securestream:aead:v1"

_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: str, field_name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise KeyExchangeError(f"{field_name} is not valid base64") from exc


@dataclass(frozen=True)
class AeadEnvelope:
    kdf_nonce: bytes
    ciphertext: bytes
    aead_nonce: bytes
    additional_data: bytes

    def to_json(self) -> bytes:
        return json.dumps(
            {
                "kdfNonce": _b64encode(self.kdf_nonce),
                "ciphertext": _b64encode(self.ciphertext),
                "aeadNonce": _b64encode(self.aead_nonce),
                "additionalData": _b64encode(self.additional_data),
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> "AeadEnvelope":
        try:
            obj = json.loads(raw)
        except (ValueError, TypeError) as exc:
            raise KeyExchangeError("envelope is not valid JSON") from exc
        if not isinstance(obj, dict):
            raise KeyExchangeError("envelope must be a JSON object")
        fields = {}
        for wire_name in ("kdfNonce", "ciphertext", "aeadNonce", "additionalData"):
            value = obj.get(wire_name)
            if not isinstance(value, str):
                raise KeyExchangeError(f"envelope field {wire_name} missing")
            fields[wire_name] = _b64decode(value, wire_name)
        if len(fields["kdfNonce"]) != KDF_NONCE_LEN:
            raise KeyExchangeError("kdfNonce has wrong length")
        if len(fields["aeadNonce"]) != AEAD_NONCE_LEN:
            raise KeyExchangeError("aeadNonce has wrong length")
        return cls(
            kdf_nonce=fields["kdfNonce"],
            ciphertext=fields["ciphertext"],
            aead_nonce=fields["aeadNonce"],
            additional_data=fields["additionalData"],
        )


def load_public_key(value: Union[str, bytes]) -> X25519PublicKey:
    """Parse a PEM block or a base64 raw X25519 public key."""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = value.strip()
    if not text:
        raise KeyExchangeError("public key is empty")
    if text.startswith("-----BEGIN"):
        try:
            key = serialization.load_pem_public_key(text.encode("ascii"))
        except (ValueError, UnsupportedAlgorithm, UnicodeEncodeError) as exc:
            raise KeyExchangeError(f"malformed PEM public key: {exc}") from exc
        if not isinstance(key, X25519PublicKey):
            raise KeyExchangeError("PEM public key is not X25519")
        return key
    raw = _b64decode(text, "public key")
    if len(raw) != 32:
        raise KeyExchangeError("raw X25519 public key must be 32 bytes")
    return X25519PublicKey.from_public_bytes(raw)


class KeyExchangeStore:
    """Local identity, external public key and derived shared secret."""

    def __init__(self, external_public_key: str = "", hash_name: str = "sha256"):
        if hash_name not in _HASHES:
            raise KeyExchangeError(f"unsupported hash: {hash_name}")
        self.hash_name = hash_name
        self._hash = _HASHES[hash_name]
        self._private_key = X25519PrivateKey.generate()
        self._public_key = self._private_key.public_key()
        self._lock = threading.Lock()
        self._external_key: Optional[X25519PublicKey] = None
        self._shared_secret: Optional[bytes] = None
        if external_public_key:
            self.set_external_public_key(external_public_key)

    def local_public_key(self) -> str:
        """Base64 raw public key; doubles as the bearer credential."""
        raw = self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return _b64encode(raw)

    def public_key_pem(self) -> str:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    def external_public_key(self) -> Optional[str]:
        with self._lock:
            key = self._external_key
        if key is None:
            return None
        return _b64encode(key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ))

    def has_external_key(self) -> bool:
        with self._lock:
            return self._shared_secret is not None

    def set_external_public_key(self, value: Union[str, bytes]) -> None:
        key = load_public_key(value)
        try:
            shared = self._private_key.exchange(key)
        except ValueError as exc:
            # all-zero shared secret (low-order point)
            raise KeyExchangeError(f"key agreement failed: {exc}") from exc
        with self._lock:
            self._external_key = key
            self._shared_secret = shared

    def _derive_key(self, shared: bytes, kdf_nonce: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=self._hash(),
            length=AEAD_KEY_LEN,
            salt=kdf_nonce,
            info=HKDF_INFO,
        )
        return hkdf.derive(shared)

    def _shared(self) -> bytes:
        with self._lock:
            shared = self._shared_secret
        if shared is None:
            raise KeyExchangeError("external public key not set")
        return shared

    def encrypt(self, plaintext: bytes, additional_data: bytes) -> AeadEnvelope:
        if not isinstance(plaintext, bytes):
            raise TypeError("plaintext must be bytes")
        if not isinstance(additional_data, bytes):
            raise TypeError("additional_data must be bytes")
        shared = self._shared()
        kdf_nonce = os.urandom(KDF_NONCE_LEN)
        aead_nonce = os.urandom(AEAD_NONCE_LEN)
        key = self._derive_key(shared, kdf_nonce)
        ciphertext = AESGCM(key).encrypt(aead_nonce, plaintext, additional_data)
        return AeadEnvelope(
            kdf_nonce=kdf_nonce,
            ciphertext=ciphertext,
            aead_nonce=aead_nonce,
            additional_data=additional_data,
        )

    def decrypt(self, envelope: AeadEnvelope) -> bytes:
        shared = self._shared()
        key = self._derive_key(shared, envelope.kdf_nonce)
        try:
            return AESGCM(key).decrypt(envelope.aead_nonce, envelope.ciphertext, envelope.additional_data)
        except InvalidTag as exc:
            raise KeyExchangeError("AEAD authentication failed") from exc


SessionFactory = Callable[[], KeyExchangeStore]


def curve25519_sha256_hkdf_aesgcm(external_public_key: str = "") -> KeyExchangeStore:
    return KeyExchangeStore(external_public_key, hash_name="sha256")


def curve25519_sha384_hkdf_aesgcm(external_public_key: str = "") -> KeyExchangeStore:
    return KeyExchangeStore(external_public_key, hash_name="sha384")


def curve25519_sha512_hkdf_aesgcm(external_public_key: str = "") -> KeyExchangeStore:
    return KeyExchangeStore(external_public_key, hash_name="sha512")
