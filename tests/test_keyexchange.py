"""Key exchange store and message codec."""

import base64
import json
import unittest
from dataclasses import dataclass

from securestream.codec import (
    TypeIdData,
    current_timestamp,
    current_timestamp_bytes,
    decrypt_and_decode,
    encode_and_encrypt,
    parse_timestamp,
)
from securestream.exceptions import DecryptAndDecodeFailure, KeyExchangeError, PublishError
from securestream.keyexchange import (
    AeadEnvelope,
    KeyExchangeStore,
    curve25519_sha256_hkdf_aesgcm,
    curve25519_sha384_hkdf_aesgcm,
    curve25519_sha512_hkdf_aesgcm,
)


def paired(factory=curve25519_sha256_hkdf_aesgcm):
    local = factory()
    remote = factory(local.local_public_key())
    local.set_external_public_key(remote.public_key_pem())
    return local, remote


@dataclass
class Status:
    name: str
    level: int


class TestKeyExchangeStore(unittest.TestCase):
    def test_local_public_key_is_raw_x25519(self):
        store = KeyExchangeStore()
        self.assertEqual(len(base64.b64decode(store.local_public_key())), 32)
        self.assertIn("-----BEGIN PUBLIC KEY-----", store.public_key_pem())

    def test_fresh_stores_have_distinct_identities(self):
        self.assertNotEqual(KeyExchangeStore().local_public_key(), KeyExchangeStore().local_public_key())

    def test_encrypt_decrypt_between_peers(self):
        for factory in (curve25519_sha256_hkdf_aesgcm, curve25519_sha384_hkdf_aesgcm, curve25519_sha512_hkdf_aesgcm):
            local, remote = paired(factory)
            envelope = local.encrypt(b"hello", b"123")
            self.assertEqual(remote.decrypt(envelope), b"hello")
            self.assertEqual(envelope.additional_data, b"123")

    def test_envelope_json_fields(self):
        local, remote = paired()
        raw = local.encrypt(b"x", b"ad").to_json()
        obj = json.loads(raw)
        self.assertEqual(set(obj), {"kdfNonce", "ciphertext", "aeadNonce", "additionalData"})
        self.assertEqual(remote.decrypt(AeadEnvelope.from_json(raw)), b"x")

    def test_tampered_additional_data_rejected(self):
        local, remote = paired()
        envelope = local.encrypt(b"hello", b"123")
        forged = AeadEnvelope(envelope.kdf_nonce, envelope.ciphertext, envelope.aead_nonce, b"124")
        with self.assertRaises(KeyExchangeError):
            remote.decrypt(forged)

    def test_decrypt_without_external_key(self):
        local, _ = paired()
        envelope = local.encrypt(b"hello", b"1")
        with self.assertRaises(KeyExchangeError):
            KeyExchangeStore().decrypt(envelope)

    def test_mismatched_hash_fails(self):
        local = curve25519_sha256_hkdf_aesgcm()
        remote = curve25519_sha512_hkdf_aesgcm(local.local_public_key())
        local.set_external_public_key(remote.local_public_key())
        with self.assertRaises(KeyExchangeError):
            remote.decrypt(local.encrypt(b"hello", b"1"))

    def test_malformed_external_keys(self):
        store = KeyExchangeStore()
        bad_values = [
            "",
            "not base64!",
            base64.b64encode(b"short").decode(),
            "-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----\n",
        ]
        for value in bad_values:
            with self.assertRaises(KeyExchangeError, msg=value):
                store.set_external_public_key(value)
        self.assertFalse(store.has_external_key())

    def test_unsupported_hash(self):
        with self.assertRaises(KeyExchangeError):
            KeyExchangeStore(hash_name="md5")

    def test_rotation_changes_shared_secret(self):
        local, remote = paired()
        other = curve25519_sha256_hkdf_aesgcm(local.local_public_key())
        local.set_external_public_key(other.local_public_key())
        envelope = local.encrypt(b"rotated", b"1")
        self.assertEqual(other.decrypt(envelope), b"rotated")
        with self.assertRaises(KeyExchangeError):
            remote.decrypt(envelope)


class TestCodec(unittest.TestCase):
    def setUp(self):
        self.local, self.remote = paired()

    def test_type_id_data_round_trip(self):
        message = TypeIdData(type="status", id="42", data="ok")
        raw = encode_and_encrypt(self.local, message)
        decoded = decrypt_and_decode(self.remote, raw, factory=TypeIdData.from_dict)
        self.assertEqual(decoded, message)

    def test_generic_values(self):
        for value in ({"a": [1, 2, 3]}, [1, "two", None], "text", 7):
            raw = encode_and_encrypt(self.local, value, b"1")
            self.assertEqual(decrypt_and_decode(self.remote, raw), value)

    def test_dataclass_payload(self):
        raw = encode_and_encrypt(self.local, Status("pump", 3))
        decoded = decrypt_and_decode(self.remote, raw.decode("utf-8"), factory=lambda obj: Status(**obj))
        self.assertEqual(decoded, Status("pump", 3))

    def test_default_additional_data_is_timestamp(self):
        before = current_timestamp()
        raw = encode_and_encrypt(self.local, "x")
        ad = AeadEnvelope.from_json(raw).additional_data
        self.assertGreaterEqual(parse_timestamp(ad), before)

    def test_auth_predicate_sees_additional_data(self):
        seen = []

        def auth(additional_data):
            seen.append(additional_data)
            return False

        raw = encode_and_encrypt(self.local, "x", b"999")
        with self.assertRaises(DecryptAndDecodeFailure):
            decrypt_and_decode(self.remote, raw, auth=auth)
        self.assertEqual(seen, [b"999"])

    def test_garbage_message_fails(self):
        for message in (b"", b"not json", b"[]", json.dumps({"kdfNonce": "AA=="}).encode()):
            with self.assertRaises(DecryptAndDecodeFailure):
                decrypt_and_decode(self.remote, message)

    def test_factory_failure_fails(self):
        raw = encode_and_encrypt(self.local, {"type": "t"})
        with self.assertRaises(DecryptAndDecodeFailure):
            decrypt_and_decode(self.remote, raw, factory=TypeIdData.from_dict)

    def test_unencodable_payload_raises_publish_error(self):
        with self.assertRaises(PublishError):
            encode_and_encrypt(self.local, {"x": object()})

    def test_encrypt_without_peer_raises_publish_error(self):
        with self.assertRaises(PublishError):
            encode_and_encrypt(KeyExchangeStore(), "x")

    def test_timestamp_helpers(self):
        self.assertEqual(parse_timestamp(b"1700000000000"), 1700000000000)
        self.assertEqual(parse_timestamp(" 12 "), 12)
        self.assertIsNone(parse_timestamp("1e3"))
        self.assertTrue(current_timestamp_bytes().isdigit())


if __name__ == "__main__":
    unittest.main()
