"""
Webhook secret encryption and request signing tests.
These protect the authenticity of every outbound alert.
"""
import base64
import hashlib
import hmac

import pytest

from faultline.errors import DecryptionError
from faultline.utils.encryption import NONCE_SIZE, SecretCipher
from faultline.utils.webhook_signatures import (
    SIGNATURE_HEADER,
    compute_payload_hash,
    compute_signature,
    verify_signature,
)


class TestSecretCipher:
    """AES-256-GCM at rest."""

    def test_roundtrip(self):
        cipher = SecretCipher("key material")
        assert cipher.decrypt(cipher.encrypt("s3cret")) == "s3cret"

    def test_empty_stays_empty(self):
        cipher = SecretCipher("key material")
        assert cipher.encrypt("") == ""
        assert cipher.decrypt("") == ""

    def test_fresh_nonce_per_value(self):
        cipher = SecretCipher("key material")
        assert cipher.encrypt("s3cret") != cipher.encrypt("s3cret")

    def test_layout_is_nonce_then_sealed(self):
        raw = base64.b64decode(SecretCipher("k").encrypt("abc"))
        # 12-byte nonce + 3 bytes ciphertext + 16-byte tag
        assert len(raw) == NONCE_SIZE + 3 + 16

    def test_wrong_key_rejected(self):
        encrypted = SecretCipher("key one").encrypt("s3cret")
        with pytest.raises(DecryptionError):
            SecretCipher("key two").decrypt(encrypted)

    def test_tampered_rejected(self):
        cipher = SecretCipher("key material")
        raw = bytearray(base64.b64decode(cipher.encrypt("s3cret")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode())

    def test_not_base64(self):
        with pytest.raises(DecryptionError):
            SecretCipher("k").decrypt("not base64!!")

    def test_too_short(self):
        with pytest.raises(DecryptionError):
            SecretCipher("k").decrypt(base64.b64encode(b"short").decode())

    def test_empty_key_material(self):
        with pytest.raises(ValueError):
            SecretCipher("")


class TestSignatures:
    """HMAC-SHA256 over the exact body bytes."""

    def test_header_name(self):
        assert SIGNATURE_HEADER == "X-Webhook-Signature"

    def test_matches_hmac(self):
        body = b'{"alert_id":1}'
        expected = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
        assert compute_signature(body, "s3cret") == expected

    def test_verify_plain_and_prefixed(self):
        body = b'{"alert_id":1}'
        sig = compute_signature(body, "s3cret")

        assert verify_signature(body, "s3cret", sig)
        assert verify_signature(body, "s3cret", "sha256=" + sig)
        assert verify_signature(body, "s3cret", sig.upper())

    def test_verify_rejects_other_body(self):
        sig = compute_signature(b"a", "s3cret")
        assert not verify_signature(b"b", "s3cret", sig)

    def test_verify_rejects_missing_parts(self):
        assert not verify_signature(b"a", "", "abc")
        assert not verify_signature(b"a", "s3cret", "")

    def test_payload_hash(self):
        assert compute_payload_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()
