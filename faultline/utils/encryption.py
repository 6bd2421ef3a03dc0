"""
Encryption for webhook secrets at rest.

AES-256-GCM. The key is SHA-256 of the configured ENCRYPTION_KEY, so any
operator-supplied string works as key material. Stored form is
base64(nonce || ciphertext || tag) with a fresh 12-byte nonce per value.
"""
import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from faultline.errors import DecryptionError

NONCE_SIZE = 12


class SecretCipher:
    def __init__(self, key_material: str):
        if not key_material:
            raise ValueError("encryption key material must not be empty")
        self._aead = AESGCM(hashlib.sha256(key_material.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string. Empty input stays empty."""
        if not plaintext:
            return ""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a value produced by encrypt(). Raises DecryptionError on tampering or a wrong key."""
        if not encrypted:
            return ""

        try:
            raw = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("secret is not valid base64") from e

        if len(raw) <= NONCE_SIZE:
            raise DecryptionError("ciphertext too short")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as e:
            raise DecryptionError("secret failed authentication") from e
