"""Cryptographic utilities for integration credentials."""

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from typing import Any, Dict
import base64
import binascii
import hashlib
import json
import os
import secrets

from gateway.core.errors import IntegrityError

BLOB_VERSION = b"\x01"
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16
KDF_SALT = b"integration-gateway/credential-vault"


def generate_key() -> str:
    """Generate a random 256-bit key as hex, suitable for ENCRYPTION_KEY."""
    return secrets.token_hex(32)


def derive_key(encryption_key: str) -> bytes:
    """Turn ENCRYPTION_KEY into 32 bytes of key material.

    A 64 character hex string is used as-is; anything else is treated as a
    passphrase and stretched with PBKDF2.
    """
    if len(encryption_key) == 64:
        try:
            return bytes.fromhex(encryption_key)
        except ValueError:
            pass

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=100000,
    )
    return kdf.derive(encryption_key.encode())


class CredentialVault:
    """Authenticated encryption of per-integration secrets (AES-256-GCM).

    Blobs are ``urlsafe_b64(version | nonce | ciphertext | tag)``. Decryption
    never returns unauthenticated bytes: any tampering, truncation or key
    mismatch raises :class:`IntegrityError`.
    """

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise ValueError("ENCRYPTION_KEY is not set")
        self._aead = AESGCM(derive_key(encryption_key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string."""
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), BLOB_VERSION)
        return base64.urlsafe_b64encode(BLOB_VERSION + nonce + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt`."""
        try:
            raw = base64.urlsafe_b64decode(blob.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise IntegrityError(f"Credential blob is not valid base64: {e}")

        if len(raw) < 1 + NONCE_SIZE + TAG_SIZE or raw[:1] != BLOB_VERSION:
            raise IntegrityError("Credential blob is truncated or has an unknown version")

        nonce = raw[1:1 + NONCE_SIZE]
        ciphertext = raw[1 + NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, BLOB_VERSION)
        except InvalidTag:
            raise IntegrityError("Credential blob failed authentication")
        return plaintext.decode("utf-8")

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":"), sort_keys=True))

    def decrypt_json(self, blob: str) -> Dict[str, Any]:
        return json.loads(self.decrypt(blob))


def payload_digest(body: bytes) -> str:
    """SHA-256 hex digest of a raw webhook body."""
    return hashlib.sha256(body).hexdigest()
