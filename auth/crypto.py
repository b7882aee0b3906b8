"""
auth/crypto.py -- Authenticated encryption for credentials stored at rest.

Algorithm: AES-256-GCM via cryptography's AESGCM primitive. A fresh 12-byte
nonce is drawn from os.urandom for every call; the 16-byte GCM tag is appended
to the ciphertext by AESGCM itself.

Stored envelope (what reaches the database):

    "enc:" + base64( version | algorithm | nonce(12) | ciphertext || tag )

  version   1 byte, currently 0x01
  algorithm 1 byte, 0x01 = AES-256-GCM

The "enc:" marker separates sealed values from legacy plaintext ones written
before encryption was introduced; ensure_sealed() migrates the latter. The
version/algorithm bytes make key rotation or an algorithm change explicit
instead of inferred. Unknown versions are rejected, never guessed.

Security notes:
  [K2] Nothing in this module logs plaintext, ciphertext, or key bytes.
       reveal() logs only the failure class.
  [K3] decrypt() raises DecryptionError for every failure mode -- tampered
       ciphertext, tampered nonce, wrong key, truncated input -- so callers
       cannot distinguish them (no padding/format oracle).

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from auth.errors import DecryptionError

logger = logging.getLogger("homeboard.auth.crypto")

SEALED_PREFIX = "enc:"
NONCE_LENGTH = 12
KEY_LENGTH = 32
ENVELOPE_VERSION = 0x01
ALG_AES_256_GCM = 0x01

_HEADER_LENGTH = 2
_TAG_LENGTH = 16


def generate_key() -> str:
    """Return a new random 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_LENGTH)


class CredentialCipher:
    """AES-256-GCM cipher bound to one key.

    Usage:
        cipher = CredentialCipher.from_hex(settings.encryption_key)
        blob = cipher.seal("long-lived-token")
        cipher.open_sealed(blob)   # -> "long-lived-token"
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError("Encryption key must be 32 bytes.")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> CredentialCipher:
        try:
            key = bytes.fromhex(hex_key)
        except ValueError as exc:
            raise ValueError("Encryption key must be hex encoded.") from exc
        return cls(key)

    # ------------------------------------------------------------------
    # Raw primitive
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> tuple[bytes, bytes]:
        """Encrypt plaintext and return (ciphertext_with_tag, nonce)."""
        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return ciphertext, nonce

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> str:
        """Decrypt and authenticate. Raises DecryptionError on any failure [K3]."""
        if len(nonce) != NONCE_LENGTH or len(ciphertext) < _TAG_LENGTH:
            raise DecryptionError("Credential could not be decrypted.")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Credential could not be decrypted.") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Credential could not be decrypted.") from exc

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def seal(self, plaintext: str) -> str:
        """Encrypt plaintext into the self-describing storage envelope."""
        ciphertext, nonce = self.encrypt(plaintext)
        header = bytes([ENVELOPE_VERSION, ALG_AES_256_GCM])
        return SEALED_PREFIX + base64.b64encode(header + nonce + ciphertext).decode("ascii")

    def open_sealed(self, blob: str) -> str:
        """Decode and decrypt an envelope produced by seal()."""
        if not is_sealed(blob):
            raise DecryptionError("Value is not a sealed credential.")
        try:
            raw = base64.b64decode(blob[len(SEALED_PREFIX) :], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Credential could not be decrypted.") from exc
        if len(raw) < _HEADER_LENGTH + NONCE_LENGTH + _TAG_LENGTH:
            raise DecryptionError("Credential could not be decrypted.")
        version, algorithm = raw[0], raw[1]
        if version != ENVELOPE_VERSION or algorithm != ALG_AES_256_GCM:
            raise DecryptionError("Unsupported credential envelope.")
        nonce = raw[_HEADER_LENGTH : _HEADER_LENGTH + NONCE_LENGTH]
        ciphertext = raw[_HEADER_LENGTH + NONCE_LENGTH :]
        return self.decrypt(ciphertext, nonce)

    def reveal(self, blob: str | None) -> str | None:
        """Open a sealed value, degrading every failure to None.

        None means "credential unavailable": the caller must force
        re-authentication rather than surface the cause.
        """
        if not blob:
            return None
        try:
            return self.open_sealed(blob)
        except DecryptionError as exc:
            logger.warning("Stored credential unreadable (%s)", type(exc).__name__)
            return None

    def ensure_sealed(self, value: str) -> str:
        """Seal a legacy plaintext value; pass through values already sealed."""
        if not value or is_sealed(value):
            return value
        return self.seal(value)


def is_sealed(value: str | None) -> bool:
    return bool(value) and value.startswith(SEALED_PREFIX)
