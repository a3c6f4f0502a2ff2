"""
Credential encryption — encrypt / decrypt credential secrets at rest.

Envelope layout (base64 of the concatenation)::

    IV (16 bytes) ‖ GCM tag (16 bytes) ‖ ciphertext

Uses AES-256-GCM from the ``cryptography`` library.  The key is loaded from
``config.encryption_key`` (env var: ``ENCRYPTION_KEY``), a 64-character hex
string.  Generate one with::

    python -c "import os; print(os.urandom(32).hex())"

If no key is configured a key is derived with scrypt from the fallback secret
(the database URL by default) and a startup warning is logged: anyone holding
the database URL can then decrypt the stored credentials.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import string
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from config.settings import Settings, config
from connectors.errors import DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
KDF_SALT = b"connector-hub-credential-salt"

_MASK = "••••••••"


def derive_key(secret: str) -> bytes:
    """Stretch an arbitrary secret into a 32-byte key (scrypt, N=2**14)."""
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode())


def _is_hex_key(value: str) -> bool:
    return len(value) == KEY_LENGTH * 2 and all(c in string.hexdigits for c in value)


def resolve_key(settings: Settings) -> bytes:
    """Pick the process encryption key from settings."""
    key = settings.encryption_key
    if key:
        if _is_hex_key(key):
            return bytes.fromhex(key)
        return derive_key(key)

    logger.warning(
        "ENCRYPTION_KEY not set — deriving the credential key from the database URL. "
        "A leaked database URL is then enough to decrypt stored credentials. "
        "Generate a key: python -c \"import os; print(os.urandom(32).hex())\""
    )
    fallback = settings.encryption_fallback_secret or settings.database_url
    return derive_key(fallback)


class EnvelopeCodec:
    """Authenticated encryption of credential payloads under one key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnvelopeCodec":
        return cls(resolve_key(settings))

    def encrypt(self, plaintext: str | bytes) -> str:
        """Encrypt with a fresh random IV and return the base64 envelope."""
        data = plaintext.encode() if isinstance(plaintext, str) else plaintext
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, data, None)
        # cryptography appends the tag; the envelope stores it before the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode()

    def decrypt_bytes(self, envelope: str) -> bytes:
        try:
            raw = base64.b64decode(envelope, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Envelope is not valid base64") from exc

        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise DecryptionError("Envelope is truncated")

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH:]
        try:
            return self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Envelope failed authentication (tampered or wrong key)") from exc

    def decrypt(self, envelope: str) -> str:
        try:
            return self.decrypt_bytes(envelope).decode()
        except UnicodeDecodeError as exc:
            raise DecryptionError("Envelope does not contain UTF-8 text") from exc

    def encrypt_credentials(self, credentials: Dict[str, str]) -> str:
        """Encrypt a string map after serializing it canonically."""
        clean = {k: v for k, v in credentials.items() if v is not None}
        return self.encrypt(json.dumps(clean, sort_keys=True, separators=(",", ":")))

    def decrypt_credentials(self, envelope: str) -> Dict[str, str]:
        payload = self.decrypt(envelope)
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise DecryptionError("Envelope payload is not a credential map") from exc
        if not isinstance(data, dict):
            raise DecryptionError("Envelope payload is not a credential map")
        return data


_codec: Optional[EnvelopeCodec] = None


def get_codec(settings: Settings = config) -> EnvelopeCodec:
    """Lazy-initialise the process-wide codec once."""
    global _codec
    if _codec is None:
        _codec = EnvelopeCodec.from_settings(settings)
        logger.info("Credential encryption ready (AES-256-GCM)")
    return _codec


# ── Display / API-key helpers ──────────────────────────────────────────────


def mask_secret(value: str, show: int = 4) -> str:
    """Reveal only the first and last ``show`` characters of a secret."""
    if len(value) <= show * 2:
        return _MASK
    return f"{value[:show]}{_MASK}{value[-show:]}"


def mask_credentials(credentials: Dict[str, str]) -> Dict[str, str]:
    return {key: mask_secret(value) for key, value in credentials.items() if value}


def generate_api_key(prefix: str = "ch") -> str:
    return f"{prefix}_{secrets.token_urlsafe(24)}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


def verify_api_key(api_key: str, expected_hash: str) -> bool:
    """Constant-time comparison against a stored SHA-256 hash."""
    return hmac.compare_digest(hash_api_key(api_key), expected_hash)
