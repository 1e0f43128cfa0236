"""Secret handling: token encryption at rest, HMAC signatures, random tokens.

Ciphertext layout (base64 encoded)::

    salt (64 bytes) | iv (16 bytes) | tag (16 bytes) | ciphertext

The AES-256-GCM key is derived once per (ENCRYPTION_KEY, ENCRYPTION_SALT)
pair with PBKDF2-HMAC-SHA256. The per-message salt is random and carried in
the envelope so the format stays compatible with previously stored tokens.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from bizinsights.config import settings

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
MIN_SECRET_LENGTH = 32

_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted. Nothing may be stored in plaintext instead."""


class DecryptionError(Exception):
    """Raised when a ciphertext is malformed, tampered with, or was sealed with another key."""


@lru_cache(maxsize=4)
def _derive_key(secret: str, salt: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def _encryption_key() -> bytes:
    secret = settings.ENCRYPTION_KEY
    if not secret:
        raise EncryptionError("ENCRYPTION_KEY is not configured")
    if len(secret) < MIN_SECRET_LENGTH:
        raise EncryptionError(
            f"ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters long"
        )
    return _derive_key(secret, settings.ENCRYPTION_SALT)


def encrypt(plaintext: str) -> str:
    """Encrypt a secret with AES-256-GCM and return the base64 envelope."""
    if not plaintext:
        raise EncryptionError("Cannot encrypt an empty value")

    key = _encryption_key()
    salt = secrets.token_bytes(SALT_LENGTH)
    iv = secrets.token_bytes(IV_LENGTH)

    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt(encoded: str) -> str:
    """Reverse :func:`encrypt`. Raises DecryptionError instead of returning garbage."""
    if not encoded:
        raise DecryptionError("Cannot decrypt an empty value")

    try:
        key = _encryption_key()
    except EncryptionError as exc:
        raise DecryptionError(str(exc)) from exc

    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Ciphertext is not valid base64") from exc

    if len(raw) <= _HEADER_LENGTH:
        raise DecryptionError("Ciphertext is truncated")

    iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = raw[SALT_LENGTH + IV_LENGTH:_HEADER_LENGTH]
    ciphertext = raw[_HEADER_LENGTH:]

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Authentication tag mismatch") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted value is not valid UTF-8") from exc


def hmac_sign(data: str | bytes, secret: str, encoding: str = "hex") -> str:
    """HMAC-SHA256 of ``data``, rendered as ``hex`` or ``base64``."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    if encoding == "hex":
        return digest.hexdigest()
    raise ValueError(f"Unsupported signature encoding: {encoding}")


def hmac_verify(
    data: str | bytes, signature: str | None, secret: str, encoding: str = "hex"
) -> bool:
    """Constant-time check of an HMAC-SHA256 signature. Empty secrets never verify."""
    if not signature or not secret:
        return False
    expected = hmac_sign(data, secret, encoding=encoding)
    return hmac.compare_digest(
        expected.encode("ascii"), signature.strip().encode("utf-8")
    )


def random_token(byte_length: int = 32) -> str:
    """Hex token from the OS CSPRNG, ``2 * byte_length`` characters long."""
    return secrets.token_hex(byte_length)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def mask_secret(value: str, visible: int = 4) -> str:
    """Keep the key prefix (``pk_live_``) and the last few characters only."""
    if len(value) <= 8 + visible:
        return "*" * len(value)
    return f"{value[:8]}...{value[-visible:]}"
