"""Field-level encryption for member PII.

Values are encrypted with AES-256-CBC (PKCS7 padding) under a key derived by
PBKDF2-HMAC-SHA256 from the configured secret, and stored as hex of
``iv || ciphertext``. Rows written before encryption was introduced still
hold plaintext, so readers use `decrypt_fields`, which keeps the raw value of
any field that fails to decrypt.
"""

from __future__ import annotations

import binascii
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hoa_survey.config import get_config

logger = logging.getLogger(__name__)

KDF_SALT = b"member-data-salt"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16  # 128 bits

MEMBER_PII_FIELDS = ("lot", "name", "email", "address")


class DecryptionError(Exception):
    """Raised when a value is not valid ciphertext under the current key."""


@lru_cache(maxsize=4)
def derive_key(secret: str) -> bytes:
    """Derive the AES key from the first 32 characters of the secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret[:32].encode("utf-8"))


def _key(secret: str | None) -> bytes:
    return derive_key(secret if secret is not None else get_config().encryption.secret)


def encrypt(text: str, secret: str | None = None) -> str:
    """Encrypt a string; empty values pass through unchanged."""
    if not text:
        return text
    iv = os.urandom(IV_LENGTH)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(text.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_key(secret)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return (iv + ciphertext).hex()


def decrypt(value: str, secret: str | None = None) -> str:
    """Decrypt a value produced by `encrypt`; empty values pass through."""
    if not value:
        return value
    try:
        blob = bytes.fromhex(value)
    except (ValueError, TypeError) as e:
        raise DecryptionError("value is not hex ciphertext") from e
    if len(blob) < IV_LENGTH * 2 or len(blob) % IV_LENGTH:
        raise DecryptionError("ciphertext has an invalid length")
    iv, ciphertext = blob[:IV_LENGTH], blob[IV_LENGTH:]
    try:
        decryptor = Cipher(algorithms.AES(_key(secret)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError, binascii.Error) as e:
        raise DecryptionError("failed to decrypt value") from e


def encrypt_member_fields(member: Mapping[str, Any], secret: str | None = None) -> Dict[str, Any]:
    """Return a copy of `member` with its PII fields encrypted."""
    out = dict(member)
    for name in MEMBER_PII_FIELDS:
        value = out.get(name)
        if isinstance(value, str) and value:
            out[name] = encrypt(value, secret)
    return out


def decrypt_fields(
    row: Mapping[str, Any],
    fields: Iterable[str] = MEMBER_PII_FIELDS,
    secret: str | None = None,
) -> Dict[str, Any]:
    """Best-effort decryption of the named fields; never raises.

    A field that fails to decrypt keeps its raw value, which covers legacy
    plaintext rows as well as corrupt ciphertext.
    """
    out = dict(row)
    failed: list[str] = []
    for name in fields:
        value = out.get(name)
        if not isinstance(value, str) or not value:
            continue
        try:
            out[name] = decrypt(value, secret)
        except DecryptionError:
            failed.append(name)
    if failed:
        logger.warning("field_decrypt_fallback row_id=%s fields=%s", out.get("id"), ",".join(failed))
    return out


__all__ = [
    "MEMBER_PII_FIELDS",
    "DecryptionError",
    "derive_key",
    "encrypt",
    "decrypt",
    "encrypt_member_fields",
    "decrypt_fields",
]
