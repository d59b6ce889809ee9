"""Field-level encryption for marketplace secrets.

Values are stored as ``ENC:v1:<base64(nonce || ciphertext || tag)>`` using
AES-256-GCM with a fresh 12-byte nonce per value. The key is derived from
``settings.secret_key`` with HKDF-SHA256, so rotating the application secret
makes previously stored values undecryptable.

``decrypt`` does not raise. Plain values pass through untouched and values
that fail authentication come back unchanged (prefix included); callers that
need a usable secret check :func:`is_encrypted` on the result.
"""

from __future__ import annotations

import base64
import binascii
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.config import settings
from app.utils.logger import logger


PREFIX = "ENC:v1:"
NONCE_BYTES = 12
KEY_BYTES = 32
_HKDF_INFO = b"brick-store-connector/credentials/v1"


@lru_cache(maxsize=4)
def _derive_key(secret: str) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=None,
        info=_HKDF_INFO,
    ).derive(secret.encode("utf-8"))


def _cipher() -> AESGCM:
    return AESGCM(_derive_key(settings.secret_key))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    """Encrypt one field value. ``None`` stays ``None``."""

    if plaintext is None:
        return None
    nonce = os.urandom(NONCE_BYTES)
    sealed = _cipher().encrypt(nonce, str(plaintext).encode("utf-8"), None)
    return PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(value: Optional[str]) -> Optional[str]:
    if not is_encrypted(value):
        return value

    try:
        blob = base64.b64decode(value[len(PREFIX):], validate=True)
    except (binascii.Error, ValueError):
        logger.error("Stored secret is not valid base64")
        return value
    if len(blob) <= NONCE_BYTES:
        logger.error("Stored secret is truncated")
        return value

    try:
        plaintext = _cipher().decrypt(blob[:NONCE_BYTES], blob[NONCE_BYTES:], None)
    except InvalidTag:
        logger.error("Stored secret failed authentication (wrong key or tampered value)")
        return value
    return plaintext.decode("utf-8")
