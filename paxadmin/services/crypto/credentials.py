from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from paxadmin.core.config import get_settings
from paxadmin.core.errors import ConfigurationError, CredentialsError


CIPHER_PREFIX = "v1:"
_NONCE_BYTES = 12
_HEX_KEY = re.compile(r"(?:[0-9a-fA-F]{2})+")
# Bind ciphertexts to their purpose so they cannot be replayed into other fields.
_AAD = b"paxadmin:tenant-database-credentials"
_OPERATION = "Credential decryption"


def _decode_key(material: str) -> bytes:
    material = material.strip()
    if _HEX_KEY.fullmatch(material):
        return bytes.fromhex(material)
    try:
        return base64.b64decode(material, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("CREDENTIALS_ENCRYPTION_KEY must be hex or base64") from exc


def _credentials_key() -> bytes:
    # The key lives only in process configuration, never next to the ciphertext.
    settings = get_settings()
    if not settings.credentials_encryption_key:
        raise ConfigurationError("CREDENTIALS_ENCRYPTION_KEY is required to store tenant database credentials")
    key = _decode_key(settings.credentials_encryption_key)
    if len(key) not in {16, 24, 32}:
        raise ConfigurationError("CREDENTIALS_ENCRYPTION_KEY must be 128/192/256-bit")
    return key


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CredentialsError(_OPERATION, "stored credentials are not valid base64") from exc


def _to_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CredentialsError(_OPERATION, "stored credentials are not valid UTF-8") from exc


def encrypt_secret(plaintext: str) -> str:
    nonce = os.urandom(_NONCE_BYTES)
    sealed = AESGCM(_credentials_key()).encrypt(nonce, plaintext.encode("utf-8"), _AAD)
    return CIPHER_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_secret(value: str) -> str:
    """Return the plaintext of a stored credential.

    Raises ``ConfigurationError`` when the key is unusable and
    ``CredentialsError`` when the stored value cannot be read with it.
    """
    if not value.startswith(CIPHER_PREFIX):
        # Rows written before encryption hold a bare base64 encoding.
        return _to_text(_b64decode(value))
    payload = _b64decode(value[len(CIPHER_PREFIX):])
    nonce, sealed = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
    try:
        plaintext = AESGCM(_credentials_key()).decrypt(nonce, sealed, _AAD)
    except InvalidTag as exc:
        raise CredentialsError(_OPERATION, "stored credentials cannot be decrypted with the configured key") from exc
    return _to_text(plaintext)
