"""
Encryption codec for tenantvault.

Every record payload passes through this codec on its way to disk. There is
no plaintext path: a failure to encrypt or to authenticate raises a typed
error and the engine aborts the operation.

Blob layout (base64 encoded):
    salt (16 bytes) || nonce (12 bytes) || ciphertext || GCM tag (16 bytes)

Key derivation:
    PBKDF2-HMAC-SHA256, 32-byte key, at least 100,000 iterations. A fresh
    salt per encrypt() call means identical passphrases yield unlinkable keys.
"""

import base64
import binascii
import hashlib
import hmac
import json
import os
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from tenantvault.errors import AuthenticationError, EncryptionError, MalformedCiphertextError
from tenantvault.schema import MIN_KDF_ITERATIONS

SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


@lru_cache(maxsize=256)
def _pbkdf2(passphrase: bytes, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


def compute_hash(data: Any) -> str:
    """Compute SHA256 hash of data."""
    if data is None:
        return ""
    if isinstance(data, str):
        content = data.encode("utf-8")
    elif isinstance(data, bytes):
        content = data
    else:
        content = canonical_json(data).encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace so equal values hash equally."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


class EncryptionCodec:
    """
    Authenticated encryption of text payloads.

    Usage:
        codec = EncryptionCodec()
        blob = codec.encrypt("secret", passphrase)
        text = codec.decrypt(blob, passphrase)

    Attributes:
        iterations: PBKDF2 iteration count used for every derivation
    """

    def __init__(self, iterations: int = MIN_KDF_ITERATIONS) -> None:
        if iterations < MIN_KDF_ITERATIONS:
            msg = f"kdf iterations must be at least {MIN_KDF_ITERATIONS}"
            raise ValueError(msg)
        self.iterations = iterations

    def derive_key(self, passphrase: str, salt: bytes) -> bytes:
        """
        Derive a 256-bit key from a passphrase and salt.

        Deterministic: the same passphrase and salt always produce the same key.
        """
        return _pbkdf2(passphrase.encode("utf-8"), bytes(salt), self.iterations)

    def encrypt(self, plaintext: str, passphrase: str) -> str:
        """
        Encrypt text with a fresh salt and nonce.

        Args:
            plaintext: Text to protect
            passphrase: Store passphrase

        Returns:
            base64(salt || nonce || ciphertext || tag)

        Raises:
            EncryptionError: If the plaintext cannot be encrypted
        """
        try:
            salt = os.urandom(SALT_LENGTH)
            nonce = os.urandom(NONCE_LENGTH)
            key = self.derive_key(passphrase, salt)
            sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, AttributeError) as e:
            raise EncryptionError(underlying_error=str(e)) from e
        return base64.b64encode(salt + nonce + sealed).decode("ascii")

    def decrypt(self, blob: str, passphrase: str) -> str:
        """
        Authenticate and decrypt a blob produced by encrypt().

        Raises:
            MalformedCiphertextError: If the blob is not base64 or is truncated
            AuthenticationError: If the tag check fails
        """
        try:
            raw = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as e:
            raise MalformedCiphertextError(
                message="Ciphertext is not valid base64",
            ) from e

        if len(raw) < SALT_LENGTH + NONCE_LENGTH + TAG_LENGTH:
            raise MalformedCiphertextError(length=len(raw))

        salt = raw[:SALT_LENGTH]
        nonce = raw[SALT_LENGTH:SALT_LENGTH + NONCE_LENGTH]
        sealed = raw[SALT_LENGTH + NONCE_LENGTH:]
        key = self.derive_key(passphrase, salt)

        try:
            plaintext = AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag as e:
            logger.warning("Ciphertext failed authentication ({} bytes)", len(raw))
            raise AuthenticationError() from e
        return plaintext.decode("utf-8")

    def encrypt_object(self, obj: Any, passphrase: str) -> str:
        """Encrypt a JSON-compatible object."""
        try:
            text = canonical_json(obj)
        except (TypeError, ValueError) as e:
            raise EncryptionError(underlying_error=str(e)) from e
        return self.encrypt(text, passphrase)

    def decrypt_object(self, blob: str, passphrase: str) -> Any:
        """Decrypt a blob produced by encrypt_object()."""
        text = self.decrypt(blob, passphrase)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedCiphertextError(
                message="Decrypted payload is not valid JSON",
            ) from e

    def hash(self, text: str) -> str:
        """
        SHA-256 hex digest for content fingerprinting.

        Not suitable for password storage.
        """
        return compute_hash(text)

    def blind_index(self, value: Any, key: bytes) -> str | None:
        """
        Keyed digest of a field value for equality lookups.

        None stays None so records without the field never collide in a
        unique index.
        """
        if value is None:
            return None
        digest = hmac.new(key, canonical_json(value).encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()
