"""
Encryption module for tenantvault.

AES-256-GCM with PBKDF2-HMAC-SHA256 key derivation, plus SHA-256
fingerprints and HMAC blind-index values for searchable fields.
"""

from tenantvault.crypto.codec import (
    NONCE_LENGTH,
    SALT_LENGTH,
    EncryptionCodec,
    canonical_json,
    compute_hash,
)

__all__ = [
    "EncryptionCodec",
    "NONCE_LENGTH",
    "SALT_LENGTH",
    "canonical_json",
    "compute_hash",
]
