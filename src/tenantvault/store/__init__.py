"""
Storage module for tenantvault.

SQLite persistence for encrypted collection records, the audit trail and
store metadata. Everything lives in a single .db file.

Design principles:
    - Atomic: Transactions pair every mutation with its audit entry
    - Opaque payloads: Only ciphertext and blind-index digests hit disk
    - Introspectable: Structure can be compared against the schema

Why SQLite?
    - Zero configuration (no server needed)
    - ACID transactions built-in
    - Portable single-file format, ideal for offline-first devices
"""

from tenantvault.store.db import VaultDB, index_column, index_name, now_iso, table_name

__all__ = [
    "VaultDB",
    "index_column",
    "index_name",
    "now_iso",
    "table_name",
]
