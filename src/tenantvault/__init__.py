"""
tenantvault - Embedded, encrypted, multi-tenant record store.

tenantvault persists JSON-like records in named collections inside a single
SQLite file. It provides:
- Mandatory AES-256-GCM encryption of every payload
- Tenant scoping of every read and write by caller identity
- A hash-chained audit trail of every mutation
- Self-healing of schema drift at startup and on fault
- Snapshot backup and conflict-aware restore

Example usage:
    async with StorageEngine(config, passphrase=secret) as engine:
        record = await engine.create_record("customers", {...}, identity)

    $ tenantvault init --db vault.db
    $ tenantvault health --json
"""

__version__ = "0.1.0"
__author__ = "tenantvault Contributors"

from tenantvault.engine import StorageEngine
from tenantvault.errors import VaultError
from tenantvault.schema import Identity, Role, SchemaDescriptor, StoreConfig

__all__ = [
    "__version__",
    "__author__",
    "Identity",
    "Role",
    "SchemaDescriptor",
    "StorageEngine",
    "StoreConfig",
    "VaultError",
]
