"""
Audit module for tenantvault.

Append-only, hash-chained record of every CREATE, UPDATE and DELETE the
engine performs, readable only by root-admin identities.
"""

from tenantvault.audit.trail import GENESIS_HASH, AuditTrail, compute_entry_hash

__all__ = [
    "AuditTrail",
    "GENESIS_HASH",
    "compute_entry_hash",
]
