"""
Audit Trail for tenantvault.

Every mutation the engine performs is paired with exactly one audit entry,
written in the same SQLite transaction as the mutation itself. If the
append fails, the transaction rolls back and the caller sees AuditError.

Design Principles:
    - Append-only: No update or delete statement touches _audit
    - Gap-free: Sequence numbers are assigned inside the transaction, so a
      rolled-back mutation never consumes one
    - Never reused: A high-water mark in _meta survives loss of the table
    - Tamper-evident: Each entry hashes its content plus the previous hash
    - Existence-hiding: Non-root identities query an empty trail
"""

import sqlite3
from datetime import datetime
from typing import Any

from loguru import logger

from tenantvault.crypto.codec import compute_hash
from tenantvault.errors import AuditError, StorageError
from tenantvault.schema import (
    AuditAction,
    AuditEntry,
    AuditFilter,
    ChainVerification,
    Identity,
    Role,
)
from tenantvault.store.db import VaultDB

GENESIS_HASH = "0" * 64

AUDIT_TABLE = "_audit"
AUDIT_INDEXES = ("idx_audit_target", "idx_audit_actor", "idx_audit_timestamp")

CREATE_AUDIT_SQL = """
CREATE TABLE IF NOT EXISTS _audit (
    seq INTEGER PRIMARY KEY,
    actor_id TEXT NOT NULL,
    actor_role TEXT NOT NULL,
    actor_tenant TEXT,
    action TEXT NOT NULL,
    collection TEXT NOT NULL,
    record_id INTEGER NOT NULL,
    record_tenant TEXT,
    fingerprint TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    prev_hash TEXT NOT NULL,
    entry_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_target ON _audit(collection, record_id);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON _audit(actor_id);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON _audit(timestamp);
"""


def compute_entry_hash(entry: AuditEntry) -> str:
    """SHA-256 over every field of an entry except its own hash."""
    data = entry.model_dump(mode="json", exclude={"entry_hash"})
    return compute_hash(data)


class AuditTrail:
    """
    Append-only, hash-chained log of mutations.

    append() must be called inside VaultDB.transaction(); the engine owns
    the commit so the record write and the audit entry land together.

    Usage:
        trail = AuditTrail(db)
        trail.install()
        with db.transaction():
            db.insert_row(...)
            trail.append(AuditEntry.for_mutation(...))
    """

    def __init__(self, db: VaultDB) -> None:
        self.db = db

    def install(self) -> None:
        """Create the audit table and its indexes if missing."""
        self.db.executescript(CREATE_AUDIT_SQL)

    def is_installed(self) -> bool:
        return AUDIT_TABLE in self.db.table_names()

    # =========================================================================
    # Write Path
    # =========================================================================

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Append an entry, assigning its sequence number and hashes.

        Args:
            entry: Unsequenced entry (sequence/hash fields are ignored)

        Returns:
            The stored entry with sequence, prev_hash and entry_hash set

        Raises:
            AuditError: If the entry cannot be written
        """
        try:
            sequence = self._next_sequence()
            stamped = entry.model_copy(update={
                "sequence": sequence,
                "prev_hash": self._last_hash(),
                "entry_hash": "",
            })
            stamped = stamped.model_copy(update={"entry_hash": compute_entry_hash(stamped)})
            self._insert(stamped)
            self.db.set_meta("audit_high_water", str(sequence))
            self.db.set_meta("audit_last_hash", stamped.entry_hash)
        except (StorageError, sqlite3.Error) as e:
            logger.error(
                "Audit append failed for {} {}/{}: {}",
                entry.action.value, entry.collection, entry.record_id, e,
            )
            raise AuditError(
                collection=entry.collection,
                record_id=entry.record_id,
                action=entry.action.value.lower(),
                underlying_error=str(e),
            ) from e

        logger.debug(
            "Audit #{} {} {}/{} by {}",
            stamped.sequence, stamped.action.value, stamped.collection,
            stamped.record_id, stamped.actor_id,
        )
        return stamped

    def _insert(self, entry: AuditEntry) -> None:
        self.db.execute(
            """
            INSERT INTO _audit (
                seq, actor_id, actor_role, actor_tenant, action, collection,
                record_id, record_tenant, fingerprint, timestamp,
                prev_hash, entry_hash
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.sequence,
                entry.actor_id,
                entry.actor_role.value,
                entry.actor_tenant,
                entry.action.value,
                entry.collection,
                entry.record_id,
                entry.record_tenant,
                entry.fingerprint,
                entry.timestamp.isoformat(),
                entry.prev_hash,
                entry.entry_hash,
            ),
        )

    def _next_sequence(self) -> int:
        row = self.db.fetchone("SELECT MAX(seq) AS seq FROM _audit")
        table_max = row["seq"] or 0
        high_water = int(self.db.get_meta("audit_high_water") or 0)
        return max(table_max, high_water) + 1

    def _last_hash(self) -> str:
        row = self.db.fetchone(
            "SELECT entry_hash FROM _audit ORDER BY seq DESC LIMIT 1"
        )
        if row is not None:
            return row["entry_hash"]
        return self.db.get_meta("audit_last_hash") or GENESIS_HASH

    # =========================================================================
    # Read Path
    # =========================================================================

    def query(
        self,
        filters: AuditFilter | None = None,
        identity: Identity | None = None,
    ) -> list[AuditEntry]:
        """
        Return matching entries in sequence order.

        Only root-admin identities can read the trail. Anyone else gets an
        empty list, which is indistinguishable from an empty trail.
        """
        if identity is None or identity.role != Role.ROOT_ADMIN:
            return []

        filters = filters or AuditFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if filters.collection is not None:
            clauses.append("collection = ?")
            params.append(filters.collection)
        if filters.record_id is not None:
            clauses.append("record_id = ?")
            params.append(filters.record_id)
        if filters.actor_id is not None:
            clauses.append("actor_id = ?")
            params.append(filters.actor_id)
        if filters.action is not None:
            clauses.append("action = ?")
            params.append(filters.action.value)
        if filters.tenant_id is not None:
            clauses.append("(record_tenant = ? OR actor_tenant = ?)")
            params.extend([filters.tenant_id, filters.tenant_id])

        sql = "SELECT * FROM _audit"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq"

        entries = [self._row_to_entry(row) for row in self.db.fetchall(sql, params)]

        # Timestamps are compared as datetimes, not strings
        if filters.since is not None:
            entries = [e for e in entries if e.timestamp >= filters.since]
        if filters.until is not None:
            entries = [e for e in entries if e.timestamp <= filters.until]
        if filters.limit is not None:
            entries = entries[:filters.limit]
        return entries

    def count(self) -> int:
        return int(self.db.fetchone("SELECT COUNT(*) AS n FROM _audit")["n"])

    def last_sequence(self) -> int:
        """Highest sequence number ever assigned (0 for an empty trail)."""
        row = self.db.fetchone("SELECT MAX(seq) AS seq FROM _audit")
        high_water = int(self.db.get_meta("audit_high_water") or 0)
        return max(row["seq"] or 0, high_water)

    def verify_chain(self) -> ChainVerification:
        """
        Recompute every entry hash and check the links between entries.

        The first surviving entry anchors the chain; each later entry must
        point at its predecessor's hash and hash to its stored value.
        """
        checked = 0
        previous: AuditEntry | None = None
        for row in self.db.fetchall("SELECT * FROM _audit ORDER BY seq"):
            entry = self._row_to_entry(row)
            checked += 1
            if compute_entry_hash(entry) != entry.entry_hash:
                return ChainVerification(
                    valid=False, entries_checked=checked,
                    broken_at=entry.sequence, reason="entry hash mismatch",
                )
            if previous is None:
                if entry.sequence == 1 and entry.prev_hash != GENESIS_HASH:
                    return ChainVerification(
                        valid=False, entries_checked=checked,
                        broken_at=entry.sequence, reason="first entry not anchored at genesis",
                    )
            elif entry.prev_hash != previous.entry_hash:
                return ChainVerification(
                    valid=False, entries_checked=checked,
                    broken_at=entry.sequence, reason="chain link broken",
                )
            previous = entry
        return ChainVerification(valid=True, entries_checked=checked)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            sequence=row["seq"],
            actor_id=row["actor_id"],
            actor_role=Role(row["actor_role"]),
            actor_tenant=row["actor_tenant"],
            action=AuditAction(row["action"]),
            collection=row["collection"],
            record_id=row["record_id"],
            record_tenant=row["record_tenant"],
            fingerprint=row["fingerprint"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            prev_hash=row["prev_hash"],
            entry_hash=row["entry_hash"],
        )
