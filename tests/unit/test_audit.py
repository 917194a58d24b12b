"""
Unit tests for the audit trail.

Tests cover:
- Sequence assignment (strictly increasing, gap-free, never reused)
- Hash chaining and verification
- Root-only queries and filters
- Append failures surfacing as AuditError
"""

import sqlite3
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tenantvault.audit import GENESIS_HASH, AuditTrail, compute_entry_hash
from tenantvault.errors import AuditError
from tenantvault.schema import AuditAction, AuditEntry, AuditFilter, Identity
from tenantvault.store import VaultDB


@pytest.fixture
def db(db_path: Path) -> VaultDB:
    database = VaultDB(db_path)
    yield database
    database.close()


@pytest.fixture
def trail(db: VaultDB) -> AuditTrail:
    audit = AuditTrail(db)
    audit.install()
    return audit


def _append(
    trail: AuditTrail,
    identity: Identity,
    action: AuditAction = AuditAction.CREATE,
    collection: str = "customers",
    record_id: int = 1,
    record_tenant: str | None = "t1",
) -> AuditEntry:
    with trail.db.transaction():
        return trail.append(AuditEntry.for_mutation(
            identity, action, collection, record_id, record_tenant=record_tenant,
        ))


class TestAppend:
    """Tests for append."""

    def test_first_entry_anchored(self, trail: AuditTrail, owner_t1: Identity) -> None:
        entry = _append(trail, owner_t1)
        assert entry.sequence == 1
        assert entry.prev_hash == GENESIS_HASH
        assert entry.entry_hash == compute_entry_hash(entry)

    def test_sequences_gap_free(self, trail: AuditTrail, owner_t1: Identity) -> None:
        entries = [_append(trail, owner_t1, record_id=i) for i in range(1, 6)]
        assert [e.sequence for e in entries] == [1, 2, 3, 4, 5]

    def test_chain_links(self, trail: AuditTrail, owner_t1: Identity) -> None:
        first = _append(trail, owner_t1)
        second = _append(trail, owner_t1, action=AuditAction.UPDATE)
        assert second.prev_hash == first.entry_hash

    def test_sequence_survives_reopen(self, db_path: Path, owner_t1: Identity) -> None:
        with VaultDB(db_path) as db:
            trail = AuditTrail(db)
            trail.install()
            _append(trail, owner_t1)
            _append(trail, owner_t1)
        with VaultDB(db_path) as db:
            trail = AuditTrail(db)
            assert _append(trail, owner_t1).sequence == 3
            assert trail.last_sequence() == 3

    def test_sequence_not_reused_after_row_loss(self, trail: AuditTrail, owner_t1: Identity) -> None:
        """The high-water mark outlives the rows that set it."""
        _append(trail, owner_t1)
        _append(trail, owner_t1)
        with trail.db.transaction():
            trail.db.execute("DELETE FROM _audit WHERE seq = 2")
        assert _append(trail, owner_t1).sequence == 3

    def test_rolled_back_append_leaves_no_gap(self, trail: AuditTrail, owner_t1: Identity) -> None:
        _append(trail, owner_t1)
        with pytest.raises(RuntimeError):
            with trail.db.transaction():
                trail.append(AuditEntry.for_mutation(owner_t1, AuditAction.CREATE, "customers", 2))
                raise RuntimeError("abort")
        assert _append(trail, owner_t1).sequence == 2

    def test_failure_raises_audit_error(
        self,
        trail: AuditTrail,
        owner_t1: Identity,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def failing_insert(self: AuditTrail, entry: AuditEntry) -> None:
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(AuditTrail, "_insert", failing_insert)
        with pytest.raises(AuditError) as exc_info:
            _append(trail, owner_t1, record_id=9)
        assert exc_info.value.record_id == 9
        assert "disk I/O error" in exc_info.value.underlying_error
        assert trail.count() == 0


class TestQuery:
    """Tests for query."""

    def test_non_root_gets_nothing(
        self,
        trail: AuditTrail,
        owner_t1: Identity,
        member_t1: Identity,
    ) -> None:
        _append(trail, owner_t1)
        assert trail.query(identity=owner_t1) == []
        assert trail.query(identity=member_t1) == []
        assert trail.query() == []

    def test_root_sees_all(self, trail: AuditTrail, root: Identity, owner_t1: Identity) -> None:
        _append(trail, owner_t1)
        _append(trail, root, record_tenant="t2")
        assert len(trail.query(identity=root)) == 2

    def test_filters(
        self,
        trail: AuditTrail,
        root: Identity,
        owner_t1: Identity,
        owner_t2: Identity,
    ) -> None:
        _append(trail, owner_t1, record_id=1)
        _append(trail, owner_t1, action=AuditAction.UPDATE, record_id=1)
        _append(trail, owner_t2, collection="payments", record_id=7, record_tenant="t2")
        _append(trail, owner_t1, action=AuditAction.DELETE, record_id=1)

        by_record = trail.query(AuditFilter(collection="customers", record_id=1), root)
        assert [e.action for e in by_record] == [
            AuditAction.CREATE, AuditAction.UPDATE, AuditAction.DELETE,
        ]
        assert len(trail.query(AuditFilter(actor_id="carol"), root)) == 1
        assert len(trail.query(AuditFilter(tenant_id="t2"), root)) == 1
        assert len(trail.query(AuditFilter(action=AuditAction.UPDATE), root)) == 1
        assert [e.sequence for e in trail.query(AuditFilter(limit=2), root)] == [1, 2]

    def test_time_window(self, trail: AuditTrail, root: Identity, owner_t1: Identity) -> None:
        _append(trail, owner_t1)
        now = datetime.now(UTC)
        assert len(trail.query(AuditFilter(since=now - timedelta(minutes=1)), root)) == 1
        assert trail.query(AuditFilter(since=now + timedelta(minutes=1)), root) == []
        assert trail.query(AuditFilter(until=now - timedelta(minutes=1)), root) == []

    def test_naive_bounds_read_as_utc(self, trail: AuditTrail, root: Identity, owner_t1: Identity) -> None:
        _append(trail, owner_t1)
        assert AuditFilter(since=datetime(2020, 1, 1)).since.tzinfo is UTC
        assert len(trail.query(AuditFilter(since=datetime(2020, 1, 1)), root)) == 1
        assert trail.query(AuditFilter(until=datetime(2020, 1, 1)), root) == []


class TestVerifyChain:
    """Tests for verify_chain."""

    def test_empty_chain_valid(self, trail: AuditTrail) -> None:
        result = trail.verify_chain()
        assert result.valid
        assert result.entries_checked == 0

    def test_intact_chain(self, trail: AuditTrail, owner_t1: Identity) -> None:
        for i in range(3):
            _append(trail, owner_t1, record_id=i + 1)
        result = trail.verify_chain()
        assert result.valid
        assert result.entries_checked == 3

    def test_tampered_entry(self, trail: AuditTrail, owner_t1: Identity) -> None:
        for i in range(3):
            _append(trail, owner_t1, record_id=i + 1)
        with trail.db.transaction():
            trail.db.execute("UPDATE _audit SET actor_id = 'mallory' WHERE seq = 2")
        result = trail.verify_chain()
        assert not result.valid
        assert result.broken_at == 2
        assert result.reason == "entry hash mismatch"

    def test_removed_entry_breaks_link(self, trail: AuditTrail, owner_t1: Identity) -> None:
        for i in range(3):
            _append(trail, owner_t1, record_id=i + 1)
        with trail.db.transaction():
            trail.db.execute("DELETE FROM _audit WHERE seq = 2")
        result = trail.verify_chain()
        assert not result.valid
        assert result.broken_at == 3
