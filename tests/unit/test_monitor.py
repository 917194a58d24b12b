"""
Unit tests for the self-healing monitor.

Tests cover:
- Provisioning a fresh store
- Detecting and repairing missing collections, indexes and the audit table
- Schema version bumps
- Backfill of new index columns
- Bounded retries on open and on repair
"""

import threading
from pathlib import Path

import pytest

from tenantvault.errors import OpenError, StorageConnectionError, UnrecoverableError
from tenantvault.healing import SelfHealingMonitor
from tenantvault.schema import (
    CollectionSpec,
    HealthState,
    IndexSpec,
    SchemaDescriptor,
)
from tenantvault.store import VaultDB, index_name


@pytest.fixture
def db(db_path: Path) -> VaultDB:
    database = VaultDB(db_path)
    yield database
    database.close()


@pytest.fixture
def monitor(small_schema: SchemaDescriptor) -> SelfHealingMonitor:
    return SelfHealingMonitor(small_schema)


class TestProvisioning:
    """Tests for fresh stores."""

    def test_fresh_store_healthy(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        report = monitor.heal(db)
        assert report.state == HealthState.HEALTHY
        assert report.schema_version == 1
        assert report.repaired == []
        assert report.transitions == [HealthState.CHECKING, HealthState.HEALTHY]
        assert db.collection_names() == {"customers", "payments"}

    def test_baseline_version_from_descriptor(self, db: VaultDB) -> None:
        monitor = SelfHealingMonitor(SchemaDescriptor(version=5, collections=[CollectionSpec(name="a")]))
        assert monitor.heal(db).schema_version == 5

    def test_heal_is_idempotent(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        monitor.heal(db)
        report = monitor.heal(db)
        assert report.schema_version == 1
        assert report.repaired == []

    def test_report_counts(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        report = monitor.heal(db)
        assert report.record_counts == {"customers": 0, "payments": 0}
        assert report.audit_entries == 0
        assert report.storage.disk_free_bytes is not None


class TestRepair:
    """Tests for drift repair."""

    def test_missing_collection(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        monitor.heal(db)
        db.executescript("DROP TABLE c_payments")

        report = monitor.heal(db)

        assert report.state == HealthState.HEALTHY
        assert report.repaired == ["payments"]
        assert report.schema_version == 2
        assert report.transitions == [
            HealthState.CHECKING,
            HealthState.DEGRADED,
            HealthState.REPAIRING,
            HealthState.CHECKING,
            HealthState.HEALTHY,
        ]
        assert "payments" in db.collection_names()

    def test_check_does_not_repair(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        monitor.heal(db)
        db.executescript("DROP TABLE c_payments")
        report = monitor.check(db)
        assert report.state == HealthState.DEGRADED
        assert report.missing_collections == ["payments"]
        assert "payments" not in db.collection_names()

    def test_missing_index(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        monitor.heal(db)
        db.executescript(f'DROP INDEX "{index_name("customers", "status")}"')

        report = monitor.heal(db)

        assert report.repaired == ["customers.status"]
        assert report.schema_version == 2
        assert index_name("customers", "status") in db.index_names()

    def test_missing_audit_table(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        monitor.heal(db)
        db.executescript("DROP TABLE _audit")
        report = monitor.heal(db)
        assert "_audit" in report.repaired
        assert "_audit" in db.table_names()

    def test_one_bump_per_pass(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        """Several repairs in one pass still bump the version once."""
        monitor.heal(db)
        db.executescript("DROP TABLE c_payments; DROP TABLE c_customers;")
        report = monitor.heal(db)
        assert sorted(report.repaired) == ["customers", "payments"]
        assert report.schema_version == 2

    def test_version_bump_survives_concurrent_rollback(self, monitor: SelfHealingMonitor, db: VaultDB) -> None:
        """A transaction rolled back on another thread cannot undo the bump."""
        monitor.heal(db)
        db.executescript("DROP TABLE c_payments")
        reports = []
        worker = threading.Thread(target=lambda: reports.append(monitor.heal(db)))

        with pytest.raises(RuntimeError):
            with db.transaction():
                db.set_meta("pending", "x")
                worker.start()
                worker.join(timeout=0.2)
                raise RuntimeError("caller aborted")
        worker.join()

        assert reports[0].schema_version == 2
        assert db.get_meta("schema_version") == "2"
        assert db.get_meta("pending") is None

    def test_new_index_backfilled(self, small_schema: SchemaDescriptor, db: VaultDB) -> None:
        SelfHealingMonitor(small_schema).heal(db)
        with db.transaction():
            db.insert_row("payments", {
                "tenant_id": "t1", "payload": "x", "fingerprint": "f",
                "created_at": "now", "updated_at": "now",
            })

        calls: list[tuple[str, str]] = []

        def backfill(target: VaultDB, collection: str, index: IndexSpec) -> int:
            calls.append((collection, index.field))
            return target.count_rows(collection)

        extended = SchemaDescriptor(
            version=1,
            collections=[
                small_schema.get("customers"),
                CollectionSpec(
                    name="payments",
                    indexes=[*small_schema.get("payments").indexes, IndexSpec(field="date")],
                ),
            ],
        )
        report = SelfHealingMonitor(extended, backfill=backfill).heal(db)

        assert calls == [("payments", "date")]
        assert report.repaired == ["payments.date"]
        assert report.schema_version == 2
        assert "ix_date" in db.column_names("c_payments")

    def test_non_converging_repair(
        self,
        monitor: SelfHealingMonitor,
        db: VaultDB,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Two failed passes end in FAILED instead of looping."""
        monitor.heal(db)
        db.executescript("DROP TABLE c_payments")
        monkeypatch.setattr(SelfHealingMonitor, "_repair", lambda self, db, report: [])

        with pytest.raises(UnrecoverableError) as exc_info:
            monitor.heal(db)

        assert exc_info.value.attempts == 2
        assert monitor.state == HealthState.FAILED
        assert monitor.transitions.count(HealthState.REPAIRING) == 2


class TestOpenStore:
    """Tests for open_store."""

    def test_opens_and_provisions(self, monitor: SelfHealingMonitor, db_path: Path) -> None:
        db, report = monitor.open_store(lambda: VaultDB(db_path))
        try:
            assert report.healthy
            assert db.is_open
        finally:
            db.close()

    def test_one_reinitialization(self, monitor: SelfHealingMonitor, db_path: Path) -> None:
        attempts = []

        def flaky() -> VaultDB:
            attempts.append(1)
            if len(attempts) == 1:
                raise StorageConnectionError(db_path=str(db_path))
            return VaultDB(db_path)

        db, report = monitor.open_store(flaky)
        db.close()
        assert len(attempts) == 2
        assert report.healthy

    def test_second_failure_unrecoverable(self, monitor: SelfHealingMonitor, temp_dir: Path) -> None:
        attempts = []

        def unreachable() -> VaultDB:
            attempts.append(1)
            return VaultDB(temp_dir / "missing" / "vault.db")

        with pytest.raises(UnrecoverableError) as exc_info:
            monitor.open_store(unreachable)

        assert len(attempts) == 2
        assert exc_info.value.action == "open"
        assert monitor.state == HealthState.FAILED

    def test_incompatible_store_not_retried(self, monitor: SelfHealingMonitor) -> None:
        attempts = []

        def foreign() -> VaultDB:
            attempts.append(1)
            raise OpenError(db_path="foreign.db")

        with pytest.raises(OpenError):
            monitor.open_store(foreign)
        assert len(attempts) == 1
