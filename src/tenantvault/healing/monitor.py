"""
Self-Healing Monitor for tenantvault.

The monitor compares the structure it observes in the database with the
schema descriptor and repairs drift: missing collection tables, missing
index columns and missing indexes, and a missing audit table.

State machine:
    UNKNOWN -> CHECKING -> HEALTHY
                        -> DEGRADED -> REPAIRING -> CHECKING -> ...
    FAILED once a repair or re-initialization fails twice in a row.

Policy:
    - Runs when the engine opens and when an operation hits a structural fault
    - A repair pass that adds structure bumps the schema version by one
    - An unreachable store gets one full re-initialization; a second failure
      raises UnrecoverableError instead of looping
    - Record counts and storage usage are reported, never acted on
"""

import shutil
import threading
from pathlib import Path
from typing import Callable

from loguru import logger

from tenantvault.audit.trail import AUDIT_INDEXES, AUDIT_TABLE, AuditTrail
from tenantvault.errors import (
    OpenError,
    StorageError,
    UnrecoverableError,
)
from tenantvault.schema import (
    HealthReport,
    HealthState,
    IndexSpec,
    SchemaDescriptor,
    StorageUsage,
)
from tenantvault.store.db import VaultDB, index_column, index_name, table_name

MAX_ATTEMPTS = 2

# Called with (db, collection, index) after an index column was added;
# returns the number of rows backfilled.
BackfillFn = Callable[[VaultDB, str, IndexSpec], int]


class SelfHealingMonitor:
    """
    Detects and repairs schema drift.

    Usage:
        monitor = SelfHealingMonitor(schema)
        db, report = monitor.open_store(lambda: VaultDB(path))
        report = monitor.heal(db)

    Attributes:
        schema: The expected collection/index set
        state: Current HealthState
        transitions: States entered during the last check/heal, in order
    """

    def __init__(self, schema: SchemaDescriptor, backfill: BackfillFn | None = None) -> None:
        self.schema = schema
        self.backfill = backfill
        self.state = HealthState.UNKNOWN
        self.transitions: list[HealthState] = []
        self._lock = threading.RLock()

    def _transition(self, state: HealthState) -> None:
        if state != self.state:
            logger.debug("Schema health {} -> {}", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    # =========================================================================
    # Opening
    # =========================================================================

    def open_store(self, factory: Callable[[], VaultDB]) -> tuple[VaultDB, HealthReport]:
        """
        Connect to the store and bring its structure in line with the schema.

        The factory is called at most twice: once, and once more as a full
        re-initialization if the first attempt fails.

        Raises:
            OpenError: If the database belongs to another program or format
            UnrecoverableError: If both attempts fail
        """
        with self._lock:
            self.transitions = []
            last_error: StorageError | None = None

            for attempt in range(1, MAX_ATTEMPTS + 1):
                db: VaultDB | None = None
                try:
                    db = factory()
                    db.ping()
                    report = self._heal_locked(db)
                    return db, report
                except (OpenError, UnrecoverableError):
                    if db is not None:
                        db.close()
                    raise
                except StorageError as e:
                    last_error = e
                    if db is not None:
                        db.close()
                    if attempt < MAX_ATTEMPTS:
                        logger.warning("Store unreachable ({}); re-initializing", e.message)

            self._transition(HealthState.FAILED)
            logger.error("Store could not be opened after {} attempts", MAX_ATTEMPTS)
            raise UnrecoverableError(
                action="open",
                attempts=MAX_ATTEMPTS,
                underlying_error=last_error.message if last_error else "unknown",
            ) from last_error

    # =========================================================================
    # Checking
    # =========================================================================

    def check(self, db: VaultDB) -> HealthReport:
        """Inspect the store without changing it."""
        with self._lock:
            return self._check_locked(db)

    def _check_locked(self, db: VaultDB) -> HealthReport:
        self._transition(HealthState.CHECKING)

        tables = db.table_names()
        indexes = db.index_names()
        missing_collections: list[str] = []
        missing_indexes: list[str] = []

        for spec in self.schema.collections:
            table = table_name(spec.name)
            if table not in tables:
                missing_collections.append(spec.name)
                continue
            columns = db.column_names(table)
            for index in spec.indexes:
                if (
                    index_column(index.field) not in columns
                    or index_name(spec.name, index.field) not in indexes
                ):
                    missing_indexes.append(f"{spec.name}.{index.field}")

        if AUDIT_TABLE not in tables:
            missing_collections.append(AUDIT_TABLE)
        else:
            missing_indexes.extend(name for name in AUDIT_INDEXES if name not in indexes)

        state = (
            HealthState.DEGRADED
            if missing_collections or missing_indexes
            else HealthState.HEALTHY
        )
        self._transition(state)

        report = HealthReport(
            state=state,
            schema_version=self.schema_version(db),
            missing_collections=missing_collections,
            missing_indexes=missing_indexes,
            transitions=list(self.transitions),
            storage=self._storage_usage(db),
        )
        present = set(db.collection_names())
        report.record_counts = {
            spec.name: db.count_rows(spec.name)
            for spec in self.schema.collections
            if spec.name in present
        }
        if AUDIT_TABLE in tables:
            report.audit_entries = AuditTrail(db).count()
        return report

    def schema_version(self, db: VaultDB) -> int:
        """Schema version persisted in the store (0 for a fresh store)."""
        return int(db.get_meta("schema_version") or 0)

    # =========================================================================
    # Repair
    # =========================================================================

    def heal(self, db: VaultDB) -> HealthReport:
        """
        Check the store and repair any drift.

        A fresh store (no schema version yet) is provisioned at the
        descriptor's baseline version without counting as a repair.

        Raises:
            UnrecoverableError: If two repair passes do not converge
        """
        with self._lock:
            self.transitions = []
            return self._heal_locked(db)

    def _heal_locked(self, db: VaultDB) -> HealthReport:
        if self.schema_version(db) == 0:
            self._provision(db)

        report = self._check_locked(db)
        if report.state == HealthState.HEALTHY:
            return report

        repaired: list[str] = []
        last_error: str = ""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            self._transition(HealthState.REPAIRING)
            try:
                repaired.extend(self._repair(db, report))
            except StorageError as e:
                last_error = e.message
                logger.warning("Repair pass {} failed: {}", attempt, e.message)

            report = self._check_locked(db)
            if report.state == HealthState.HEALTHY:
                break
        else:
            self._transition(HealthState.FAILED)
            raise UnrecoverableError(
                action="repair",
                attempts=MAX_ATTEMPTS,
                underlying_error=last_error or (
                    f"still missing {report.missing_collections + report.missing_indexes}"
                ),
            )

        if repaired:
            version = self.schema_version(db) + 1
            with db.transaction():
                db.set_meta("schema_version", str(version))
            logger.info("Repaired {}; schema version now {}", ", ".join(repaired), version)

        report = report.model_copy(update={
            "schema_version": self.schema_version(db),
            "repaired": repaired,
            "transitions": list(self.transitions),
        })
        return report

    def _provision(self, db: VaultDB) -> None:
        """Create every structure of a brand new store."""
        AuditTrail(db).install()
        for spec in self.schema.collections:
            db.create_collection(spec)
            for index in spec.indexes:
                db.create_index(spec.name, index)
        with db.transaction():
            db.set_meta("schema_version", str(self.schema.version))
        logger.info(
            "Provisioned {} collection(s) at schema version {}",
            len(self.schema.collections), self.schema.version,
        )

    def _repair(self, db: VaultDB, report: HealthReport) -> list[str]:
        repaired: list[str] = []

        for name in report.missing_collections:
            if name == AUDIT_TABLE:
                AuditTrail(db).install()
                repaired.append(AUDIT_TABLE)
                continue
            spec = self.schema.get(name)
            db.create_collection(spec)
            for index in spec.indexes:
                db.create_index(name, index)
            repaired.append(name)

        for qualified in report.missing_indexes:
            if qualified in AUDIT_INDEXES:
                AuditTrail(db).install()
                repaired.append(qualified)
                continue
            collection, field_name = qualified.split(".", 1)
            index = self.schema.get(collection).index_for(field_name)
            if index_column(field_name) not in db.column_names(table_name(collection)):
                db.add_index_column(collection, index)
                if self.backfill is not None:
                    count = self.backfill(db, collection, index)
                    logger.info("Backfilled {} row(s) of {}", count, qualified)
            db.create_index(collection, index)
            repaired.append(qualified)

        return repaired

    # =========================================================================
    # Telemetry
    # =========================================================================

    @staticmethod
    def _storage_usage(db: VaultDB) -> StorageUsage:
        if db.db_path == ":memory:":
            return StorageUsage()
        path = Path(db.db_path)
        try:
            usage = shutil.disk_usage(path.parent)
            size = path.stat().st_size if path.exists() else None
        except OSError:
            return StorageUsage()
        return StorageUsage(
            database_bytes=size,
            disk_total_bytes=usage.total,
            disk_free_bytes=usage.free,
        )
