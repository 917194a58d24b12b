"""
SQLite storage for tenantvault.

This module owns the single database file and every SQL statement the store
issues. It knows nothing about encryption or identities: it stores opaque
encrypted payloads next to the few plaintext columns needed for scoping,
uniqueness and provenance.

Design Principles:
    - Atomic: Each mutation and its audit entry share one transaction
    - Never reused ids: Collection tables use AUTOINCREMENT
    - Introspectable: The self-healing monitor reads sqlite_master to
      compare observed structure with the schema descriptor
    - Wrapped errors: sqlite3 exceptions are translated at this boundary

Tables:
    - _meta: Store format marker, schema version, blind-index salt
    - _audit: Hash-chained audit entries (owned by the audit trail)
    - c_<collection>: One table per collection

Columns of a collection table:
    id, tenant_id, payload, fingerprint, created_at, created_by,
    updated_at, updated_by, and one ix_<field> column per secondary index
    holding the blind-index value of that field.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator, Iterator

from loguru import logger

from tenantvault.errors import (
    ERROR_INCOMPATIBLE_STORE,
    ERROR_UNIQUE_VIOLATION,
    OpenError,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
    StructuralFaultError,
    ValidationError,
)
from tenantvault.schema import CollectionSpec, IndexSpec

STORE_FORMAT = "tenantvault"
STORE_FORMAT_VERSION = 1

TABLE_PREFIX = "c_"
INDEX_COLUMN_PREFIX = "ix_"

CREATE_META_SQL = """
CREATE TABLE IF NOT EXISTS _meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_STRUCTURAL_MARKERS = (
    "no such table",
    "no such column",
    "no such index",
    "has no column named",
)


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


def table_name(collection: str) -> str:
    """Table backing a collection."""
    return f"{TABLE_PREFIX}{collection}"


def index_column(field_name: str) -> str:
    """Column holding the blind-index value of a field."""
    return f"{INDEX_COLUMN_PREFIX}{field_name}"


def index_name(collection: str, field_name: str) -> str:
    """SQLite index name for a collection field."""
    return f"ix_{collection}_{field_name}"


def is_structural_fault(error: sqlite3.Error) -> bool:
    """Whether an sqlite error means a table or column is missing."""
    text = str(error).lower()
    return any(marker in text for marker in _STRUCTURAL_MARKERS)


class VaultDB:
    """
    SQLite database backing a tenantvault store.

    Usage:
        db = VaultDB("vault.db")
        db.create_collection(spec)
        with db.transaction() as conn:
            row_id = db.insert_row("customers", {...})
        db.close()

    All methods are thread-safe; a re-entrant lock guards the connection so
    the engine can run them from worker threads.
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Open (or create) the database file and its metadata table.

        Raises:
            StorageConnectionError: If the file cannot be opened
            OpenError: If the file belongs to something other than tenantvault
        """
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()
        self._init_meta()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            parent = Path(self.db_path).parent
            if not parent.exists():
                raise StorageConnectionError(
                    db_path=self.db_path,
                    action="connect",
                    message=f"Storage directory does not exist: {parent}",
                )
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StorageConnectionError(
                db_path=self.db_path,
                action="connect",
                message=f"Store file unreachable: {e}",
            ) from e

    def _init_meta(self) -> None:
        """Create the metadata table, refusing foreign databases."""
        with self._lock:
            try:
                existing = {
                    row["name"]
                    for row in self._conn.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table'"
                    )
                }
                if existing and "_meta" not in existing:
                    raise self._incompatible(
                        "Database contains tables that were not created by tenantvault"
                    )

                self._conn.executescript(CREATE_META_SQL)
                fmt = self.get_meta("format")
                if fmt is None:
                    self._conn.execute(
                        "INSERT INTO _meta (key, value) VALUES ('format', ?), "
                        "('format_version', ?), ('created_at', ?)",
                        (STORE_FORMAT, str(STORE_FORMAT_VERSION), now_iso()),
                    )
                    self._conn.commit()
                elif fmt != STORE_FORMAT:
                    raise self._incompatible(f"Unknown store format {fmt!r}")
                else:
                    version = int(self.get_meta("format_version") or 0)
                    if version > STORE_FORMAT_VERSION:
                        raise self._incompatible(
                            f"Store format version {version} is newer than "
                            f"supported version {STORE_FORMAT_VERSION}"
                        )
            except sqlite3.OperationalError as e:
                self.close()
                raise StorageConnectionError(
                    db_path=self.db_path,
                    action="connect",
                    message=f"Database unreachable: {e}",
                ) from e
            except sqlite3.DatabaseError as e:
                # "file is not a database" lands here
                raise self._incompatible(str(e)) from e

    def _incompatible(self, reason: str) -> OpenError:
        self.close()
        return OpenError(
            db_path=self.db_path,
            code=ERROR_INCOMPATIBLE_STORE,
            message=f"Incompatible store at {self.db_path}: {reason}",
            suggestion="Point db_path at a tenantvault store or an empty location",
        )

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def ping(self) -> None:
        """
        Verify the connection still answers.

        Raises:
            StorageConnectionError: If the store is unreachable
        """
        with self._lock:
            if self._conn is None:
                raise StorageConnectionError(db_path=self.db_path, action="ping",
                                             message="Database connection is closed")
            try:
                self._conn.execute("SELECT 1").fetchone()
            except sqlite3.Error as e:
                raise StorageConnectionError(db_path=self.db_path, action="ping",
                                             message=f"Database unreachable: {e}") from e

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database transactions."""
        with self._lock:
            conn = self._require_conn()
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "VaultDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageConnectionError(db_path=self.db_path, action="query",
                                         message="Database connection is closed")
        return self._conn

    @contextmanager
    def _wrap(
        self,
        action: str,
        collection: str | None = None,
        record_id: int | None = None,
        write: bool = True,
    ) -> Iterator[None]:
        """Translate sqlite3 errors into the store's taxonomy."""
        try:
            yield
        except StorageError:
            raise
        except sqlite3.IntegrityError as e:
            raise ValidationError(
                collection=collection,
                record_id=record_id,
                action=action,
                code=ERROR_UNIQUE_VIOLATION,
                message=f"Unique constraint violated in {collection}: {e}",
            ) from e
        except sqlite3.OperationalError as e:
            if is_structural_fault(e):
                raise StructuralFaultError(
                    collection=collection,
                    record_id=record_id,
                    action=action,
                    underlying_error=str(e),
                ) from e
            error_cls = StorageWriteError if write else StorageReadError
            raise error_cls(
                collection=collection, record_id=record_id, action=action,
                underlying_error=str(e),
            ) from e
        except sqlite3.Error as e:
            error_cls = StorageWriteError if write else StorageReadError
            raise error_cls(
                collection=collection, record_id=record_id, action=action,
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Metadata Operations
    # =========================================================================

    def get_meta(self, key: str) -> str | None:
        """Read a metadata value."""
        with self._lock, self._wrap("get_meta", write=False):
            row = self._require_conn().execute(
                "SELECT value FROM _meta WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write a metadata value inside the current transaction (caller commits)."""
        with self._lock, self._wrap("set_meta"):
            self._require_conn().execute(
                "INSERT INTO _meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def commit(self) -> None:
        with self._lock, self._wrap("commit"):
            self._require_conn().commit()

    # =========================================================================
    # Structure Operations
    # =========================================================================

    def table_names(self) -> set[str]:
        """Names of every table in the database."""
        with self._lock, self._wrap("introspect", write=False):
            rows = self._require_conn().execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
            return {row["name"] for row in rows}

    def collection_names(self) -> set[str]:
        """Collections that have a backing table."""
        return {
            name[len(TABLE_PREFIX):]
            for name in self.table_names()
            if name.startswith(TABLE_PREFIX)
        }

    def index_names(self) -> set[str]:
        """Names of every explicit index in the database."""
        with self._lock, self._wrap("introspect", write=False):
            rows = self._require_conn().execute(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND sql IS NOT NULL"
            )
            return {row["name"] for row in rows}

    def column_names(self, table: str) -> set[str]:
        """Columns of a table (empty if the table is missing)."""
        with self._lock, self._wrap("introspect", write=False):
            rows = self._require_conn().execute(f'PRAGMA table_info("{table}")')
            return {row["name"] for row in rows}

    def create_collection(self, spec: CollectionSpec) -> None:
        """Create the table for a collection with all its index columns."""
        columns = [
            "id INTEGER PRIMARY KEY AUTOINCREMENT",
            "tenant_id TEXT",
            "payload TEXT NOT NULL",
            "fingerprint TEXT NOT NULL",
            "created_at TEXT NOT NULL",
            "created_by TEXT",
            "updated_at TEXT NOT NULL",
            "updated_by TEXT",
        ]
        columns.extend(f'"{index_column(ix.field)}" TEXT' for ix in spec.indexes)
        ddl = f'CREATE TABLE IF NOT EXISTS "{table_name(spec.name)}" ({", ".join(columns)})'
        with self._lock, self._wrap("create_collection", collection=spec.name):
            self._require_conn().execute(ddl)
            self._require_conn().commit()
        logger.debug("Created collection table {}", table_name(spec.name))

    def add_index_column(self, collection: str, index: IndexSpec) -> None:
        """Add a missing ix_<field> column to an existing table."""
        ddl = (
            f'ALTER TABLE "{table_name(collection)}" '
            f'ADD COLUMN "{index_column(index.field)}" TEXT'
        )
        with self._lock, self._wrap("add_index_column", collection=collection):
            self._require_conn().execute(ddl)
            self._require_conn().commit()

    def create_index(self, collection: str, index: IndexSpec) -> None:
        """Create the SQLite index for a secondary index declaration."""
        column = index_column(index.field)
        if index.unique:
            target = f"(IFNULL(tenant_id, ''), \"{column}\")"
            kind = "UNIQUE INDEX"
        else:
            target = f'("{column}")'
            kind = "INDEX"
        ddl = (
            f'CREATE {kind} IF NOT EXISTS "{index_name(collection, index.field)}" '
            f'ON "{table_name(collection)}" {target}'
        )
        with self._lock, self._wrap("create_index", collection=collection):
            self._require_conn().execute(ddl)
            self._require_conn().commit()

    # =========================================================================
    # Row Operations
    # =========================================================================

    def insert_row(self, collection: str, values: dict[str, Any]) -> int:
        """
        Insert a row. Must run inside transaction().

        Args:
            collection: Target collection
            values: Column values; may include "id" to preserve an id on restore

        Returns:
            The row id
        """
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        quoted = ", ".join(f'"{c}"' for c in columns)
        sql = f'INSERT INTO "{table_name(collection)}" ({quoted}) VALUES ({placeholders})'
        with self._lock, self._wrap("insert", collection=collection,
                                    record_id=values.get("id")):
            cursor = self._require_conn().execute(sql, [values[c] for c in columns])
            return int(cursor.lastrowid)

    def update_row(self, collection: str, record_id: int, values: dict[str, Any]) -> None:
        """Update columns of a row. Must run inside transaction()."""
        assignments = ", ".join(f'"{c}" = ?' for c in values)
        sql = f'UPDATE "{table_name(collection)}" SET {assignments} WHERE id = ?'
        with self._lock, self._wrap("update", collection=collection, record_id=record_id):
            self._require_conn().execute(sql, [*values.values(), record_id])

    def delete_row(self, collection: str, record_id: int) -> bool:
        """Delete a row. Must run inside transaction(). Returns whether a row went away."""
        sql = f'DELETE FROM "{table_name(collection)}" WHERE id = ?'
        with self._lock, self._wrap("delete", collection=collection, record_id=record_id):
            cursor = self._require_conn().execute(sql, (record_id,))
            return cursor.rowcount > 0

    def fetch_row(self, collection: str, record_id: int) -> sqlite3.Row | None:
        """Fetch one row by id."""
        sql = f'SELECT * FROM "{table_name(collection)}" WHERE id = ?'
        with self._lock, self._wrap("get", collection=collection,
                                    record_id=record_id, write=False):
            return self._require_conn().execute(sql, (record_id,)).fetchone()

    def fetch_rows(
        self,
        collection: str,
        tenant_id: str | None = None,
    ) -> list[sqlite3.Row]:
        """
        Fetch rows in insertion (id) order.

        Args:
            collection: Collection to scan
            tenant_id: Restrict to one tenant's rows when given
        """
        sql = f'SELECT * FROM "{table_name(collection)}"'
        params: list[Any] = []
        if tenant_id is not None:
            sql += " WHERE tenant_id = ?"
            params.append(tenant_id)
        sql += " ORDER BY id"
        with self._lock, self._wrap("list", collection=collection, write=False):
            return self._require_conn().execute(sql, params).fetchall()

    def fetch_rows_by_index(
        self,
        collection: str,
        field_name: str,
        digest: str,
    ) -> list[sqlite3.Row]:
        """
        Fetch rows whose blind-index column matches a digest.

        Raises:
            StructuralFaultError: If the table or its index column is missing
        """
        table = table_name(collection)
        column = index_column(field_name)
        sql = f'SELECT * FROM "{table}" WHERE "{column}" = ? ORDER BY id'
        with self._lock:
            # A missing double-quoted column reads as a string literal, not an error
            if column not in self.column_names(table):
                raise StructuralFaultError(
                    collection=collection,
                    action="find",
                    underlying_error=f"no such column: {table}.{column}",
                )
            with self._wrap("find", collection=collection, write=False):
                return self._require_conn().execute(sql, (digest,)).fetchall()

    def row_exists(self, collection: str, record_id: int) -> bool:
        sql = f'SELECT 1 FROM "{table_name(collection)}" WHERE id = ?'
        with self._lock, self._wrap("exists", collection=collection,
                                    record_id=record_id, write=False):
            return self._require_conn().execute(sql, (record_id,)).fetchone() is not None

    def count_rows(self, collection: str) -> int:
        """Number of rows in a collection."""
        sql = f'SELECT COUNT(*) AS n FROM "{table_name(collection)}"'
        with self._lock, self._wrap("count", collection=collection, write=False):
            return int(self._require_conn().execute(sql).fetchone()["n"])

    def execute(self, sql: str, params: tuple | list = ()) -> None:
        """Run a statement on the shared connection (used by the audit trail)."""
        with self._lock:
            self._require_conn().execute(sql, params)

    def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    def executescript(self, script: str) -> None:
        with self._lock:
            self._require_conn().executescript(script)
