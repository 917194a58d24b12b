"""
Storage Engine for tenantvault.

The engine is the orchestration layer that callers talk to. It coordinates:
- Access Filter: Tenant scoping of every read and write
- Encryption Codec: Every payload is encrypted before it reaches disk
- Audit Trail: Every mutation is paired with one audit entry
- Self-Healing Monitor: Structure is verified at open and on fault

Execution Flow (mutations):
    1. Wait for readiness (or fail with NotReadyError)
    2. Acquire the collection's lock; other collections proceed concurrently
    3. Check the write against the access filter
    4. Encrypt the payload and compute blind-index values
    5. In one transaction: write the row and append the audit entry
    6. Return the decrypted record with provenance stamps

Readiness Policy:
    Calls made while open() is in flight wait for it. Calls made before
    open() was started, after it failed, or after close() raise
    NotReadyError.

Cancellation:
    Accepted operations are shielded. A caller that stops awaiting does not
    interrupt the write or its audit entry.
"""

import asyncio
import os
from contextlib import AsyncExitStack
from datetime import UTC, datetime
from typing import Any, Callable

from loguru import logger

from tenantvault.audit.trail import AuditTrail
from tenantvault.crypto.codec import EncryptionCodec, canonical_json
from tenantvault.errors import (
    ERROR_CROSS_TENANT_WRITE,
    ERROR_UNKNOWN_COLLECTION,
    AuthenticationError,
    CodecError,
    ConfigError,
    NotFoundError,
    NotReadyError,
    OpenError,
    StorageConnectionError,
    StructuralFaultError,
    UnrecoverableError,
    ValidationError,
    VaultError,
)
from tenantvault.healing.monitor import SelfHealingMonitor
from tenantvault.policy.access import AccessFilter
from tenantvault.schema import (
    RESERVED_FIELDS,
    AuditAction,
    AuditEntry,
    AuditFilter,
    ChainVerification,
    CollectionSpec,
    HealthReport,
    HealthState,
    Identity,
    IndexSpec,
    RestoreReport,
    Snapshot,
    StoreConfig,
)
from tenantvault.store.db import VaultDB, index_column

Record = dict[str, Any]
Predicate = Callable[[Record], bool]

KEY_CHECK_TOKEN = "tenantvault-key-check"


def _parse_stamp(value: Any) -> datetime:
    """
    Read a provenance stamp as an aware UTC datetime.

    Accepts ISO-8601 text (naive values are taken as UTC) and epoch
    milliseconds, as carried by backups exported from the browser app.

    Raises:
        ValueError: If the value is neither
    """
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    raise ValueError(f"not a timestamp: {value!r}")


def _next_timestamp(previous: Any = None) -> str:
    """Current UTC time, never earlier than a previous stamp."""
    now = datetime.now(UTC)
    if previous:
        try:
            before = _parse_stamp(previous)
        except ValueError:
            logger.warning("Ignoring unreadable previous stamp {!r}", previous)
            return now.isoformat()
        if before > now:
            return before.isoformat()
    return now.isoformat()


class StorageEngine:
    """
    Embedded, encrypted, multi-tenant record store.

    Usage:
        engine = StorageEngine(config, passphrase=secret)
        await engine.open()
        record = await engine.create_record("customers", {...}, identity)
        await engine.close()

    Or as an async context manager:
        async with StorageEngine(config, passphrase=secret) as engine:
            ...

    Attributes:
        config: Store configuration
        schema: Expected collections and indexes
        codec: Encryption codec used for every payload
        access: Tenant access filter
        monitor: Self-healing monitor
        audit: Audit trail (available once open)
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        passphrase: str | None = None,
        db_factory: Callable[[], VaultDB] | None = None,
    ) -> None:
        """
        Initialize the engine. Nothing touches disk until open().

        Args:
            config: Store configuration (defaults to StoreConfig())
            passphrase: Store passphrase; read from config.passphrase_env when omitted
            db_factory: Builds the VaultDB (defaults to VaultDB(config.db_path))

        Raises:
            ConfigError: If no passphrase is available
        """
        self.config = config or StoreConfig()
        if passphrase is None:
            passphrase = self.config.resolve_passphrase()
        if not passphrase:
            raise ConfigError(
                setting="passphrase",
                message="Passphrase must not be empty",
                suggestion=f"Pass a passphrase or export {self.config.passphrase_env}",
            )
        self._passphrase = passphrase

        self.schema = self.config.schema_
        self.codec = EncryptionCodec(self.config.kdf_iterations)
        self.access = AccessFilter(self.config.tenant_field)
        self.monitor = SelfHealingMonitor(self.schema, backfill=self._backfill_index)
        self._db_factory = db_factory or (lambda: VaultDB(self.config.db_path))

        self._db: VaultDB | None = None
        self.audit: AuditTrail | None = None
        self._index_key: bytes | None = None
        self._last_report: HealthReport | None = None

        self._ready = False
        self._open_task: asyncio.Future | None = None
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: set[asyncio.Future] = set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def state(self) -> HealthState:
        """Current state of the self-healing monitor."""
        return self.monitor.state

    @property
    def schema_version(self) -> int:
        """Schema version from the most recent health check."""
        return self._last_report.schema_version if self._last_report else 0

    @property
    def last_health(self) -> HealthReport | None:
        return self._last_report

    async def open(self) -> "StorageEngine":
        """
        Open or create the store and verify its structure. Idempotent.

        Concurrent callers share one open attempt. A failed open can be
        retried by calling open() again.

        Returns:
            The ready engine

        Raises:
            OpenError: If the device is unavailable or the store is foreign
            AuthenticationError: If the passphrase does not match the store
        """
        if self._ready:
            return self
        if self._open_task is None or self._open_task.done():
            self._open_task = asyncio.ensure_future(self._open())
        await asyncio.shield(self._open_task)
        return self

    async def _open(self) -> None:
        try:
            db, report = await asyncio.to_thread(self.monitor.open_store, self._db_factory)
        except UnrecoverableError as e:
            if e.action != "open":
                raise
            raise OpenError(
                db_path=self.config.db_path,
                message=f"Store unavailable: {e.message}",
                context={"attempts": e.attempts},
            ) from e

        try:
            await asyncio.to_thread(self._init_keys, db)
        except BaseException:
            db.close()
            raise

        self._db = db
        self.audit = AuditTrail(db)
        self._last_report = report
        self._ready = True
        logger.info(
            "Store {} open at schema version {} ({})",
            self.config.db_path, report.schema_version, report.state.value,
        )

    def _init_keys(self, db: VaultDB) -> None:
        """Load the blind-index key and confirm the passphrase fits this store."""
        self._ensure_index_key(db)
        check = db.get_meta("key_check")
        if check is None:
            token = self.codec.encrypt(KEY_CHECK_TOKEN, self._passphrase)
            with db.transaction():
                db.set_meta("key_check", token)
            return
        try:
            token = self.codec.decrypt(check, self._passphrase)
        except AuthenticationError as e:
            raise AuthenticationError(
                message="Passphrase does not match this store",
                context={"db_path": db.db_path},
            ) from e
        if token != KEY_CHECK_TOKEN:
            raise AuthenticationError(message="Store key check is corrupt")

    def _ensure_index_key(self, db: VaultDB) -> bytes:
        if self._index_key is None:
            salt_hex = db.get_meta("index_salt")
            if salt_hex is None:
                salt_hex = os.urandom(16).hex()
                with db.transaction():
                    db.set_meta("index_salt", salt_hex)
            self._index_key = self.codec.derive_key(self._passphrase, bytes.fromhex(salt_hex))
        return self._index_key

    async def close(self) -> None:
        """Wait for in-flight operations, then close the store."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._ready = False
        self._open_task = None
        if self._db is not None:
            self._db.close()
            self._db = None
        self.audit = None
        logger.debug("Store {} closed", self.config.db_path)

    async def __aenter__(self) -> "StorageEngine":
        """Enter async context manager."""
        return await self.open()

    async def __aexit__(self, *args: Any) -> None:
        """Exit async context manager."""
        await self.close()

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def _await_ready(self, action: str) -> None:
        if self._ready:
            return
        if self._open_task is not None and not self._open_task.done():
            try:
                await asyncio.shield(self._open_task)
            except VaultError as e:
                raise NotReadyError(
                    action=action,
                    message=f"Store failed to open: {e.message}",
                ) from e
            if self._ready:
                return
        raise NotReadyError(action=action)

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    def _collection(self, name: str, action: str) -> CollectionSpec:
        spec = self.schema.get(name)
        if spec is None:
            raise ValidationError(
                collection=name,
                action=action,
                code=ERROR_UNKNOWN_COLLECTION,
                message=f"Unknown collection: {name}",
            )
        return spec

    def _track(self, future: asyncio.Future) -> asyncio.Future:
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        return future

    async def _run(self, collection: str, action: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking operation serialized on its collection."""
        await self._await_ready(action)

        async def job() -> Any:
            async with self._lock_for(collection):
                return await asyncio.to_thread(self._with_recovery, action, func, *args)

        return await asyncio.shield(self._track(asyncio.ensure_future(job())))

    def _with_recovery(self, action: str, func: Callable[..., Any], *args: Any) -> Any:
        """Heal once on a structural fault or lost connection, then retry once."""
        try:
            return func(*args)
        except StructuralFaultError as e:
            logger.warning("Structural fault during {}: {}; healing", action, e.underlying_error)
            self._last_report = self.monitor.heal(self._db)
        except StorageConnectionError as e:
            logger.warning("Connection lost during {}: {}; re-initializing", action, e.message)
            self._reconnect()
        return func(*args)

    def _reconnect(self) -> None:
        if self._db is not None:
            self._db.close()
        db, report = self.monitor.open_store(self._db_factory)
        self._db = db
        self.audit = AuditTrail(db)
        self._last_report = report

    # =========================================================================
    # Record Encoding
    # =========================================================================

    @staticmethod
    def _strip_reserved(fields: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in fields.items() if k not in RESERVED_FIELDS}

    def _tenant_of(self, payload: dict[str, Any]) -> str | None:
        return payload.get(self.config.tenant_field)

    def _index_values(self, spec: CollectionSpec, payload: dict[str, Any]) -> dict[str, str | None]:
        key = self._ensure_index_key(self._db)
        return {
            index_column(ix.field): self.codec.blind_index(payload.get(ix.field), key)
            for ix in spec.indexes
        }

    def _seal(self, spec: CollectionSpec, payload: dict[str, Any]) -> dict[str, Any]:
        """Encrypt a payload into the columns that go to disk."""
        return {
            "tenant_id": self._tenant_of(payload),
            "payload": self.codec.encrypt_object(payload, self._passphrase),
            "fingerprint": self.codec.hash(canonical_json(payload)),
            **self._index_values(spec, payload),
        }

    def _open_row(self, row: Any) -> Record:
        """Decrypt a stored row into a record."""
        payload = self.codec.decrypt_object(row["payload"], self._passphrase)
        return self._to_record(
            row["id"],
            payload,
            row["created_at"],
            row["created_by"],
            row["updated_at"],
            row["updated_by"],
        )

    @staticmethod
    def _to_record(
        record_id: int,
        payload: dict[str, Any],
        created_at: str,
        created_by: str | None,
        updated_at: str,
        updated_by: str | None,
    ) -> Record:
        record: Record = {"id": record_id}
        record.update(payload)
        record["_encrypted"] = True
        record["_createdAt"] = created_at
        record["_createdBy"] = created_by
        record["_updatedAt"] = updated_at
        record["_updatedBy"] = updated_by
        return record

    def _checked_write(
        self,
        collection: str,
        identity: Identity,
        fields: dict[str, Any],
        action: str,
        record_id: int | None = None,
    ) -> dict[str, Any]:
        tenant = fields.get(self.config.tenant_field)
        if tenant is not None and not isinstance(tenant, str):
            raise ValidationError(
                collection=collection,
                record_id=record_id,
                action=action,
                field_name=self.config.tenant_field,
                message=f"{self.config.tenant_field} must be a string, got {type(tenant).__name__}",
            )
        decision = self.access.check_write(identity, fields)
        if not decision.allowed:
            raise ValidationError(
                collection=collection,
                record_id=record_id,
                action=action,
                code=ERROR_CROSS_TENANT_WRITE,
                field_name=self.config.tenant_field,
                message=decision.reason,
            )
        return decision.fields

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    async def create_record(
        self,
        collection: str,
        fields: dict[str, Any],
        identity: Identity,
    ) -> Record:
        """
        Create a record.

        Args:
            collection: Target collection
            fields: Business fields (reserved fields are ignored)
            identity: The caller

        Returns:
            The stored record, decrypted, with id and provenance

        Raises:
            ValidationError: Unknown collection, unique violation or cross-tenant write
            NotReadyError: If the store is not open
            AuditError: If the audit entry could not be written (nothing is stored)
        """
        if not isinstance(fields, dict):
            raise ValidationError(collection=collection, action="create",
                                  message="Record fields must be a mapping")
        spec = self._collection(collection, "create")
        return await self._run(collection, "create", self._create_sync, spec, fields, identity)

    def _create_sync(self, spec: CollectionSpec, fields: dict[str, Any], identity: Identity) -> Record:
        payload = self._checked_write(spec.name, identity, self._strip_reserved(fields), "create")
        sealed = self._seal(spec, payload)
        now = _next_timestamp()
        row = {
            **sealed,
            "created_at": now,
            "created_by": identity.user_id,
            "updated_at": now,
            "updated_by": identity.user_id,
        }

        with self._db.transaction():
            record_id = self._db.insert_row(spec.name, row)
            self.audit.append(AuditEntry.for_mutation(
                identity,
                AuditAction.CREATE,
                spec.name,
                record_id,
                record_tenant=sealed["tenant_id"],
                fingerprint=sealed["fingerprint"],
            ))

        logger.debug("Created {}/{} for {}", spec.name, record_id, identity.user_id)
        return self._to_record(record_id, payload, now, identity.user_id, now, identity.user_id)

    async def get_record(
        self,
        collection: str,
        record_id: int,
        identity: Identity,
    ) -> Record | None:
        """
        Fetch one record.

        Returns None both when the record does not exist and when the caller
        may not see it.
        """
        spec = self._collection(collection, "get")
        return await self._run(collection, "get", self._get_sync, spec, record_id, identity)

    def _get_sync(self, spec: CollectionSpec, record_id: int, identity: Identity) -> Record | None:
        row = self._db.fetch_row(spec.name, record_id)
        if row is None:
            return None
        record = self._open_row(row)
        return record if self.access.is_visible(identity, record) else None

    async def list_records(
        self,
        collection: str,
        identity: Identity,
        predicate: Predicate | None = None,
        sort_by: str | None = None,
        descending: bool = False,
    ) -> list[Record]:
        """
        List the records an identity may see.

        Args:
            collection: Collection to scan
            identity: The caller
            predicate: Optional filter over decrypted records
            sort_by: Optional field to sort by (records missing it sort last)
            descending: Reverse the sort order

        Returns:
            Records in insertion order unless sort_by is given
        """
        spec = self._collection(collection, "list")
        return await self._run(
            collection, "list", self._list_sync, spec, identity, predicate, sort_by, descending,
        )

    def _list_sync(
        self,
        spec: CollectionSpec,
        identity: Identity,
        predicate: Predicate | None,
        sort_by: str | None,
        descending: bool,
    ) -> list[Record]:
        tenant = None if identity.is_root else identity.tenant_id
        records = [self._open_row(row) for row in self._db.fetch_rows(spec.name, tenant_id=tenant)]
        records = self.access.filter_visible(identity, records)
        if predicate is not None:
            records = [r for r in records if predicate(r)]
        if sort_by is not None:
            present = [r for r in records if r.get(sort_by) is not None]
            missing = [r for r in records if r.get(sort_by) is None]
            try:
                present.sort(key=lambda r: r[sort_by], reverse=descending)
            except TypeError as e:
                raise ValidationError(
                    collection=spec.name, action="list", field_name=sort_by,
                    message=f"Cannot sort {spec.name} by {sort_by}: mixed value types",
                ) from e
            records = present + missing
        return records

    async def find_by_index(
        self,
        collection: str,
        field_name: str,
        value: Any,
        identity: Identity,
    ) -> list[Record]:
        """
        Look up records through a secondary index.

        Raises:
            ValidationError: If the field has no declared index
        """
        spec = self._collection(collection, "find")
        if spec.index_for(field_name) is None:
            raise ValidationError(
                collection=collection, action="find", field_name=field_name,
                message=f"{collection}.{field_name} is not indexed",
            )
        return await self._run(
            collection, "find", self._find_sync, spec, field_name, value, identity,
        )

    def _find_sync(
        self,
        spec: CollectionSpec,
        field_name: str,
        value: Any,
        identity: Identity,
    ) -> list[Record]:
        digest = self.codec.blind_index(value, self._ensure_index_key(self._db))
        if digest is None:
            return []
        rows = self._db.fetch_rows_by_index(spec.name, field_name, digest)
        records = [self._open_row(row) for row in rows]
        return [
            r for r in self.access.filter_visible(identity, records)
            if r.get(field_name) == value
        ]

    async def update_record(
        self,
        collection: str,
        record_id: int,
        patch: dict[str, Any],
        identity: Identity,
    ) -> Record:
        """
        Merge a patch into a record (last writer wins per field).

        Raises:
            NotFoundError: If the record is absent or not visible
            ValidationError: Unique violation or cross-tenant move
        """
        if not isinstance(patch, dict):
            raise ValidationError(collection=collection, record_id=record_id,
                                  action="update", message="Patch must be a mapping")
        spec = self._collection(collection, "update")
        return await self._run(
            collection, "update", self._update_sync, spec, record_id, patch, identity,
        )

    def _update_sync(
        self,
        spec: CollectionSpec,
        record_id: int,
        patch: dict[str, Any],
        identity: Identity,
    ) -> Record:
        row = self._db.fetch_row(spec.name, record_id)
        current = self._open_row(row) if row is not None else None
        if current is None or not self.access.is_visible(identity, current):
            raise NotFoundError(collection=spec.name, record_id=record_id, action="update")

        merged = self._strip_reserved(current)
        merged.update(self._strip_reserved(patch))
        payload = self._checked_write(spec.name, identity, merged, "update", record_id)

        sealed = self._seal(spec, payload)
        now = _next_timestamp(row["updated_at"])
        values = {**sealed, "updated_at": now, "updated_by": identity.user_id}

        with self._db.transaction():
            self._db.update_row(spec.name, record_id, values)
            self.audit.append(AuditEntry.for_mutation(
                identity,
                AuditAction.UPDATE,
                spec.name,
                record_id,
                record_tenant=sealed["tenant_id"],
                fingerprint=sealed["fingerprint"],
            ))

        logger.debug("Updated {}/{} for {}", spec.name, record_id, identity.user_id)
        return self._to_record(
            record_id, payload, row["created_at"], row["created_by"], now, identity.user_id,
        )

    async def delete_record(
        self,
        collection: str,
        record_id: int,
        identity: Identity,
    ) -> None:
        """
        Hard-delete a record. The id is never reused.

        Raises:
            NotFoundError: If the record is absent or not visible
        """
        spec = self._collection(collection, "delete")
        await self._run(collection, "delete", self._delete_sync, spec, record_id, identity)

    def _delete_sync(self, spec: CollectionSpec, record_id: int, identity: Identity) -> None:
        row = self._db.fetch_row(spec.name, record_id)
        current = self._open_row(row) if row is not None else None
        if current is None or not self.access.is_visible(identity, current):
            raise NotFoundError(collection=spec.name, record_id=record_id, action="delete")

        with self._db.transaction():
            self._db.delete_row(spec.name, record_id)
            self.audit.append(AuditEntry.for_mutation(
                identity,
                AuditAction.DELETE,
                spec.name,
                record_id,
                record_tenant=row["tenant_id"],
                fingerprint=row["fingerprint"],
            ))

        logger.debug("Deleted {}/{} for {}", spec.name, record_id, identity.user_id)

    # =========================================================================
    # Backup / Restore
    # =========================================================================

    async def backup(self) -> Snapshot:
        """
        Export every collection's current records and the schema version.

        All collection locks are held while reading, so the snapshot is
        consistent across collections.
        """
        await self._await_ready("backup")
        async with AsyncExitStack() as stack:
            for name in sorted(self.schema.names):
                await stack.enter_async_context(self._lock_for(name))
            return await asyncio.to_thread(self._backup_sync)

    def _backup_sync(self) -> Snapshot:
        collections = {
            spec.name: [self._open_row(row) for row in self._db.fetch_rows(spec.name)]
            for spec in self.schema.collections
        }
        version = int(self._db.get_meta("schema_version") or 0)
        snapshot = Snapshot(schema_version=max(version, 1), collections=collections)
        logger.info("Backed up {} record(s) at schema version {}", snapshot.record_count, version)
        return snapshot

    async def restore(self, snapshot: Snapshot, identity: Identity) -> RestoreReport:
        """
        Replay a snapshot as creates, preserving ids.

        A record whose id already exists is a conflict: it is skipped and
        the live record is left untouched. Each restored record is audited
        as a CREATE by the given identity.

        Args:
            snapshot: Snapshot produced by backup()
            identity: Identity the restore is attributed to

        Returns:
            RestoreReport with per-collection counts
        """
        await self._await_ready("restore")
        if snapshot.schema_version != self.schema_version:
            logger.warning(
                "Restoring snapshot from schema version {} into version {}",
                snapshot.schema_version, self.schema_version,
            )

        report = RestoreReport()
        for name, records in snapshot.collections.items():
            stats = report.stats_for(name)
            spec = self.schema.get(name)
            if spec is None:
                stats.failed += len(records)
                stats.errors.append(f"Unknown collection: {name}")
                continue
            await self._run(name, "restore", self._restore_collection, spec, records, identity, report)

        logger.info(
            "Restore finished: {} restored, {} skipped, {} failed",
            report.restored, report.skipped, report.failed,
        )
        return report

    def _restore_collection(
        self,
        spec: CollectionSpec,
        records: list[dict[str, Any]],
        identity: Identity,
        report: RestoreReport,
    ) -> None:
        stats = report.stats_for(spec.name)
        for record in records:
            record_id = record.get("id") if isinstance(record, dict) else None
            if not isinstance(record_id, int) or isinstance(record_id, bool) or record_id < 1:
                stats.failed += 1
                stats.errors.append(f"Record without a valid id: {record_id!r}")
                continue
            if self._db.row_exists(spec.name, record_id):
                stats.skipped += 1
                stats.conflicts.append(record_id)
                continue
            try:
                self._restore_one(spec, record, identity)
            except (ValidationError, CodecError) as e:
                stats.failed += 1
                stats.errors.append(f"{spec.name}/{record_id}: {e.message}")
                continue
            stats.restored += 1

    def _restore_one(self, spec: CollectionSpec, record: dict[str, Any], identity: Identity) -> None:
        record_id = record["id"]
        payload = self._checked_write(
            spec.name, identity, self._strip_reserved(record), "restore", record_id,
        )
        now = _next_timestamp()
        created_at = self._restored_stamp(spec.name, record, "_createdAt", now)
        updated_at = self._restored_stamp(spec.name, record, "_updatedAt", now)
        sealed = self._seal(spec, payload)
        row = {
            "id": record_id,
            **sealed,
            "created_at": created_at,
            "created_by": record.get("_createdBy") or identity.user_id,
            "updated_at": updated_at,
            "updated_by": record.get("_updatedBy") or identity.user_id,
        }
        with self._db.transaction():
            self._db.insert_row(spec.name, row)
            self.audit.append(AuditEntry.for_mutation(
                identity,
                AuditAction.CREATE,
                spec.name,
                record_id,
                record_tenant=sealed["tenant_id"],
                fingerprint=sealed["fingerprint"],
            ))

    @staticmethod
    def _restored_stamp(collection: str, record: dict[str, Any], field_name: str, now: str) -> str:
        value = record.get(field_name)
        if value is None:
            return now
        try:
            return _parse_stamp(value).isoformat()
        except ValueError as e:
            raise ValidationError(
                collection=collection,
                record_id=record.get("id"),
                action="restore",
                field_name=field_name,
                message=f"Unreadable {field_name}: {value!r}",
            ) from e

    # =========================================================================
    # Audit and Health
    # =========================================================================

    async def query_audit(
        self,
        identity: Identity,
        filters: AuditFilter | None = None,
    ) -> list[AuditEntry]:
        """Audit entries for root-admin identities; an empty list for everyone else."""
        await self._await_ready("audit")
        return await asyncio.to_thread(self.audit.query, filters, identity)

    async def verify_audit(self) -> ChainVerification:
        """Recompute the audit hash chain."""
        await self._await_ready("verify_audit")
        return await asyncio.to_thread(self.audit.verify_chain)

    async def health(self) -> HealthReport:
        """
        Run the self-healing monitor now and return its report.

        Drift found here is repaired exactly as it would be at open().
        """
        await self._await_ready("health")
        async with AsyncExitStack() as stack:
            for name in sorted(self.schema.names):
                await stack.enter_async_context(self._lock_for(name))
            self._last_report = await asyncio.to_thread(self.monitor.heal, self._db)
        return self._last_report

    def _backfill_index(self, db: VaultDB, collection: str, index: IndexSpec) -> int:
        """Fill a newly added blind-index column from the encrypted payloads."""
        key = self._ensure_index_key(db)
        column = index_column(index.field)
        rows = db.fetch_rows(collection)
        with db.transaction():
            for row in rows:
                payload = self.codec.decrypt_object(row["payload"], self._passphrase)
                db.update_row(
                    collection,
                    row["id"],
                    {column: self.codec.blind_index(payload.get(index.field), key)},
                )
        return len(rows)
