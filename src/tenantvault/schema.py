"""
Schema definitions for tenantvault.

This module defines the Pydantic models used throughout the store:
- Identity/Role: Who is calling
- IndexSpec/CollectionSpec/SchemaDescriptor: What the store must contain
- AuditEntry/AuditFilter: The mutation history
- Snapshot/RestoreReport: Backup and recovery
- HealthReport/HealthState: Self-healing telemetry
- StoreConfig: Runtime configuration, loadable from YAML

Design Decisions:
    - Models are immutable where possible (frozen=True)
    - Unknown keys are rejected (extra="forbid") except where the
      wire format is camelCase JSON meant for interchange
    - Secrets never live in config files; only the name of the
      environment variable that carries them does
"""

import os
import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantvault.errors import ConfigError


# Field names the engine owns; callers can never set them.
RESERVED_FIELDS = frozenset({
    "id",
    "_encrypted",
    "_createdAt",
    "_createdBy",
    "_updatedAt",
    "_updatedBy",
})

MIN_KDF_ITERATIONS = 100_000

_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


# =============================================================================
# Enums
# =============================================================================


class Role(str, Enum):
    """Closed set of caller roles."""

    ROOT_ADMIN = "root-admin"
    TENANT_OWNER = "tenant-owner"
    TENANT_MEMBER = "tenant-member"


class AuditAction(str, Enum):
    """Kinds of mutation recorded in the audit trail."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class HealthState(str, Enum):
    """
    States of the self-healing monitor.

    UNKNOWN -> CHECKING -> {HEALTHY, DEGRADED}
    DEGRADED -> REPAIRING -> CHECKING
    FAILED is terminal and only reached through UnrecoverableError.
    """

    UNKNOWN = "unknown"
    CHECKING = "checking"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    REPAIRING = "repairing"
    FAILED = "failed"


# =============================================================================
# Identity
# =============================================================================


class Identity(BaseModel):
    """
    An authenticated caller, supplied by the identity provider per call.

    Attributes:
        user_id: Stable identifier of the user
        role: One of the closed Role set
        tenant_id: Tenant the caller belongs to (None only for root-admin)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    user_id: str = Field(..., min_length=1, description="Authenticated user id")
    role: Role = Field(..., description="Caller role")
    tenant_id: str | None = Field(default=None, description="Caller tenant")

    @model_validator(mode="after")
    def validate_tenant(self) -> "Identity":
        """Only root-admin identities may omit a tenant."""
        if self.tenant_id is None and self.role != Role.ROOT_ADMIN:
            msg = f"Role {self.role.value} requires a tenant_id"
            raise ValueError(msg)
        return self

    @property
    def is_root(self) -> bool:
        """Whether this identity bypasses tenant scoping."""
        return self.role == Role.ROOT_ADMIN

    @classmethod
    def root(cls, user_id: str) -> "Identity":
        """Create a root-admin identity."""
        return cls(user_id=user_id, role=Role.ROOT_ADMIN)

    @classmethod
    def owner(cls, user_id: str, tenant_id: str) -> "Identity":
        """Create a tenant-owner identity."""
        return cls(user_id=user_id, role=Role.TENANT_OWNER, tenant_id=tenant_id)

    @classmethod
    def member(cls, user_id: str, tenant_id: str) -> "Identity":
        """Create a tenant-member identity."""
        return cls(user_id=user_id, role=Role.TENANT_MEMBER, tenant_id=tenant_id)


# =============================================================================
# Schema Descriptor
# =============================================================================


class IndexSpec(BaseModel):
    """A secondary index over one record field."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(..., description="Indexed record field")
    unique: bool = Field(default=False, description="Tenant-scoped uniqueness")

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        """Index fields become column names, so restrict their shape."""
        if not _NAME_PATTERN.match(v) or v in RESERVED_FIELDS:
            msg = f"Invalid index field: {v}"
            raise ValueError(msg)
        return v


class CollectionSpec(BaseModel):
    """
    Declaration of one collection.

    Attributes:
        name: Collection name (also used in table names)
        indexes: Secondary indexes declared at creation time
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., description="Collection name")
    indexes: list[IndexSpec] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Collection names become table names."""
        if not _NAME_PATTERN.match(v):
            msg = f"Invalid collection name: {v}"
            raise ValueError(msg)
        return v

    def index_for(self, field_name: str) -> IndexSpec | None:
        """Return the index declared on a field, if any."""
        for index in self.indexes:
            if index.field == field_name:
                return index
        return None


class SchemaDescriptor(BaseModel):
    """
    The expected collection/index set and its baseline version.

    The version stored on disk starts at this value and is bumped by the
    self-healing monitor whenever it adds missing structure.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = Field(default=1, ge=1, description="Baseline schema version")
    collections: list[CollectionSpec] = Field(default_factory=list)

    @field_validator("collections")
    @classmethod
    def validate_unique_names(cls, v: list[CollectionSpec]) -> list[CollectionSpec]:
        """Collection names must not repeat."""
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            msg = "Duplicate collection names in schema"
            raise ValueError(msg)
        return v

    def get(self, name: str) -> CollectionSpec | None:
        """Look up a collection by name."""
        for collection in self.collections:
            if collection.name == name:
                return collection
        return None

    @property
    def names(self) -> list[str]:
        """Collection names in declaration order."""
        return [c.name for c in self.collections]


def default_schema() -> SchemaDescriptor:
    """Collections of the vehicle-finance application this store was built for."""
    return SchemaDescriptor(
        version=1,
        collections=[
            CollectionSpec(
                name="users",
                indexes=[
                    IndexSpec(field="email", unique=True),
                    IndexSpec(field="role"),
                    IndexSpec(field="tenantId"),
                ],
            ),
            CollectionSpec(
                name="financers",
                indexes=[IndexSpec(field="name"), IndexSpec(field="status")],
            ),
            CollectionSpec(
                name="customers",
                indexes=[
                    IndexSpec(field="vehicleNo", unique=True),
                    IndexSpec(field="tenantId"),
                    IndexSpec(field="status"),
                ],
            ),
            CollectionSpec(
                name="payments",
                indexes=[
                    IndexSpec(field="customerId"),
                    IndexSpec(field="tenantId"),
                    IndexSpec(field="date"),
                ],
            ),
            CollectionSpec(
                name="seizures",
                indexes=[
                    IndexSpec(field="customerId"),
                    IndexSpec(field="tenantId"),
                    IndexSpec(field="gps"),
                ],
            ),
        ],
    )


# =============================================================================
# Audit Models
# =============================================================================


class AuditEntry(BaseModel):
    """
    One immutable, hash-chained mutation record.

    sequence, prev_hash and entry_hash are assigned by the trail on append.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    sequence: int | None = Field(default=None, description="Assigned on append")
    actor_id: str = Field(..., description="User that performed the mutation")
    actor_role: Role = Field(..., description="Role of the actor")
    actor_tenant: str | None = Field(default=None, description="Tenant of the actor")
    action: AuditAction
    collection: str
    record_id: int
    record_tenant: str | None = Field(default=None, description="Tenant of the record")
    fingerprint: str = Field(default="", description="SHA-256 of the payload after mutation")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    prev_hash: str = Field(default="")
    entry_hash: str = Field(default="")

    @classmethod
    def for_mutation(
        cls,
        identity: Identity,
        action: AuditAction,
        collection: str,
        record_id: int,
        record_tenant: str | None = None,
        fingerprint: str = "",
    ) -> "AuditEntry":
        """Build an unsequenced entry attributed to an identity."""
        return cls(
            actor_id=identity.user_id,
            actor_role=identity.role,
            actor_tenant=identity.tenant_id,
            action=action,
            collection=collection,
            record_id=record_id,
            record_tenant=record_tenant,
            fingerprint=fingerprint,
        )


class AuditFilter(BaseModel):
    """Optional narrowing for audit queries; every field is ANDed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    collection: str | None = None
    record_id: int | None = None
    actor_id: str | None = None
    action: AuditAction | None = None
    tenant_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, gt=0)

    @field_validator("since", "until")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Naive bounds are read as UTC, like every stored timestamp."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class ChainVerification(BaseModel):
    """Result of recomputing the audit hash chain."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    entries_checked: int
    broken_at: int | None = None
    reason: str | None = None


# =============================================================================
# Backup / Restore Models
# =============================================================================


class Snapshot(BaseModel):
    """
    Self-describing export of every collection.

    Serialized with camelCase keys:
    {"schemaVersion", "exportedAt", "collections": {name: [record, ...]}}
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: int = Field(..., alias="schemaVersion", ge=1)
    exported_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        alias="exportedAt",
    )
    collections: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)

    def to_json(self, indent: int | None = 2) -> str:
        """Serialize to interchange JSON."""
        return self.model_dump_json(by_alias=True, indent=indent)

    @classmethod
    def from_json(cls, content: str) -> "Snapshot":
        """Parse interchange JSON."""
        return cls.model_validate_json(content)

    def save(self, path: Path | str) -> Path:
        """Write the snapshot to a file."""
        path = Path(path)
        path.write_text(self.to_json(), encoding="utf-8")
        return path

    @property
    def record_count(self) -> int:
        """Total records across all collections."""
        return sum(len(records) for records in self.collections.values())


def save_snapshot(snapshot: Snapshot, path: Path | str) -> Path:
    """Write a snapshot as interchange JSON."""
    return snapshot.save(path)


def load_snapshot(path: Path | str) -> Snapshot:
    """Read a snapshot written by Snapshot.save()."""
    return Snapshot.from_json(Path(path).read_text(encoding="utf-8"))


class CollectionRestoreStats(BaseModel):
    """Per-collection restore counters."""

    restored: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RestoreReport(BaseModel):
    """Outcome of replaying a snapshot into a live store."""

    collections: dict[str, CollectionRestoreStats] = Field(default_factory=dict)

    def stats_for(self, name: str) -> CollectionRestoreStats:
        """Get (or create) the counters for a collection."""
        if name not in self.collections:
            self.collections[name] = CollectionRestoreStats()
        return self.collections[name]

    @property
    def restored(self) -> int:
        return sum(s.restored for s in self.collections.values())

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.collections.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.collections.values())


# =============================================================================
# Health Models
# =============================================================================


class StorageUsage(BaseModel):
    """Disk usage around the database file, where the host exposes it."""

    model_config = ConfigDict(frozen=True)

    database_bytes: int | None = None
    disk_total_bytes: int | None = None
    disk_free_bytes: int | None = None


class HealthReport(BaseModel):
    """
    Snapshot of schema health produced by the self-healing monitor.

    Record counts and storage usage are advisory and never drive repair.
    """

    state: HealthState = HealthState.UNKNOWN
    schema_version: int = 0
    missing_collections: list[str] = Field(default_factory=list)
    missing_indexes: list[str] = Field(default_factory=list)
    repaired: list[str] = Field(default_factory=list)
    transitions: list[HealthState] = Field(default_factory=list)
    record_counts: dict[str, int] = Field(default_factory=dict)
    audit_entries: int = 0
    storage: StorageUsage = Field(default_factory=StorageUsage)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def healthy(self) -> bool:
        return self.state == HealthState.HEALTHY


# =============================================================================
# Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """
    Runtime configuration for a store.

    Attributes:
        db_path: SQLite file (":memory:" for ephemeral stores)
        tenant_field: Record field that carries the tenant id
        kdf_iterations: PBKDF2 iterations (never below 100,000)
        passphrase_env: Environment variable holding the passphrase
        schema_: Expected collections and indexes
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    db_path: str = Field(default="tenantvault.db")
    tenant_field: str = Field(default="tenantId", min_length=1)
    kdf_iterations: int = Field(default=MIN_KDF_ITERATIONS, ge=MIN_KDF_ITERATIONS)
    passphrase_env: str = Field(default="TENANTVAULT_PASSPHRASE", min_length=1)
    schema_: SchemaDescriptor = Field(default_factory=default_schema, alias="schema")

    def resolve_passphrase(self) -> str:
        """
        Read the passphrase from the configured environment variable.

        Raises:
            ConfigError: If the variable is unset or empty
        """
        value = os.environ.get(self.passphrase_env, "")
        if not value:
            raise ConfigError(
                setting=self.passphrase_env,
                message=f"Passphrase environment variable {self.passphrase_env} is not set",
                suggestion=f"export {self.passphrase_env}=<passphrase>",
            )
        return value


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> StoreConfig:
    """
    Load a store configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        pydantic.ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return StoreConfig.model_validate(data or {})


def load_config_from_string(content: str) -> StoreConfig:
    """Load a store configuration from a YAML string."""
    data = yaml.safe_load(content)
    return StoreConfig.model_validate(data or {})
