"""
Unit tests for schema models.

Tests cover:
- Identity validation and helpers
- Schema descriptor validation
- Audit models
- Snapshot serialization
- Restore report counters
- StoreConfig and YAML loading
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from tenantvault.errors import ConfigError
from tenantvault.schema import (
    CollectionSpec,
    HealthReport,
    HealthState,
    Identity,
    IndexSpec,
    RestoreReport,
    Role,
    SchemaDescriptor,
    Snapshot,
    StoreConfig,
    default_schema,
    load_config,
    load_config_from_string,
    load_snapshot,
    save_snapshot,
)


class TestIdentity:
    """Tests for Identity."""

    def test_root_needs_no_tenant(self) -> None:
        identity = Identity.root("admin")
        assert identity.is_root
        assert identity.tenant_id is None

    def test_owner_requires_tenant(self) -> None:
        """Non-root roles must carry a tenant."""
        with pytest.raises(ValidationError):
            Identity(user_id="alice", role=Role.TENANT_OWNER)

    def test_role_from_string(self) -> None:
        identity = Identity(user_id="bob", role="tenant-member", tenant_id="t1")
        assert identity.role == Role.TENANT_MEMBER
        assert not identity.is_root

    def test_unknown_role_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Identity(user_id="eve", role="superuser", tenant_id="t1")

    def test_frozen(self) -> None:
        identity = Identity.owner("alice", "t1")
        with pytest.raises(ValidationError):
            identity.tenant_id = "t2"


class TestSchemaDescriptor:
    """Tests for schema descriptors."""

    def test_default_schema_collections(self) -> None:
        schema = default_schema()
        assert schema.names == ["users", "financers", "customers", "payments", "seizures"]
        assert schema.get("customers").index_for("vehicleNo").unique

    def test_duplicate_collections_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SchemaDescriptor(collections=[CollectionSpec(name="a"), CollectionSpec(name="a")])

    def test_invalid_collection_name(self) -> None:
        """Names become SQL identifiers."""
        with pytest.raises(ValidationError):
            CollectionSpec(name="drop table;")

    def test_reserved_index_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IndexSpec(field="_createdAt")

    def test_get_unknown(self) -> None:
        assert default_schema().get("nope") is None

    def test_version_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SchemaDescriptor(version=0)


class TestSnapshot:
    """Tests for Snapshot serialization."""

    def test_camel_case_keys(self) -> None:
        snapshot = Snapshot(schema_version=2, collections={"users": [{"id": 1}]})
        text = snapshot.to_json()
        assert '"schemaVersion": 2' in text
        assert '"exportedAt"' in text

    def test_save_and_load(self, temp_dir: Path) -> None:
        snapshot = Snapshot(
            schema_version=1,
            collections={"customers": [{"id": 3, "name": "Ravi"}], "payments": []},
        )
        path = save_snapshot(snapshot, temp_dir / "snap.json")
        loaded = load_snapshot(path)
        assert loaded.schema_version == 1
        assert loaded.collections["customers"][0]["name"] == "Ravi"
        assert loaded.record_count == 1

    def test_from_json_with_aliases(self) -> None:
        snapshot = Snapshot.from_json(
            '{"schemaVersion": 4, "exportedAt": "2026-01-01T00:00:00+00:00", "collections": {}}'
        )
        assert snapshot.schema_version == 4
        assert snapshot.exported_at.year == 2026


class TestRestoreReport:
    """Tests for restore counters."""

    def test_totals(self) -> None:
        report = RestoreReport()
        report.stats_for("a").restored = 2
        report.stats_for("b").skipped = 1
        report.stats_for("b").failed = 3
        assert report.restored == 2
        assert report.skipped == 1
        assert report.failed == 3

    def test_stats_for_is_stable(self) -> None:
        report = RestoreReport()
        assert report.stats_for("a") is report.stats_for("a")


class TestHealthReport:
    def test_healthy_property(self) -> None:
        assert HealthReport(state=HealthState.HEALTHY).healthy
        assert not HealthReport(state=HealthState.DEGRADED).healthy


class TestStoreConfig:
    """Tests for configuration."""

    def test_defaults(self) -> None:
        config = StoreConfig()
        assert config.tenant_field == "tenantId"
        assert config.kdf_iterations == 100_000
        assert config.schema_.names == default_schema().names

    def test_iterations_floor(self) -> None:
        with pytest.raises(ValidationError):
            StoreConfig(kdf_iterations=1000)

    def test_extra_keys_rejected(self) -> None:
        """Passphrases cannot be smuggled into config files."""
        with pytest.raises(ValidationError):
            StoreConfig.model_validate({"passphrase": "hunter2"})

    def test_resolve_passphrase(self, passphrase_env: str) -> None:
        assert StoreConfig().resolve_passphrase() == passphrase_env

    def test_resolve_passphrase_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TENANTVAULT_PASSPHRASE", raising=False)
        with pytest.raises(ConfigError):
            StoreConfig().resolve_passphrase()

    def test_load_from_string(self) -> None:
        config = load_config_from_string(
            """
db_path: /tmp/vault.db
tenant_field: orgId
schema:
  version: 3
  collections:
    - name: notes
      indexes:
        - field: title
          unique: true
"""
        )
        assert config.db_path == "/tmp/vault.db"
        assert config.tenant_field == "orgId"
        assert config.schema_.version == 3
        assert config.schema_.get("notes").index_for("title").unique

    def test_load_empty_string(self) -> None:
        assert load_config_from_string("").db_path == "tenantvault.db"

    def test_load_from_file(self, temp_dir: Path) -> None:
        path = temp_dir / "vault.yaml"
        path.write_text("db_path: data.db\npassphrase_env: MY_SECRET\n")
        config = load_config(path)
        assert config.db_path == "data.db"
        assert config.passphrase_env == "MY_SECRET"

    def test_load_missing_file(self, temp_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(temp_dir / "missing.yaml")
