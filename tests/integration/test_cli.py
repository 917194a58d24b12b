"""
Integration tests for the tenantvault CLI.

Tests cover:
- Version flag
- init / health against a fresh store
- backup and restore between two stores
- audit listing and chain verification
- Passphrase and configuration errors
"""

import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tenantvault.cli import app
from tenantvault.engine import StorageEngine
from tenantvault.logging_config import reset_logging
from tenantvault.schema import Identity, StoreConfig

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch: pytest.MonkeyPatch, passphrase_env: str) -> None:
    monkeypatch.setenv("TENANTVAULT_QUIET", "1")


def _seed(db_path: Path, passphrase: str) -> None:
    async def seed() -> None:
        config = StoreConfig(db_path=str(db_path))
        async with StorageEngine(config, passphrase=passphrase) as engine:
            owner = Identity(user_id="alice", role="tenant-owner", tenant_id="t1")
            await engine.create_record("customers", {"name": "a", "vehicleNo": "KA-01"}, owner)
            await engine.create_record("payments", {"amount": 250}, owner)

    asyncio.run(seed())


class TestVersion:
    """Tests for the --version flag."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "tenantvault" in result.stdout


class TestInitAndHealth:
    """Tests for `tenantvault init` and `tenantvault health`."""

    def test_init_creates_store(self, db_path: Path) -> None:
        result = runner.invoke(app, ["init", "--db", str(db_path)])
        assert result.exit_code == 0
        assert "schema version 1" in result.stdout
        assert db_path.exists()

    def test_health_json(self, db_path: Path) -> None:
        runner.invoke(app, ["init", "--db", str(db_path)])
        result = runner.invoke(app, ["health", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["healthy"] is True
        assert data["state"] == "healthy"
        assert data["schema_version"] == 1
        assert "customers" in data["record_counts"]

    def test_health_console(self, db_path: Path) -> None:
        result = runner.invoke(app, ["health", "--db", str(db_path)])
        assert result.exit_code == 0
        assert "customers" in result.stdout

    def test_missing_passphrase(self, db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TENANTVAULT_PASSPHRASE", raising=False)
        result = runner.invoke(app, ["health", "--db", str(db_path), "--json"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "ConfigError"

    def test_wrong_passphrase(self, db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        runner.invoke(app, ["init", "--db", str(db_path)])
        monkeypatch.setenv("TENANTVAULT_PASSPHRASE", "not the passphrase")
        result = runner.invoke(app, ["health", "--db", str(db_path), "--json"])

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "AuthenticationError"

    def test_file_log_beside_store(self, db_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TENANTVAULT_FILE_LOGGING", "1")
        try:
            result = runner.invoke(app, ["init", "--db", str(db_path)])
        finally:
            reset_logging()
        assert result.exit_code == 0
        log_text = Path(str(db_path) + ".log").read_text(encoding="utf-8")
        assert "open at schema version" in log_text


class TestConfigFile:
    """Tests for --config."""

    def test_yaml_config(self, temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("VAULT_KEY", "from-a-custom-variable")
        config_path = temp_dir / "store.yaml"
        config_path.write_text(
            f"db_path: {temp_dir / 'configured.db'}\n"
            "passphrase_env: VAULT_KEY\n"
            "schema:\n"
            "  version: 3\n"
            "  collections:\n"
            "    - name: notes\n"
            "      indexes:\n"
            "        - field: title\n"
        )

        result = runner.invoke(app, ["health", "--config", str(config_path), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["record_counts"] == {"notes": 0}
        assert data["schema_version"] == 3
        assert (temp_dir / "configured.db").exists()

    def test_invalid_config(self, temp_dir: Path) -> None:
        config_path = temp_dir / "bad.yaml"
        config_path.write_text("kdf_iterations: 10\n")
        result = runner.invoke(app, ["init", "--config", str(config_path)])
        assert result.exit_code == 1


class TestBackupRestore:
    """Tests for `tenantvault backup` and `tenantvault restore`."""

    def test_round_trip(self, temp_dir: Path, db_path: Path, passphrase: str) -> None:
        _seed(db_path, passphrase)
        snapshot = temp_dir / "snapshot.json"
        target = temp_dir / "target.db"

        result = runner.invoke(app, ["backup", "--db", str(db_path), "--out", str(snapshot)])
        assert result.exit_code == 0
        assert "2 record(s)" in result.stdout
        assert json.loads(snapshot.read_text())["collections"]["customers"][0]["name"] == "a"

        result = runner.invoke(app, [
            "restore", str(snapshot), "--user", "ops", "--db", str(target), "--json",
        ])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["restored"] == 2
        assert data["failed"] == 0

        result = runner.invoke(app, [
            "restore", str(snapshot), "--user", "ops", "--db", str(target), "--json",
        ])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["skipped"] == 2

    def test_restore_failures_exit_nonzero(self, temp_dir: Path, db_path: Path) -> None:
        snapshot = temp_dir / "snapshot.json"
        snapshot.write_text(json.dumps({
            "schema_version": 1,
            "collections": {"customers": [{"name": "missing id"}]},
        }))
        result = runner.invoke(app, ["restore", str(snapshot), "--user", "ops", "--db", str(db_path)])
        assert result.exit_code == 1

    def test_invalid_role(self, temp_dir: Path, db_path: Path) -> None:
        snapshot = temp_dir / "snapshot.json"
        snapshot.write_text(json.dumps({"schema_version": 1, "collections": {}}))
        result = runner.invoke(app, [
            "restore", str(snapshot), "--user", "ops", "--role", "superuser", "--db", str(db_path),
        ])
        assert result.exit_code == 1


class TestAudit:
    """Tests for `tenantvault audit` and `tenantvault verify-audit`."""

    def test_root_sees_entries(self, db_path: Path, passphrase: str) -> None:
        _seed(db_path, passphrase)
        result = runner.invoke(app, ["audit", "--user", "admin", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        entries = json.loads(result.stdout)
        assert [e["sequence"] for e in entries] == [1, 2]
        assert entries[0]["action"] == "CREATE"
        assert entries[0]["actor_id"] == "alice"

    def test_filters(self, db_path: Path, passphrase: str) -> None:
        _seed(db_path, passphrase)
        result = runner.invoke(app, [
            "audit", "--user", "admin", "--collection", "payments",
            "--action", "create", "--db", str(db_path), "--json",
        ])
        entries = json.loads(result.stdout)
        assert [e["collection"] for e in entries] == ["payments"]

    def test_tenant_sees_nothing(self, db_path: Path, passphrase: str) -> None:
        _seed(db_path, passphrase)
        result = runner.invoke(app, [
            "audit", "--user", "alice", "--role", "tenant-owner", "--tenant", "t1",
            "--db", str(db_path), "--json",
        ])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_verify_audit(self, db_path: Path, passphrase: str) -> None:
        _seed(db_path, passphrase)
        result = runner.invoke(app, ["verify-audit", "--db", str(db_path), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["valid"] is True
        assert data["entries_checked"] == 2
