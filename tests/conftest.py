"""
Pytest configuration and fixtures for tenantvault tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio

from tenantvault.engine import StorageEngine
from tenantvault.schema import (
    CollectionSpec,
    Identity,
    IndexSpec,
    SchemaDescriptor,
    StoreConfig,
)

PASSPHRASE = "correct horse battery staple"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def passphrase() -> str:
    """The store passphrase used by every test engine."""
    return PASSPHRASE


@pytest.fixture
def passphrase_env(monkeypatch: pytest.MonkeyPatch) -> str:
    """Export the passphrase the way an operator would."""
    monkeypatch.setenv("TENANTVAULT_PASSPHRASE", PASSPHRASE)
    return PASSPHRASE


@pytest.fixture
def small_schema() -> SchemaDescriptor:
    """Two collections: enough to exercise indexes and per-collection locking."""
    return SchemaDescriptor(
        version=1,
        collections=[
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
                indexes=[IndexSpec(field="customerId"), IndexSpec(field="tenantId")],
            ),
        ],
    )


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    """Path of the store file inside the temp directory."""
    return temp_dir / "vault.db"


@pytest.fixture
def store_config(db_path: Path, small_schema: SchemaDescriptor) -> StoreConfig:
    """Store configuration pointing at the temp directory."""
    return StoreConfig(db_path=str(db_path), schema=small_schema)


@pytest_asyncio.fixture
async def engine(store_config: StoreConfig, passphrase: str) -> AsyncGenerator[StorageEngine, None]:
    """An open engine over a fresh store."""
    async with StorageEngine(store_config, passphrase=passphrase) as eng:
        yield eng


@pytest.fixture
def root() -> Identity:
    return Identity.root("admin")


@pytest.fixture
def owner_t1() -> Identity:
    return Identity.owner("alice", "t1")


@pytest.fixture
def member_t1() -> Identity:
    return Identity.member("bob", "t1")


@pytest.fixture
def owner_t2() -> Identity:
    return Identity.owner("carol", "t2")
