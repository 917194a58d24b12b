"""
CLI entry point for tenantvault.

This module provides the Typer-based command-line interface for operating a
store: provisioning it, checking its health, taking and restoring snapshots,
and reading the audit trail.

Commands:
    init          Create (or open) a store and provision its schema
    health        Run the self-healing monitor and print its report
    backup        Export every collection to a snapshot file
    restore       Replay a snapshot into the store
    audit         List audit entries (root-admin only)
    verify-audit  Recompute the audit hash chain

The passphrase is read from the environment variable named by the config
(TENANTVAULT_PASSPHRASE by default), never from the command line.

Architecture Note:
    The CLI is thin: it parses arguments and delegates to StorageEngine.
"""

import asyncio
import json
import traceback
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console

from tenantvault import __version__
from tenantvault.engine import StorageEngine
from tenantvault.errors import VaultError
from tenantvault.logging_config import attach_store_log, setup_logging
from tenantvault.report import (
    audit_to_list,
    dumps,
    health_to_dict,
    render_audit,
    render_health,
    render_restore,
    render_verification,
    restore_to_dict,
    verification_to_dict,
)
from tenantvault.schema import (
    AuditAction,
    AuditFilter,
    Identity,
    Role,
    StoreConfig,
    load_config,
    load_snapshot,
    save_snapshot,
)

app = typer.Typer(
    name="tenantvault",
    help="Operate an encrypted, multi-tenant tenantvault store.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

DbOption = Annotated[
    Optional[Path],
    typer.Option("--db", help="Path to the store's SQLite file (overrides config)."),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to a YAML store configuration.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output results in JSON format."),
]
DebugOption = Annotated[
    bool,
    typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]tenantvault[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Log engine activity to stderr."),
    ] = False,
) -> None:
    """
    tenantvault - Encrypted, tenant-scoped record storage.

    Every payload is encrypted at rest, every mutation is audited, and the
    schema repairs itself when it drifts.
    """
    setup_logging(level="DEBUG" if verbose else "WARNING")


# =============================================================================
# Helpers
# =============================================================================


def _load_store_config(config_path: Path | None, db: Path | None) -> StoreConfig:
    config = load_config(config_path) if config_path else StoreConfig()
    if db is not None:
        config = config.model_copy(update={"db_path": str(db)})
    return config


def _store_path(config_path: Path | None, db: Path | None) -> str:
    return str(db) if db is not None else _load_store_config(config_path, None).db_path


def _output_json_error(error: Exception, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    if isinstance(error, VaultError):
        output: dict[str, Any] = {"error": True, **error.to_dict()}
    else:
        output = {"error": True, "error_type": type(error).__name__, "message": str(error)}
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2, default=str))


def _fail(error: Exception, json_output: bool, debug: bool) -> None:
    if json_output:
        _output_json_error(error, debug)
    else:
        console.print(f"[red]Error: {error}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _with_engine(
    config_path: Path | None,
    db: Path | None,
    action: Callable[[StorageEngine], Awaitable[Any]],
    json_output: bool = False,
    debug: bool = False,
) -> Any:
    """Open a store, run one async action against it, and close it."""

    async def runner() -> Any:
        store_config = _load_store_config(config_path, db)
        attach_store_log(store_config)
        async with StorageEngine(store_config) as engine:
            return await action(engine)

    try:
        return asyncio.run(runner())
    except (VaultError, PydanticValidationError, yaml.YAMLError, OSError) as e:
        _fail(e, json_output, debug)


def _identity(user: str, role: str, tenant: str | None) -> Identity:
    try:
        return Identity(user_id=user, role=Role(role), tenant_id=tenant)
    except ValueError as e:
        console.print(f"[red]Invalid identity: {e}[/red]")
        raise typer.Exit(code=1)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def init(
    db: DbOption = None,
    config: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """
    Create (or open) a store and provision its schema.

    Example:
        $ TENANTVAULT_PASSPHRASE=... tenantvault init --db vault.db
    """

    async def action(engine: StorageEngine) -> Any:
        return engine.last_health

    report = _with_engine(config, db, action, debug=debug)
    console.print(
        f"[green]✓[/green] Store [bold]{_store_path(config, db)}[/bold] ready "
        f"at schema version {report.schema_version}"
    )
    if report.repaired:
        console.print(f"  [yellow]Repaired: {', '.join(report.repaired)}[/yellow]")


@app.command()
def health(
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Run the self-healing monitor and print its report.

    Exits with code 1 when the store is not healthy.

    Example:
        $ tenantvault health --db vault.db --json
    """

    async def action(engine: StorageEngine) -> Any:
        return await engine.health()

    report = _with_engine(config, db, action, json_output, debug)
    if json_output:
        print(dumps(health_to_dict(report)))
    else:
        render_health(console, report, _store_path(config, db))
    if not report.healthy:
        raise typer.Exit(code=1)


@app.command()
def backup(
    out: Annotated[
        Path,
        typer.Option("--out", "-o", help="Snapshot file to write.", resolve_path=True),
    ],
    db: DbOption = None,
    config: ConfigOption = None,
    debug: DebugOption = False,
) -> None:
    """
    Export every collection to a JSON snapshot.

    The snapshot contains decrypted records; protect the file accordingly.

    Example:
        $ tenantvault backup --db vault.db --out snapshot.json
    """

    async def action(engine: StorageEngine) -> Any:
        return await engine.backup()

    snapshot = _with_engine(config, db, action, debug=debug)
    try:
        save_snapshot(snapshot, out)
    except OSError as e:
        _fail(e, False, debug)
    console.print(
        f"[green]✓[/green] Wrote {snapshot.record_count} record(s) "
        f"at schema version {snapshot.schema_version} to [bold]{out}[/bold]"
    )


@app.command()
def restore(
    snapshot_path: Annotated[
        Path,
        typer.Argument(
            help="Snapshot file written by 'tenantvault backup'.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    user: Annotated[str, typer.Option("--user", help="User id the restore is attributed to.")],
    role: Annotated[str, typer.Option("--role", help="Role of the restoring user.")] = "root-admin",
    tenant: Annotated[
        Optional[str],
        typer.Option("--tenant", help="Tenant of the restoring user (non-root roles)."),
    ] = None,
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Replay a snapshot into the store.

    Records whose id already exists are skipped as conflicts; live records are
    never overwritten. Exits with code 1 if any record failed.

    Example:
        $ tenantvault restore snapshot.json --user ops --role root-admin
    """
    identity = _identity(user, role, tenant)
    try:
        snapshot = load_snapshot(snapshot_path)
    except (PydanticValidationError, OSError) as e:
        _fail(e, json_output, debug)

    async def action(engine: StorageEngine) -> Any:
        return await engine.restore(snapshot, identity)

    report = _with_engine(config, db, action, json_output, debug)
    if json_output:
        print(dumps(restore_to_dict(report)))
    else:
        render_restore(console, report)
    if report.failed:
        raise typer.Exit(code=1)


@app.command()
def audit(
    user: Annotated[str, typer.Option("--user", help="User id of the caller.")],
    role: Annotated[str, typer.Option("--role", help="Role of the caller.")] = "root-admin",
    tenant: Annotated[
        Optional[str],
        typer.Option("--tenant", help="Tenant of the caller (non-root roles)."),
    ] = None,
    collection: Annotated[
        Optional[str],
        typer.Option("--collection", help="Only entries for this collection."),
    ] = None,
    record_id: Annotated[
        Optional[int],
        typer.Option("--record-id", help="Only entries for this record id."),
    ] = None,
    action_name: Annotated[
        Optional[str],
        typer.Option("--action", help="Only CREATE, UPDATE or DELETE entries."),
    ] = None,
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-n", help="Maximum number of entries to show.", min=1),
    ] = None,
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    List audit entries, oldest first.

    Only root-admin identities see entries; any other role gets an empty list.

    Example:
        $ tenantvault audit --user ops --collection customers --limit 20
    """
    identity = _identity(user, role, tenant)
    try:
        filters = AuditFilter(
            collection=collection,
            record_id=record_id,
            action=AuditAction(action_name.upper()) if action_name else None,
            limit=limit,
        )
    except ValueError as e:
        _fail(e, json_output, debug)

    async def action(engine: StorageEngine) -> Any:
        return await engine.query_audit(identity, filters)

    entries = _with_engine(config, db, action, json_output, debug)
    if json_output:
        print(dumps(audit_to_list(entries)))
    else:
        render_audit(console, entries)


@app.command("verify-audit")
def verify_audit(
    db: DbOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Recompute the audit hash chain and report the first break, if any.

    Example:
        $ tenantvault verify-audit --db vault.db
    """

    async def action(engine: StorageEngine) -> Any:
        return await engine.verify_audit()

    result = _with_engine(config, db, action, json_output, debug)
    if json_output:
        print(dumps(verification_to_dict(result)))
    else:
        render_verification(console, result)
    if not result.valid:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
