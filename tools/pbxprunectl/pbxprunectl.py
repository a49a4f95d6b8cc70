#!/usr/bin/env python3
"""pbxprunectl: operator helper for inspecting and cleaning up retention runs."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table
from sqlalchemy.engine import Engine

from pbxprune.common.config import ConfigLoader, RetentionPolicy, get_database_url, load_policy
from pbxprune.common.errors import RetentionError
from pbxprune.common.logger import configure_logging
from pbxprune.storage.database import connection_scope, create_db_engine
from pbxprune.storage.inventory import drop_leftovers, find_leftovers, table_statuses
from pbxprune.storage.retention import run_retention
from pbxprune.storage.schema import diff_schemas, snapshot_schema, table_exists

APP = typer.Typer(add_completion=False, help="pbxprune retention operator helper")
CONSOLE = Console()

DEFAULT_CONFIG = Path("configs/pbxprune.yaml")


class Twin(str, Enum):
    backup = "backup"
    staging = "staging"


def load_settings(config: Path, months: Optional[int] = None) -> tuple[RetentionPolicy, Engine]:
    if not config.exists():
        print(f"[bold red]Cannot locate {config}[/bold red]")
        raise typer.Exit(code=1)
    cfg = ConfigLoader.load(config)
    configure_logging("pbxprunectl", cfg.get("logging.level", "WARNING"))
    return load_policy(cfg, months=months), create_db_engine(get_database_url(cfg))


@APP.command()
def plan(
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to pbxprune YAML configuration"),
    months: Optional[int] = typer.Option(None, help="Override retention.months"),
) -> None:
    """Show how many rows a retention run would keep."""

    policy, engine = load_settings(config, months)
    try:
        result = run_retention(engine, policy, dry_run=True)
    except RetentionError as exc:
        print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=1) from exc
    finally:
        engine.dispose()

    table = Table(title=f"Retention plan (cutoff {result.cutoff.date()}, {result.strategy})")
    table.add_column("Table")
    table.add_column("Rows now", justify="right")
    table.add_column("Kept", justify="right")
    table.add_column("Pruned", justify="right")
    for counts in [result.calls, result.events]:
        if counts is None:
            continue
        table.add_row(counts.table, str(counts.before), str(counts.kept), str(counts.pruned))
    CONSOLE.print(table)
    if result.boundary_event_id is not None:
        print(f"Event boundary id: {result.boundary_event_id}")


@APP.command()
def status(
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to pbxprune YAML configuration"),
) -> None:
    """List live, staging and backup tables with their row counts."""

    policy, engine = load_settings(config)
    try:
        with connection_scope(engine) as conn:
            statuses = table_statuses(conn, policy)
    finally:
        engine.dispose()

    table = Table(title="Retention tables")
    table.add_column("Table")
    table.add_column("Role")
    table.add_column("Rows", justify="right")
    for entry in statuses:
        if not entry.exists:
            continue
        style = "yellow" if entry.role != "live" else None
        table.add_row(entry.name, entry.role, str(entry.rows), style=style)
    CONSOLE.print(table)

    missing = [entry.name for entry in statuses if entry.role == "live" and not entry.exists]
    if missing:
        print(f"[bold red]Missing live table(s):[/bold red] {', '.join(missing)}")
        raise typer.Exit(code=1)


@APP.command()
def cleanup(
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to pbxprune YAML configuration"),
    backups: bool = typer.Option(False, "--backups", help="Also drop backup tables"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Drop staging tables (and optionally backups) left by an aborted run."""

    policy, engine = load_settings(config)
    try:
        with connection_scope(engine) as conn:
            leftovers = find_leftovers(conn, policy)
        targets = [entry for entry in leftovers if backups or entry.role == "staging"]
        if not targets:
            print("[green]Nothing to clean up.[/green]")
            return
        for entry in targets:
            print(f"  {entry.role:<8} {entry.name} ({entry.rows} rows)")
        if not yes and not typer.confirm("Drop the tables listed above?"):
            raise typer.Exit(code=1)
        with connection_scope(engine) as conn:
            dropped = drop_leftovers(conn, policy, include_backups=backups)
    finally:
        engine.dispose()
    print(f"[green]Dropped[/green] {', '.join(dropped)}")


@APP.command()
def schema(
    table: str = typer.Argument(..., help="Live table to compare"),
    against: Twin = typer.Option(Twin.backup, help="Twin to compare with"),
    config: Path = typer.Option(DEFAULT_CONFIG, help="Path to pbxprune YAML configuration"),
) -> None:
    """Diff a live table's schema against its backup or staging twin."""

    policy, engine = load_settings(config)
    twin = policy.backup_name(table) if against is Twin.backup else policy.staging_name(table)
    try:
        with connection_scope(engine) as conn:
            for name in (table, twin):
                if not table_exists(conn, name):
                    print(f"[bold red]Table {name} does not exist[/bold red]")
                    raise typer.Exit(code=1)
            differences = diff_schemas(snapshot_schema(conn, table), snapshot_schema(conn, twin))
    finally:
        engine.dispose()

    if not differences:
        print(f"[green]{table} and {twin} have identical schemas[/green]")
        return
    for difference in differences:
        print(f"[yellow]-[/yellow] {difference}")
    raise typer.Exit(code=2)


if __name__ == "__main__":
    APP()
