from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import console as console_module
from . import database as db
from . import server as server_module
from .config import ConfigError, ModmanConfig, load_config
from .downloads import STAGES, DownloadError, download_records
from .hashing import stamp_record_hash
from .providers import ProviderError, fetch_game_versions
from .records import clean_system_entries
from .schema import SchemaError, ensure_columns_file, migrate_schema

app = typer.Typer(help="Minecraft mod list manager (modman)")
server_app = typer.Typer(help="Run a local test server")
console_app = typer.Typer(help="Send commands to the local test server")

app.add_typer(server_app, name="server")
app.add_typer(console_app, name="console")

_rich_console = Console()


def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, err=True, fg="red")
    raise typer.Exit(code=code)


def _load_or_exit(root: Path | None = None) -> ModmanConfig:
    try:
        return load_config(root=root)
    except ConfigError as exc:
        _fail(str(exc), code=2)


def _get_config(ctx: typer.Context) -> ModmanConfig:
    if ctx.obj is None:
        ctx.obj = {}
    cfg = ctx.obj.get("config")
    if cfg is None:
        cfg = _load_or_exit()
        ctx.obj["config"] = cfg
    return cfg


def _database_path(cfg: ModmanConfig, database: Optional[Path]) -> Path:
    return database.expanduser().resolve() if database else cfg.database


def _load_db(cfg: ModmanConfig, path: Path, *, use_cache: bool = False) -> db.LoadResult:
    try:
        result = db.load_database(path, cfg, use_cache=use_cache)
    except (db.DatabaseError, SchemaError) as exc:
        _fail(str(exc))
    for mod_id, error in result.failed.items():
        typer.secho(f"{mod_id}: re-validation failed ({error})", fg="yellow")
    if result.revalidated:
        typer.secho(f"Re-validated externally modified: {', '.join(result.revalidated)}", fg="cyan")
    return result


@app.callback()
def main(
    ctx: typer.Context,
    root: Path = typer.Option(None, "--root", help="Directory holding modlist.csv and .modman.json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    ctx.obj = ctx.obj or {}
    if root is not None:
        ctx.obj["config"] = _load_or_exit(root=root)


@app.command("list")
def list_command(
    ctx: typer.Context,
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Show every record with its Current / Next / Latest versions."""
    cfg = _get_config(ctx)
    result = _load_db(cfg, _database_path(cfg, database))

    table = Table(title="Mod list", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Host")
    table.add_column("Loader")
    table.add_column("Current")
    table.add_column("Next")
    table.add_column("Latest")
    for record in result.records:
        latest = record.latest_version
        if record.latest_game_version:
            latest = f"{latest} ({record.latest_game_version})"
        current = f"{record.current_version} ({record.current_game_version})" if record.current_version else "-"
        next_cell = f"{record.next_version} ({record.next_game_version})" if record.next_version else "-"
        style = "yellow" if record.latest_version and record.latest_version != record.current_version else "green"
        table.add_row(
            record.id,
            record.type,
            record.effective_host,
            record.loader or "-",
            current,
            next_cell,
            Text(latest or "-", style=style),
        )
    _rich_console.print(table)


@app.command("add")
def add_command(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Project ID, slug or Modrinth/CurseForge URL"),
    record_type: str = typer.Option("mod", "--type", help="mod, shaderpack, datapack, installer, launcher, server, jdk"),
    loader: str = typer.Option(None, "--loader", help="Loader override"),
    game_version: str = typer.Option(None, "--game-version", help="Game version override"),
    version: str = typer.Option("", "--version", help="Pinned mod version"),
    group: str = typer.Option("", "--group", help="Group label"),
    name: str = typer.Option("", "--name", help="Human readable name"),
    url_direct: str = typer.Option("", "--url-direct", help="Download URL for direct-host records"),
    validate: bool = typer.Option(True, "--validate/--no-validate", help="Query the host after adding"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Add a record to the mod list."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    if path.exists():
        result = _load_db(cfg, path)
        records, columns = result.records, result.columns
    else:
        records, columns = [], None

    try:
        record = db.add_record(
            records,
            reference,
            cfg,
            record_type=record_type,
            loader=loader,
            game_version=game_version,
            version=version,
            group=group,
            name=name,
            url_direct=url_direct,
        )
    except db.DatabaseError as exc:
        _fail(str(exc))

    if validate and record.is_validate_eligible:
        reports = db.validate_records([record], cfg, update_mods=True)
        for report in reports:
            if not report.ok:
                typer.secho(f"Validation failed: {report.error}", fg="yellow")
    stamp_record_hash(record)
    db.save_database(path, records, columns=columns)
    typer.secho(f"Added {record.id} ({record.effective_host})", fg="green")


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    mod_id: str = typer.Argument(..., help="Record ID"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Remove a record and its downloaded files."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    result = _load_db(cfg, path)
    try:
        record, deleted = db.remove_record(result.records, mod_id, cfg)
    except db.DatabaseError as exc:
        _fail(str(exc))
    db.save_database(path, result.records, columns=result.columns, backup_reason="remove", backup_dir=cfg.backup_dir)
    typer.secho(f"Removed {record.id}", fg="yellow")
    for file in deleted:
        typer.secho(f"  deleted {file}", fg="bright_black")


@app.command("validate")
def validate_command(
    ctx: typer.Context,
    use_cache: bool = typer.Option(False, "--use-cache", help="Reuse stored API responses"),
    update_mods: bool = typer.Option(False, "--update-mods", help="Correct stale versions matched by jar name"),
    ids: Optional[List[str]] = typer.Option(None, "--id", help="Only validate these IDs"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Validate records against Modrinth / CurseForge and refresh Latest*."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    result = _load_db(cfg, path, use_cache=use_cache)
    reports = db.validate_records(result.records, cfg, use_cache=use_cache, update_mods=update_mods, ids=ids)

    table = Table(title="Validation", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="cyan")
    table.add_column("Host")
    table.add_column("Status")
    table.add_column("Latest")
    for report in reports:
        if not report.ok:
            status = Text(f"error: {report.error}", style="red")
        elif not report.exists:
            status = Text("version not found", style="yellow")
        elif report.found_by_jar:
            status = Text("found by jar", style="magenta")
        else:
            status = Text("ok", style="green")
        table.add_row(report.id, report.host, status, report.latest_version or "-")
    _rich_console.print(table)

    if any(report.changed for report in reports):
        db.save_database(path, result.records, columns=result.columns, backup_reason="validation", backup_dir=cfg.backup_dir)
        typer.secho("Mod list updated", fg="green")
    if any(not report.ok for report in reports):
        raise typer.Exit(code=1)


@app.command("next")
def next_command(
    ctx: typer.Context,
    use_cache: bool = typer.Option(False, "--use-cache", help="Reuse stored API responses"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Stage Next* one game version past Current*."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    result = _load_db(cfg, path, use_cache=use_cache)
    plans = db.plan_next(result.records, cfg, use_cache=use_cache)
    for plan in plans:
        if plan.error:
            typer.secho(f"{plan.id}: {plan.error}", fg="red")
        elif not plan.found:
            typer.secho(f"{plan.id}: no build for {plan.next_game_version}", fg="yellow")
        else:
            typer.echo(f"{plan.id}: {plan.next_version} ({plan.next_game_version})")
    if not any(plan.changed for plan in plans):
        typer.secho("Next versions unchanged", fg="cyan")
        return
    db.save_database(path, result.records, columns=result.columns, backup_reason="next", backup_dir=cfg.backup_dir)


@app.command("rollover")
def rollover_command(
    ctx: typer.Context,
    ids: Optional[List[str]] = typer.Argument(None, help="Records to roll over (default: all)"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Promote Next* into Current*."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    result = _load_db(cfg, path)
    promoted = db.rollover(result.records, ids)
    if not promoted:
        typer.secho("Nothing to roll over", fg="yellow")
        return
    db.save_database(path, result.records, columns=result.columns, backup_reason="rollover", backup_dir=cfg.backup_dir)
    typer.secho(f"Rolled over {len(promoted)} record(s)", fg="green")


@app.command("migrate")
def migrate_command(
    ctx: typer.Context,
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Rename legacy Version columns to the Current/Next/Latest layout."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    try:
        outcome = migrate_schema(path, backup_dir=cfg.backup_dir, default_game_version=cfg.default_game_version)
    except SchemaError as exc:
        _fail(str(exc), code=3)
    if not outcome.migrated:
        typer.secho("Already migrated", fg="cyan")
        return
    typer.secho(f"Migrated {path.name}; backup at {outcome.backup}", fg="green")


@app.command("ensure-columns")
def ensure_columns_command(
    ctx: typer.Context,
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Add any missing columns to the mod list."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    if not path.exists():
        _fail(f"Database file not found: {path}")
    backup = ensure_columns_file(path, backup_dir=cfg.backup_dir, default_game_version=cfg.default_game_version)
    if backup is None:
        typer.secho("All columns present", fg="cyan")
    else:
        typer.secho(f"Columns added; backup at {backup}", fg="green")


@app.command("clean-system")
def clean_system_command(
    ctx: typer.Context,
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Blank API fields on installer/launcher/server records."""
    cfg = _get_config(ctx)
    path = _database_path(cfg, database)
    result = _load_db(cfg, path)
    cleaned = clean_system_entries(result.records)
    for record in cleaned:
        stamp_record_hash(record)
    if cleaned:
        db.save_database(path, result.records, columns=result.columns)
    typer.secho(f"Cleaned {len(cleaned)} system record(s)", fg="green")


@app.command("download")
def download_command(
    ctx: typer.Context,
    stage: str = typer.Option("current", "--stage", help=f"One of: {', '.join(STAGES)}"),
    database: Path = typer.Option(None, "--database", "-d", help="Override the mod list path"),
):
    """Download artifacts into download/{game_version}/."""
    cfg = _get_config(ctx)
    result = _load_db(cfg, _database_path(cfg, database))
    try:
        summary = download_records(result.records, cfg, stage=stage)
    except DownloadError as exc:
        _fail(str(exc))
    typer.secho(f"Downloaded {len(summary.downloaded)}, skipped {len(summary.skipped)}", fg="green")
    for mod_id, error in summary.failed.items():
        typer.secho(f"{mod_id}: {error}", fg="red")
    if summary.failed:
        raise typer.Exit(code=1)


@app.command("game-versions")
def game_versions_command(
    ctx: typer.Context,
    include_snapshots: bool = typer.Option(False, "--all", help="Include snapshots"),
    limit: int = typer.Option(20, "--limit", "-n", help="How many to show"),
):
    """List Minecraft versions from the Mojang manifest."""
    cfg = _get_config(ctx)
    try:
        versions = fetch_game_versions(cfg, release_only=not include_snapshots)
    except ProviderError as exc:
        _fail(str(exc))
    for version in versions[:limit]:
        typer.echo(version)


@server_app.command("start")
def server_start(
    ctx: typer.Context,
    game_version: str = typer.Option(None, "--game-version", help="Defaults to the configured game version"),
    wait: bool = typer.Option(False, "--wait", help="Wait until RCON answers"),
):
    """Start a local test server from the downloaded jar."""
    cfg = _get_config(ctx)
    version = game_version or cfg.default_game_version
    try:
        process = server_module.start_server(cfg, version)
    except RuntimeError as exc:
        _fail(str(exc))
    typer.secho(f"Test server {version} started (pid {process.pid})", fg="green")
    if wait and not console_module.wait_until_ready(cfg):
        _fail("Server did not answer on RCON in time")


@server_app.command("stop")
def server_stop(
    ctx: typer.Context,
    game_version: str = typer.Option(None, "--game-version", help="Defaults to the configured game version"),
):
    """Stop the local test server."""
    cfg = _get_config(ctx)
    try:
        server_module.stop_server(cfg, game_version or cfg.default_game_version)
    except RuntimeError as exc:
        _fail(str(exc))
    typer.secho("Test server stopped", fg="yellow")


@server_app.command("status")
def server_status(
    ctx: typer.Context,
    game_version: str = typer.Option(None, "--game-version", help="Defaults to the configured game version"),
):
    """Show whether the test server is running."""
    cfg = _get_config(ctx)
    status = server_module.get_status(cfg, game_version or cfg.default_game_version)
    table = Table(title="Test server", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Game version", Text(status.game_version, style="magenta"))
    running_value = Text("Yes", style="bold green") if status.running else Text("No", style="bold red")
    table.add_row("Running", running_value)
    if status.pid:
        table.add_row("PID", Text(str(status.pid), style="cyan"))
    _rich_console.print(table)


@console_app.command("run")
def console_run(ctx: typer.Context, command: str = typer.Argument(..., help="Command to send")):
    """Send a one-off command over RCON."""
    cfg = _get_config(ctx)
    try:
        output = console_module.send_command(cfg, command)
    except RuntimeError as exc:
        _fail(str(exc))
    if not output:
        typer.secho("(no response)", fg="bright_black")
    else:
        typer.echo(output)
