from __future__ import annotations

import csv
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .records import COLUMNS, infer_host

logger = logging.getLogger(__name__)

LEGACY_RENAMES: Dict[str, str] = {
    "Version": "CurrentVersion",
    "VersionUrl": "CurrentVersionUrl",
    "GameVersion": "CurrentGameVersion",
}


class SchemaError(RuntimeError):
    """Raised when the mod list cannot be read or reshaped."""


class SchemaStructureError(SchemaError):
    """The table is neither the legacy nor the current layout."""


class SchemaMigrationError(SchemaError):
    """A migration failed part way and the backup was restored."""


class SchemaState(str, Enum):
    CURRENT = "current"
    LEGACY = "legacy"
    UNKNOWN = "unknown"


@dataclass
class Table:
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, str]] = field(default_factory=list)

    def copy(self) -> "Table":
        return Table(columns=list(self.columns), rows=[dict(row) for row in self.rows])


@dataclass
class MigrationResult:
    migrated: bool
    backup: Optional[Path] = None
    renamed: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)


def read_table(path: Path) -> Table:
    # utf-8-sig: files exported from Windows tools often start with a BOM
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        columns = [name for name in (reader.fieldnames or []) if name]
        rows = []
        for raw in reader:
            rows.append({key: ("" if value is None else value) for key, value in raw.items() if key})
    return Table(columns=columns, rows=rows)


def write_table(path: Path, table: Table) -> None:
    columns = list(table.columns)
    for row in table.rows:
        for key in row:
            if key not in columns:
                columns.append(key)

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=columns, restval="")
        writer.writeheader()
        for row in table.rows:
            writer.writerow(row)
    tmp_path.replace(path)


def create_backup(path: Path, reason: str, backup_dir: Optional[Path] = None) -> Path:
    """Copy ``path`` to ``{stem}-{reason}-{timestamp}.csv`` before a destructive write."""

    target_dir = backup_dir or path.parent
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
    backup = target_dir / f"{path.stem}-{reason}-{stamp}{path.suffix or '.csv'}"
    shutil.copy2(path, backup)
    logger.info("Backed up %s to %s", path.name, backup)
    return backup


def detect_schema(columns: List[str]) -> SchemaState:
    present = set(columns)
    if not present:
        return SchemaState.CURRENT
    if "ID" not in present:
        return SchemaState.UNKNOWN
    if "CurrentVersion" in present:
        return SchemaState.CURRENT
    if "Version" in present:
        return SchemaState.LEGACY
    return SchemaState.UNKNOWN


def column_default(column: str, row: Dict[str, str], default_game_version: str = "") -> str:
    if column == "CurrentGameVersion":
        return default_game_version
    if column in ("Host", "ApiSource"):
        return row.get("Host") or row.get("ApiSource") or infer_host(row.get("ID"), row.get("Type"), row.get("Url"))
    return ""


def ensure_columns(table: Table, default_game_version: str = "") -> tuple[Table, List[str]]:
    """Return a copy of ``table`` carrying every required column, and the columns added."""

    result = table.copy()
    added = [column for column in COLUMNS if column not in result.columns]
    result.columns.extend(added)
    for row in result.rows:
        for column in COLUMNS:
            if column not in row:
                row[column] = column_default(column, row, default_game_version)
    return result, added


def ensure_columns_file(
    path: Path,
    *,
    backup_dir: Optional[Path] = None,
    default_game_version: str = "",
) -> Optional[Path]:
    """Backfill missing columns on disk; returns the backup path when a write happened."""

    table = read_table(path)
    updated, added = ensure_columns(table, default_game_version)
    if not added:
        return None
    backup = create_backup(path, "columns", backup_dir)
    write_table(path, updated)
    logger.info("Added %d column(s) to %s: %s", len(added), path.name, ", ".join(added))
    return backup


def rename_legacy_columns(table: Table) -> tuple[Table, List[str]]:
    result = Table()
    renamed: List[str] = []
    for column in table.columns:
        new_name = LEGACY_RENAMES.get(column)
        if new_name and new_name not in table.columns:
            result.columns.append(new_name)
            renamed.append(column)
        else:
            result.columns.append(column)
    for row in table.rows:
        result.rows.append({(LEGACY_RENAMES[key] if key in renamed else key): value for key, value in row.items()})
    return result, renamed


def migrate_schema(
    path: Path,
    *,
    backup_dir: Optional[Path] = None,
    default_game_version: str = "",
) -> MigrationResult:
    """Rename Version/VersionUrl/GameVersion to their Current* names and add the Next* columns.

    Already-migrated tables are left alone. Unrecognised tables raise
    :class:`SchemaStructureError` without touching the file. Any failure after
    the backup is taken restores it and raises :class:`SchemaMigrationError`.
    """

    if not path.exists():
        raise SchemaError(f"Database file not found: {path}")

    table = read_table(path)
    state = detect_schema(table.columns)
    if state is SchemaState.CURRENT:
        logger.debug("%s already uses the current schema", path.name)
        return MigrationResult(migrated=False)
    if state is SchemaState.UNKNOWN:
        raise SchemaStructureError(
            f"{path.name} has an unrecognised column layout: {', '.join(table.columns) or '(none)'}"
        )

    backup = create_backup(path, "migration", backup_dir)
    try:
        renamed_table, renamed = rename_legacy_columns(table)
        migrated, added = ensure_columns(renamed_table, default_game_version)
        write_table(path, migrated)
    except Exception as exc:
        shutil.copy2(backup, path)
        logger.error("Migration of %s failed, restored %s", path.name, backup.name)
        raise SchemaMigrationError(f"Migration of {path.name} failed and was rolled back: {exc}") from exc

    logger.info("Migrated %s (renamed %s)", path.name, ", ".join(renamed))
    return MigrationResult(migrated=True, backup=backup, renamed=renamed, added=added)
