from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional
from urllib.parse import unquote, urlparse

from .config import ModmanConfig
from .hashing import stamp_record_hash, verify_record_hash
from .providers import ProviderAdapter, ValidationResult, build_providers
from .records import (
    COLUMNS,
    Host,
    ModRecord,
    SYSTEM_TYPES,
    clean_system_entry,
    dump_dependencies,
    infer_host,
    parse_project_reference,
)
from .schema import (
    SchemaState,
    SchemaStructureError,
    Table,
    create_backup,
    detect_schema,
    ensure_columns,
    migrate_schema,
    read_table,
    write_table,
)
from .versions import join_game_versions, next_game_version, split_game_versions

logger = logging.getLogger(__name__)

Providers = Mapping[str, ProviderAdapter]


class DatabaseError(RuntimeError):
    """Raised when the mod list cannot be used."""


class DatabaseNotFoundError(DatabaseError):
    pass


class RecordNotFoundError(DatabaseError):
    pass


class DuplicateRecordError(DatabaseError):
    pass


@dataclass
class LoadResult:
    records: List[ModRecord]
    columns: List[str]
    adopted: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    revalidated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    backups: List[Path] = field(default_factory=list)
    saved: bool = False


@dataclass
class ValidationReport:
    id: str
    host: str
    ok: bool
    exists: bool = False
    found_by_jar: bool = False
    latest_version: str = ""
    changed: bool = False
    error: Optional[str] = None


@dataclass
class NextPlan:
    id: str
    next_game_version: str
    next_version: str = ""
    found: bool = False
    changed: bool = False
    error: Optional[str] = None


def filename_from_url(url: str) -> str:
    if not url:
        return ""
    return unquote(Path(urlparse(url).path).name)


def save_database(
    path: Path,
    records: Iterable[ModRecord],
    *,
    columns: Optional[List[str]] = None,
    backup_reason: Optional[str] = None,
    backup_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Write every record to ``path``; bulk updates pass a ``backup_reason``."""

    backup = None
    if backup_reason and path.exists():
        backup = create_backup(path, backup_reason, backup_dir)
    ordered = list(columns or [])
    ordered.extend(column for column in COLUMNS if column not in ordered)
    write_table(path, Table(columns=ordered, rows=[record.to_row() for record in records]))
    return backup


def load_database(
    path: Path,
    cfg: ModmanConfig,
    *,
    providers: Optional[Providers] = None,
    use_cache: bool = False,
) -> LoadResult:
    """Load the mod list, heal its schema and re-validate records edited outside modman.

    Records without a stored hash are adopted. Records whose hash no longer
    matches are re-validated when eligible; only their API-derived fields are
    refreshed and the pinned current version is kept as edited.
    """

    if not path.exists():
        raise DatabaseNotFoundError(f"Database file not found: {path}")

    backups: List[Path] = []
    table = read_table(path)
    state = detect_schema(table.columns)
    if state is SchemaState.LEGACY:
        migration = migrate_schema(path, backup_dir=cfg.backup_dir, default_game_version=cfg.default_game_version)
        if migration.backup:
            backups.append(migration.backup)
        table = read_table(path)
    elif table.columns and "ID" not in table.columns:
        raise SchemaStructureError(f"{path.name} has no ID column")

    table, added = ensure_columns(table, cfg.default_game_version)
    if added:
        backups.append(create_backup(path, "columns", cfg.backup_dir))
        write_table(path, table)
        logger.info("Added %d column(s) to %s: %s", len(added), path.name, ", ".join(added))

    records = [ModRecord.from_row(row) for row in table.rows]
    result = LoadResult(records=records, columns=list(table.columns), backups=backups)

    touched: List[ModRecord] = []
    drifted: List[ModRecord] = []
    for index, record in enumerate(records, start=1):
        if not record.id or not record.type:
            logger.warning("Row %d of %s is missing ID or Type; skipping integrity check", index, path.name)
            continue
        adopted = not record.record_hash
        modified = not adopted and not verify_record_hash(record)
        cleaned = clean_system_entry(record)
        if adopted:
            result.adopted.append(record.id)
            touched.append(record)
        elif modified:
            result.modified.append(record.id)
            drifted.append(record)
        elif cleaned:
            touched.append(record)

    if drifted and any(record.is_validate_eligible for record in drifted):
        providers = providers if providers is not None else build_providers(cfg)

    for record in drifted:
        if not record.is_validate_eligible:
            touched.append(record)
            continue
        logger.info("%s was modified outside modman; re-validating", record.label())
        validation = _validate(record, providers, use_cache)
        if not validation.ok:
            # keep the stale hash so the record is retried on the next load
            result.failed[record.id] = validation.error or "validation failed"
            logger.warning("Re-validation of %s failed: %s", record.id, validation.error)
            continue
        apply_validation(record, validation)
        result.revalidated.append(record.id)
        touched.append(record)

    changed = False
    for record in touched:
        changed = stamp_record_hash(record) or changed

    if changed:
        save_database(path, records, columns=result.columns)
        result.saved = True
    return result


def _validate(record: ModRecord, providers: Optional[Providers], use_cache: bool) -> ValidationResult:
    host = record.effective_host
    provider = (providers or {}).get(host)
    if provider is None:
        return ValidationResult(id=record.id, host=host, error=f"No provider for host '{host}'")
    return provider.validate_version(
        record.id,
        record.current_version,
        record.loader,
        record.jar or None,
        use_cache=use_cache,
    )


def apply_validation(record: ModRecord, validation: ValidationResult) -> bool:
    """Copy API-derived fields from ``validation`` onto ``record``; pinned fields are untouched."""

    before = record.to_row()
    if validation.exists:
        record.current_version_url = validation.matched_download_url or record.current_version_url
        record.current_dependencies_required = dump_dependencies(validation.dependencies.current_required)
        record.current_dependencies_optional = dump_dependencies(validation.dependencies.current_optional)

    if validation.latest_version:
        record.latest_version = validation.latest_version
        record.latest_version_url = validation.latest_download_url
        record.latest_game_version = validation.latest_game_version
        record.latest_dependencies_required = dump_dependencies(validation.dependencies.latest_required)
        record.latest_dependencies_optional = dump_dependencies(validation.dependencies.latest_optional)

    if validation.available_game_versions:
        record.available_game_versions = join_game_versions(validation.available_game_versions)

    project = validation.project
    if project is not None:
        record.title = project.title
        record.project_description = project.description
        record.icon_url = project.icon_url
        record.client_side = project.client_side
        record.server_side = project.server_side
        record.issues_url = project.issues_url
        record.source_url = project.source_url
        record.wiki_url = project.wiki_url
        if not record.url and project.project_url:
            record.url = project.project_url

    if not record.host:
        record.host = validation.host
    if not record.api_source:
        record.api_source = validation.host
    return record.to_row() != before


def validate_records(
    records: Iterable[ModRecord],
    cfg: ModmanConfig,
    *,
    providers: Optional[Providers] = None,
    use_cache: bool = False,
    update_mods: bool = False,
    ids: Optional[Iterable[str]] = None,
) -> List[ValidationReport]:
    """Validate every eligible record in turn; one failure never stops the batch.

    With ``update_mods`` a version located only through its jar name also
    replaces the stale ``CurrentVersion`` text.
    """

    providers = providers if providers is not None else build_providers(cfg)
    wanted = {value.lower() for value in ids} if ids else None
    reports: List[ValidationReport] = []
    for record in records:
        if not record.is_validate_eligible:
            continue
        if wanted is not None and record.id.lower() not in wanted:
            continue
        validation = _validate(record, providers, use_cache)
        if not validation.ok:
            logger.warning("Validation of %s failed: %s", record.id, validation.error)
            reports.append(ValidationReport(id=record.id, host=validation.host, ok=False, error=validation.error))
            continue

        changed = apply_validation(record, validation)
        if update_mods and validation.version_found_by_jar and validation.matched_version:
            if record.current_version != validation.matched_version:
                logger.info("%s: CurrentVersion %s -> %s (matched by jar)", record.id, record.current_version, validation.matched_version)
                record.current_version = validation.matched_version
                changed = True
        if not validation.exists:
            logger.info("%s %s not found on %s", record.id, record.current_version, validation.host)
        changed = stamp_record_hash(record) or changed
        reports.append(
            ValidationReport(
                id=record.id,
                host=validation.host,
                ok=True,
                exists=validation.exists,
                found_by_jar=validation.version_found_by_jar,
                latest_version=validation.latest_version,
                changed=changed,
            )
        )
    return reports


def plan_next(
    records: Iterable[ModRecord],
    cfg: ModmanConfig,
    *,
    providers: Optional[Providers] = None,
    use_cache: bool = False,
) -> List[NextPlan]:
    """Stage the Next* columns one game version past CurrentGameVersion."""

    providers = providers if providers is not None else build_providers(cfg)
    plans: List[NextPlan] = []
    for record in records:
        if not record.is_validate_eligible:
            continue
        step = next_game_version(record.current_game_version, split_game_versions(record.available_game_versions))
        if not step.anchored:
            logger.debug(
                "%s: current game version %r not in available list, anchoring at oldest",
                record.id,
                record.current_game_version,
            )
        before = record.to_row()
        target = step.latest_game_version
        plan = NextPlan(id=record.id, next_game_version=target)

        if not target or target == record.current_game_version:
            record.next_version = record.current_version
            record.next_version_url = record.current_version_url
            record.next_game_version = record.current_game_version
            plan.next_version = record.current_version
            plan.found = True
        else:
            provider = providers.get(record.effective_host)
            if provider is None:
                plan.error = f"No provider for host '{record.effective_host}'"
            else:
                found = provider.find_for_game_version(record.id, target, record.loader, use_cache=use_cache)
                if not found.ok:
                    plan.error = found.error
                elif found.exists:
                    record.next_version = found.matched_version
                    record.next_version_url = found.matched_download_url
                    record.next_game_version = target
                    plan.next_version = found.matched_version
                    plan.found = True
                else:
                    logger.info("%s has no %s build for %s", record.id, record.loader or "any", target)
        stamp_record_hash(record)
        plan.changed = record.to_row() != before
        plans.append(plan)
    return plans


def rollover(records: Iterable[ModRecord], ids: Optional[Iterable[str]] = None) -> List[ModRecord]:
    """Promote Next* into Current* for the selected records and clear Next*."""

    wanted = {value.lower() for value in ids} if ids else None
    promoted: List[ModRecord] = []
    for record in records:
        if wanted is not None and record.id.lower() not in wanted:
            continue
        if not record.next_version:
            continue
        record.current_version = record.next_version
        record.current_version_url = record.next_version_url
        record.current_game_version = record.next_game_version or record.current_game_version
        jar = filename_from_url(record.next_version_url)
        if jar:
            record.jar = jar
        record.next_version = ""
        record.next_version_url = ""
        record.next_game_version = ""
        stamp_record_hash(record)
        promoted.append(record)
    return promoted


def find_record(records: Iterable[ModRecord], mod_id: str) -> ModRecord:
    wanted = mod_id.strip().lower()
    for record in records:
        if record.id.lower() == wanted:
            return record
    raise RecordNotFoundError(f"Mod '{mod_id}' not found in database")


def add_record(
    records: List[ModRecord],
    reference: str,
    cfg: ModmanConfig,
    *,
    record_type: str = "mod",
    loader: Optional[str] = None,
    game_version: Optional[str] = None,
    version: str = "",
    group: str = "",
    name: str = "",
    url_direct: str = "",
) -> ModRecord:
    """Append a minimal record for a project ID or Modrinth/CurseForge URL."""

    mod_id, host = parse_project_reference(reference)
    if not mod_id:
        raise DatabaseError("A mod ID or project URL is required.")
    record_type = record_type.strip().lower()
    if record_type in SYSTEM_TYPES:
        host = Host.DIRECT.value
    host = host or infer_host(mod_id, record_type)

    for existing in records:
        if existing.id.lower() == mod_id.lower() and existing.effective_host == host:
            raise DuplicateRecordError(f"Mod '{mod_id}' already exists in database ({host})")

    record = ModRecord(
        group=group,
        type=record_type,
        id=mod_id,
        loader="" if record_type in SYSTEM_TYPES else (loader or cfg.default_loader),
        current_game_version=game_version or cfg.default_game_version,
        current_version=version,
        name=name,
        url=reference if reference.startswith(("http://", "https://")) else "",
        url_direct=url_direct,
        host=host,
        api_source=host,
    )
    records.append(record)
    return record


def remove_record(records: List[ModRecord], mod_id: str, cfg: ModmanConfig) -> tuple[ModRecord, List[Path]]:
    """Drop a record and delete its downloaded files from the download tree."""

    record = find_record(records, mod_id)
    filenames = {
        name
        for name in (
            record.jar,
            filename_from_url(record.current_version_url),
            filename_from_url(record.next_version_url),
            filename_from_url(record.latest_version_url),
            filename_from_url(record.url_direct),
        )
        if name
    }

    deleted: List[Path] = []
    if filenames and cfg.download_dir.exists():
        for path in cfg.download_dir.rglob("*"):
            if path.is_file() and path.name in filenames:
                path.unlink()
                deleted.append(path)

    records.remove(record)
    return record, deleted
