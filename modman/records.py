from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RecordType(str, Enum):
    MOD = "mod"
    SHADERPACK = "shaderpack"
    DATAPACK = "datapack"
    MODPACK = "modpack"
    INSTALLER = "installer"
    LAUNCHER = "launcher"
    SERVER = "server"
    JDK = "jdk"


class Host(str, Enum):
    MODRINTH = "modrinth"
    CURSEFORGE = "curseforge"
    DIRECT = "direct"


SYSTEM_TYPES = frozenset({RecordType.INSTALLER.value, RecordType.LAUNCHER.value, RecordType.SERVER.value})
VALIDATE_TYPES = frozenset({RecordType.MOD.value, RecordType.SHADERPACK.value, RecordType.DATAPACK.value})

_CURSEFORGE_URL = re.compile(r"curseforge\.com/minecraft/[^/]+/([^/?#]+)", re.IGNORECASE)
_MODRINTH_URL = re.compile(r"modrinth\.com/(?:mod|shader|shaders|datapack|resourcepack|modpack|plugin)/([^/?#]+)", re.IGNORECASE)


class Dependency(BaseModel):
    id: str
    version: str = ""


class ModRecord(BaseModel):
    """One row of the mod list. Field aliases are the CSV column names."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    group: str = Field(default="", alias="Group")
    type: str = Field(default="", alias="Type")
    current_game_version: str = Field(default="", alias="CurrentGameVersion")
    id: str = Field(default="", alias="ID")
    loader: str = Field(default="", alias="Loader")
    current_version: str = Field(default="", alias="CurrentVersion")
    name: str = Field(default="", alias="Name")
    description: str = Field(default="", alias="Description")
    jar: str = Field(default="", alias="Jar")
    url: str = Field(default="", alias="Url")
    category: str = Field(default="", alias="Category")
    current_version_url: str = Field(default="", alias="CurrentVersionUrl")
    next_version: str = Field(default="", alias="NextVersion")
    next_version_url: str = Field(default="", alias="NextVersionUrl")
    next_game_version: str = Field(default="", alias="NextGameVersion")
    latest_version_url: str = Field(default="", alias="LatestVersionUrl")
    latest_version: str = Field(default="", alias="LatestVersion")
    api_source: str = Field(default="", alias="ApiSource")
    host: str = Field(default="", alias="Host")
    icon_url: str = Field(default="", alias="IconUrl")
    client_side: str = Field(default="", alias="ClientSide")
    server_side: str = Field(default="", alias="ServerSide")
    title: str = Field(default="", alias="Title")
    project_description: str = Field(default="", alias="ProjectDescription")
    issues_url: str = Field(default="", alias="IssuesUrl")
    source_url: str = Field(default="", alias="SourceUrl")
    wiki_url: str = Field(default="", alias="WikiUrl")
    latest_game_version: str = Field(default="", alias="LatestGameVersion")
    record_hash: str = Field(default="", alias="RecordHash")
    url_direct: str = Field(default="", alias="UrlDirect")
    available_game_versions: str = Field(default="", alias="AvailableGameVersions")
    current_dependencies_required: str = Field(default="", alias="CurrentDependenciesRequired")
    current_dependencies_optional: str = Field(default="", alias="CurrentDependenciesOptional")
    latest_dependencies_required: str = Field(default="", alias="LatestDependenciesRequired")
    latest_dependencies_optional: str = Field(default="", alias="LatestDependenciesOptional")

    @field_validator("*", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ModRecord":
        return cls.model_validate({key: ("" if value is None else value) for key, value in row.items() if key})

    def to_row(self) -> Dict[str, str]:
        row = self.model_dump(by_alias=True)
        return {key: "" if value is None else str(value) for key, value in row.items()}

    @property
    def is_system(self) -> bool:
        return self.type.strip().lower() in SYSTEM_TYPES

    @property
    def is_validate_eligible(self) -> bool:
        return self.type.strip().lower() in VALIDATE_TYPES and self.effective_host != Host.DIRECT.value

    @property
    def effective_host(self) -> str:
        return (self.host or self.api_source or infer_host(self.id, self.type, self.url)).strip().lower()

    def label(self) -> str:
        return self.name or self.title or self.id


COLUMNS: tuple[str, ...] = tuple(info.alias for info in ModRecord.model_fields.values())
HASH_COLUMN = "RecordHash"

# Cached upstream display data, blanked for system records.
DISPLAY_FIELDS = (
    "icon_url",
    "client_side",
    "server_side",
    "title",
    "project_description",
    "issues_url",
    "source_url",
    "wiki_url",
    "available_game_versions",
    "current_dependencies_required",
    "current_dependencies_optional",
    "latest_dependencies_required",
    "latest_dependencies_optional",
)


def infer_host(mod_id: Optional[str], record_type: Optional[str] = None, url: Optional[str] = None) -> str:
    """Guess the host for an ID: system records are direct, digits are CurseForge."""
    if (record_type or "").strip().lower() in SYSTEM_TYPES:
        return Host.DIRECT.value
    lowered = (url or "").lower()
    if "curseforge.com" in lowered:
        return Host.CURSEFORGE.value
    if "modrinth.com" in lowered:
        return Host.MODRINTH.value
    mod_id = (mod_id or "").strip()
    if mod_id.isdigit():
        return Host.CURSEFORGE.value
    if mod_id:
        return Host.MODRINTH.value
    return ""


def parse_project_reference(value: str) -> tuple[str, Optional[str]]:
    """Split a project URL or bare ID into ``(id, host)``; host is None for bare IDs."""
    value = value.strip()
    match = _MODRINTH_URL.search(value)
    if match:
        return match.group(1), Host.MODRINTH.value
    match = _CURSEFORGE_URL.search(value)
    if match:
        return match.group(1), Host.CURSEFORGE.value
    return value, None


def dump_dependencies(dependencies: Iterable[Dependency]) -> str:
    items = [dependency.model_dump() for dependency in dependencies]
    if not items:
        return ""
    return json.dumps(items, separators=(",", ":"))


def clean_system_entry(record: ModRecord) -> bool:
    """Force a system record to direct host with no cached display data."""
    if not record.is_system:
        return False
    changed = False
    for name in DISPLAY_FIELDS:
        if getattr(record, name):
            setattr(record, name, "")
            changed = True
    for name in ("host", "api_source"):
        if getattr(record, name) != Host.DIRECT.value:
            setattr(record, name, Host.DIRECT.value)
            changed = True
    return changed


def clean_system_entries(records: Iterable[ModRecord]) -> List[ModRecord]:
    """Apply :func:`clean_system_entry` to every record, returning the changed ones."""
    return [record for record in records if clean_system_entry(record)]
