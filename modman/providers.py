from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from .config import ModmanConfig
from .records import Dependency, Host
from .versions import is_game_version, newest_game_version, normalize_version, sorted_game_versions, versions_match

logger = logging.getLogger(__name__)

MODRINTH_CDN_TEMPLATE = "https://cdn.modrinth.com/data/{project_id}/versions/{version_id}/{filename}"
CURSEFORGE_CDN_TEMPLATE = "https://edge.forgecdn.net/files/{head}/{tail}/{filename}"

JsonFetcher = Callable[[str, Dict[str, str]], Any]


class ProviderError(RuntimeError):
    """Raised inside a provider when an upstream call fails."""


class ProjectNotFoundError(ProviderError):
    pass


class TransientNetworkError(ProviderError):
    pass


class RateLimitedError(TransientNetworkError):
    pass


@dataclass
class DependencySet:
    current_required: List[Dependency] = field(default_factory=list)
    current_optional: List[Dependency] = field(default_factory=list)
    latest_required: List[Dependency] = field(default_factory=list)
    latest_optional: List[Dependency] = field(default_factory=list)


@dataclass
class ProjectInfo:
    title: str = ""
    description: str = ""
    icon_url: str = ""
    client_side: str = ""
    server_side: str = ""
    project_url: str = ""
    issues_url: str = ""
    source_url: str = ""
    wiki_url: str = ""
    game_versions: List[str] = field(default_factory=list)


@dataclass
class VersionEntry:
    """One upstream version/file, reduced to the fields both hosts share."""

    version: str
    download_url: str = ""
    filename: str = ""
    filenames: List[str] = field(default_factory=list)
    game_versions: List[str] = field(default_factory=list)
    loaders: List[str] = field(default_factory=list)
    required: List[Dependency] = field(default_factory=list)
    optional: List[Dependency] = field(default_factory=list)

    def supports_loader(self, loader: Optional[str]) -> bool:
        wanted = (loader or "").strip().lower()
        if not wanted:
            return True
        return wanted in {value.strip().lower() for value in self.loaders}

    def has_file(self, filename: str) -> bool:
        wanted = normalize_version(filename)
        return bool(wanted) and any(normalize_version(name) == wanted for name in self.filenames)


@dataclass
class ValidationResult:
    id: str
    host: str
    exists: bool = False
    matched_version: str = ""
    matched_download_url: str = ""
    matched_filename: str = ""
    matched_game_versions: List[str] = field(default_factory=list)
    version_found_by_jar: bool = False
    latest_version: str = ""
    latest_download_url: str = ""
    latest_filename: str = ""
    latest_game_version: str = ""
    available_game_versions: List[str] = field(default_factory=list)
    dependencies: DependencySet = field(default_factory=DependencySet)
    project: Optional[ProjectInfo] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProviderAdapter(Protocol):
    host: str

    def fetch_project(self, mod_id: str, *, use_cache: bool = False) -> ProjectInfo:  # pragma: no cover - protocol
        ...

    def validate_version(
        self,
        mod_id: str,
        expected_version: str,
        loader: str,
        jar_hint: Optional[str] = None,
        *,
        use_cache: bool = False,
    ) -> ValidationResult:  # pragma: no cover - protocol
        ...

    def find_for_game_version(
        self,
        mod_id: str,
        game_version: str,
        loader: str,
        *,
        use_cache: bool = False,
    ) -> ValidationResult:  # pragma: no cover - protocol
        ...


def http_get_json(
    url: str,
    headers: Optional[Dict[str, str]] = None,
    *,
    retries: int = 3,
    backoff: float = 1.0,
    timeout: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """GET ``url`` as JSON, backing off exponentially on 429 and transient failures."""

    request = urllib.request.Request(url)
    for key, value in (headers or {}).items():
        if value is not None:
            request.add_header(key, value)

    attempt = 0
    while True:
        attempt += 1
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                payload = response.read()
            break
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise ProjectNotFoundError(f"Not found: {url}") from exc
            if exc.code == 429:
                if attempt > retries:
                    raise RateLimitedError(f"Rate limited by {url} after {attempt} attempts") from exc
                retry_after = exc.headers.get("Retry-After") if exc.headers else None
                wait = float(retry_after) if retry_after and retry_after.isdigit() else backoff * (2 ** (attempt - 1))
                logger.debug("HTTP 429 from %s, retrying in %.1fs", url, wait)
                sleep(wait)
                continue
            if exc.code < 500:
                detail = exc.read().decode("utf-8", errors="ignore")
                raise ProviderError(f"HTTP {exc.code} error fetching {url}: {detail or exc.reason}") from exc
            if attempt > retries:
                raise TransientNetworkError(f"HTTP {exc.code} error fetching {url} after {attempt} attempts") from exc
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            if attempt > retries:
                raise TransientNetworkError(f"Network error fetching {url}: {exc}") from exc
        wait = backoff * (2 ** (attempt - 1))
        logger.debug("Transient failure fetching %s, retrying in %.1fs", url, wait)
        sleep(wait)

    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProviderError(f"Invalid JSON payload from {url}: {exc}") from exc


def default_fetcher(cfg: ModmanConfig) -> JsonFetcher:
    return partial(
        http_get_json,
        retries=cfg.max_retries,
        backoff=cfg.retry_backoff,
        timeout=cfg.request_timeout,
    )


class _VersionListProvider:
    """Matching shared by hosts that expose a full version list per project."""

    host = ""

    def __init__(self, cfg: ModmanConfig, fetch_json: Optional[JsonFetcher] = None) -> None:
        self.cfg = cfg
        self.fetch_json = fetch_json or default_fetcher(cfg)

    # Host specific -------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self.cfg.api_user_agent, "Accept": "application/json"}

    def fetch_project(self, mod_id: str, *, use_cache: bool = False) -> ProjectInfo:  # pragma: no cover - abstract
        raise NotImplementedError

    def fetch_versions(self, mod_id: str, *, use_cache: bool = False) -> List[VersionEntry]:  # pragma: no cover - abstract
        raise NotImplementedError

    def _pick_latest(self, project: ProjectInfo, entries: List[VersionEntry]) -> tuple[Optional[VersionEntry], str]:
        raise NotImplementedError  # pragma: no cover - abstract

    def _available_game_versions(self, project: ProjectInfo, entries: List[VersionEntry]) -> List[str]:
        raise NotImplementedError  # pragma: no cover - abstract

    # Shared ----------------------------------------------------------------

    def cache_path(self, mod_id: str, kind: str) -> Path:
        return self.cfg.api_cache_dir / self.host / f"{mod_id}-{kind}.json"

    def _get_json(self, url: str, mod_id: str, kind: str, use_cache: bool) -> Any:
        path = self.cache_path(mod_id, kind)
        if use_cache and path.exists():
            logger.debug("Using cached %s response %s", self.host, path)
            return json.loads(path.read_text(encoding="utf-8"))
        data = self.fetch_json(url, self._headers())
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return data

    def validate_version(
        self,
        mod_id: str,
        expected_version: str,
        loader: str,
        jar_hint: Optional[str] = None,
        *,
        use_cache: bool = False,
    ) -> ValidationResult:
        result = ValidationResult(id=mod_id, host=self.host)
        try:
            project = self.fetch_project(mod_id, use_cache=use_cache)
            entries = [entry for entry in self.fetch_versions(mod_id, use_cache=use_cache) if entry.supports_loader(loader)]
        except ProviderError as exc:
            result.error = str(exc)
            return result
        except (AttributeError, KeyError, OSError, TypeError, ValueError) as exc:
            result.error = f"Unexpected {self.host} response for {mod_id}: {exc}"
            return result

        result.project = project
        result.available_game_versions = self._available_game_versions(project, entries)
        if not entries:
            logger.info("%s has no %s versions on %s", mod_id, loader or "any", self.host)
            return result

        latest, latest_game_version = self._pick_latest(project, entries)
        if latest is not None:
            result.latest_version = latest.version
            result.latest_download_url = latest.download_url
            result.latest_filename = latest.filename
            result.latest_game_version = latest_game_version
            result.dependencies.latest_required = list(latest.required)
            result.dependencies.latest_optional = list(latest.optional)

        matched = next((entry for entry in entries if versions_match(entry.version, expected_version)), None)
        if matched is None and jar_hint:
            matched = next((entry for entry in entries if entry.has_file(jar_hint)), None)
            result.version_found_by_jar = matched is not None
        if matched is not None:
            result.exists = True
            result.matched_version = matched.version
            result.matched_download_url = matched.download_url
            result.matched_filename = matched.filename
            result.matched_game_versions = sorted_game_versions(matched.game_versions)
            result.dependencies.current_required = list(matched.required)
            result.dependencies.current_optional = list(matched.optional)
        return result

    def find_for_game_version(
        self,
        mod_id: str,
        game_version: str,
        loader: str,
        *,
        use_cache: bool = False,
    ) -> ValidationResult:
        """Newest entry for ``loader`` that declares ``game_version``."""

        result = ValidationResult(id=mod_id, host=self.host)
        try:
            entries = self.fetch_versions(mod_id, use_cache=use_cache)
        except ProviderError as exc:
            result.error = str(exc)
            return result
        except (AttributeError, KeyError, OSError, TypeError, ValueError) as exc:
            result.error = f"Unexpected {self.host} response for {mod_id}: {exc}"
            return result

        for entry in entries:
            if entry.supports_loader(loader) and game_version in entry.game_versions:
                result.exists = True
                result.matched_version = entry.version
                result.matched_download_url = entry.download_url
                result.matched_filename = entry.filename
                result.matched_game_versions = sorted_game_versions(entry.game_versions)
                result.dependencies.current_required = list(entry.required)
                result.dependencies.current_optional = list(entry.optional)
                break
        return result


class ModrinthProvider(_VersionListProvider):
    host = Host.MODRINTH.value

    def fetch_project(self, mod_id: str, *, use_cache: bool = False) -> ProjectInfo:
        url = f"{self.cfg.modrinth_api_base}/project/{mod_id}"
        data = self._get_json(url, mod_id, "project", use_cache)
        project_type = data.get("project_type") or "mod"
        slug = data.get("slug") or mod_id
        return ProjectInfo(
            title=data.get("title") or "",
            description=data.get("description") or "",
            icon_url=data.get("icon_url") or "",
            client_side=data.get("client_side") or "",
            server_side=data.get("server_side") or "",
            project_url=f"https://modrinth.com/{project_type}/{slug}",
            issues_url=data.get("issues_url") or "",
            source_url=data.get("source_url") or "",
            wiki_url=data.get("wiki_url") or "",
            game_versions=list(data.get("game_versions") or []),
        )

    def fetch_versions(self, mod_id: str, *, use_cache: bool = False) -> List[VersionEntry]:
        url = f"{self.cfg.modrinth_api_base}/project/{mod_id}/version"
        data = self._get_json(url, mod_id, "versions", use_cache)
        return [self._entry(raw) for raw in data or []]

    def _entry(self, raw: Dict[str, Any]) -> VersionEntry:
        files = raw.get("files") or []
        primary = next((file for file in files if file.get("primary")), files[0] if files else {})
        filename = primary.get("filename") or ""
        download_url = primary.get("url") or ""
        if not download_url and filename and raw.get("project_id") and raw.get("id"):
            download_url = MODRINTH_CDN_TEMPLATE.format(
                project_id=raw["project_id"], version_id=raw["id"], filename=filename
            )

        required: List[Dependency] = []
        optional: List[Dependency] = []
        for dep in raw.get("dependencies") or []:
            dep_id = dep.get("project_id") or dep.get("file_name")
            if not dep_id:
                continue
            dependency = Dependency(id=dep_id, version=dep.get("version_id") or "")
            if dep.get("dependency_type") == "required":
                required.append(dependency)
            elif dep.get("dependency_type") == "optional":
                optional.append(dependency)

        return VersionEntry(
            version=raw.get("version_number") or "",
            download_url=download_url,
            filename=filename,
            filenames=[file.get("filename") or "" for file in files],
            game_versions=list(raw.get("game_versions") or []),
            loaders=list(raw.get("loaders") or []),
            required=required,
            optional=optional,
        )

    def _pick_latest(self, project: ProjectInfo, entries: List[VersionEntry]) -> tuple[Optional[VersionEntry], str]:
        if project.game_versions:
            newest = project.game_versions[-1]
            for entry in entries:
                if newest in entry.game_versions:
                    return entry, newest
        entry = entries[0]
        return entry, newest_game_version(entry.game_versions)

    def _available_game_versions(self, project: ProjectInfo, entries: List[VersionEntry]) -> List[str]:
        return list(project.game_versions)


class CurseForgeProvider(_VersionListProvider):
    host = Host.CURSEFORGE.value

    RELATION_REQUIRED = 3
    RELATION_OPTIONAL = 2

    def _headers(self) -> Dict[str, str]:
        if not self.cfg.curseforge_api_key:
            raise ProviderError(
                "CurseForge API key missing. Set CURSEFORGE_API_KEY or add curseforge_api_key to .modman.json."
            )
        headers = super()._headers()
        headers["x-api-key"] = self.cfg.curseforge_api_key
        return headers

    def fetch_project(self, mod_id: str, *, use_cache: bool = False) -> ProjectInfo:
        url = f"{self.cfg.curseforge_api_base}/mods/{mod_id}"
        data = self._get_json(url, mod_id, "project", use_cache).get("data") or {}
        links = data.get("links") or {}
        logo = data.get("logo") or {}
        return ProjectInfo(
            title=data.get("name") or "",
            description=data.get("summary") or "",
            icon_url=logo.get("url") or "",
            project_url=links.get("websiteUrl") or "",
            issues_url=links.get("issuesUrl") or "",
            source_url=links.get("sourceUrl") or "",
            wiki_url=links.get("wikiUrl") or "",
        )

    def fetch_versions(self, mod_id: str, *, use_cache: bool = False) -> List[VersionEntry]:
        url = f"{self.cfg.curseforge_api_base}/mods/{mod_id}/files"
        data = self._get_json(url, mod_id, "files", use_cache)
        return [self._entry(raw) for raw in data.get("data") or []]

    def _entry(self, raw: Dict[str, Any]) -> VersionEntry:
        filename = raw.get("fileName") or ""
        download_url = raw.get("downloadUrl") or ""
        file_id = raw.get("id")
        if not download_url and filename and file_id:
            file_id = int(file_id)
            download_url = CURSEFORGE_CDN_TEMPLATE.format(head=file_id // 1000, tail=file_id % 1000, filename=filename)

        tags = [str(tag) for tag in raw.get("gameVersions") or []]
        required: List[Dependency] = []
        optional: List[Dependency] = []
        for dep in raw.get("dependencies") or []:
            if dep.get("modId") is None:
                continue
            dependency = Dependency(id=str(dep["modId"]))
            if dep.get("relationType") == self.RELATION_REQUIRED:
                required.append(dependency)
            elif dep.get("relationType") == self.RELATION_OPTIONAL:
                optional.append(dependency)

        return VersionEntry(
            version=raw.get("displayName") or filename,
            download_url=download_url,
            filename=filename,
            filenames=[filename] if filename else [],
            game_versions=[tag for tag in tags if is_game_version(tag)],
            loaders=[tag for tag in tags if not is_game_version(tag)],
            required=required,
            optional=optional,
        )

    def _pick_latest(self, project: ProjectInfo, entries: List[VersionEntry]) -> tuple[Optional[VersionEntry], str]:
        # files arrive newest first
        entry = entries[0]
        return entry, newest_game_version(entry.game_versions)

    def _available_game_versions(self, project: ProjectInfo, entries: List[VersionEntry]) -> List[str]:
        collected: List[str] = []
        for entry in entries:
            collected.extend(entry.game_versions)
        return sorted_game_versions(collected)


_PROVIDER_TYPES: Dict[str, type] = {}


def register_provider(host: Host, provider_type: type) -> None:
    _PROVIDER_TYPES[host.value] = provider_type


def build_providers(cfg: ModmanConfig, fetch_json: Optional[JsonFetcher] = None) -> Dict[str, ProviderAdapter]:
    return {host: provider_type(cfg, fetch_json) for host, provider_type in _PROVIDER_TYPES.items()}


register_provider(Host.MODRINTH, ModrinthProvider)
register_provider(Host.CURSEFORGE, CurseForgeProvider)


def fetch_game_versions(
    cfg: ModmanConfig,
    fetch_json: Optional[JsonFetcher] = None,
    *,
    release_only: bool = True,
) -> List[str]:
    """Game versions from the Mojang manifest, newest first."""

    fetch_json = fetch_json or default_fetcher(cfg)
    manifest = fetch_json(cfg.mojang_manifest_url, {"User-Agent": cfg.api_user_agent})
    versions = manifest.get("versions") or []
    return [
        entry["id"]
        for entry in versions
        if entry.get("id") and (not release_only or entry.get("type") == "release")
    ]


def resolve_server_jar_url(cfg: ModmanConfig, game_version: str, fetch_json: Optional[JsonFetcher] = None) -> str:
    """Vanilla server jar URL for ``game_version``, via the Mojang manifest."""

    fetch_json = fetch_json or default_fetcher(cfg)
    headers = {"User-Agent": cfg.api_user_agent}
    manifest = fetch_json(cfg.mojang_manifest_url, headers)
    for entry in manifest.get("versions") or []:
        if entry.get("id") == game_version:
            details = fetch_json(entry["url"], headers)
            server = (details.get("downloads") or {}).get("server") or {}
            if server.get("url"):
                return server["url"]
            break
    raise ProviderError(f"No server download found for Minecraft {game_version}")
