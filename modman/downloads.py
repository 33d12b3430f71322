from __future__ import annotations

import logging
import shutil
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .config import ModmanConfig
from .database import filename_from_url
from .providers import ProviderError, resolve_server_jar_url
from .records import Host, ModRecord, RecordType

logger = logging.getLogger(__name__)

STAGES = ("current", "next", "latest")

TYPE_FOLDERS: Dict[str, str] = {
    RecordType.MOD.value: "mods",
    RecordType.SHADERPACK.value: "shaderpacks",
    RecordType.DATAPACK.value: "datapacks",
    RecordType.MODPACK.value: "modpacks",
    RecordType.INSTALLER.value: "installer",
    RecordType.LAUNCHER.value: "launcher",
    RecordType.SERVER.value: "",
    RecordType.JDK.value: "jdk",
}

Downloader = Callable[[str, Path, Optional[Dict[str, str]]], None]


class DownloadError(RuntimeError):
    pass


@dataclass
class DownloadSummary:
    downloaded: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def download_file(url: str, dest: Path, headers: Optional[Dict[str, str]] = None) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    request = urllib.request.Request(url)
    if headers:
        for key, value in headers.items():
            if value is not None:
                request.add_header(key, value)
    partial = dest.with_name(f"{dest.name}.part")
    try:
        with urllib.request.urlopen(request) as response, partial.open("wb") as handle:
            shutil.copyfileobj(response, handle)
    except urllib.error.URLError as exc:  # pragma: no cover - network dependent
        partial.unlink(missing_ok=True)
        raise DownloadError(f"Failed to download {url}: {exc}") from exc
    partial.replace(dest)


def stage_source(record: ModRecord, stage: str) -> tuple[str, str]:
    """``(url, game_version)`` of ``record`` for a download stage."""
    url = getattr(record, f"{stage}_version_url")
    game_version = getattr(record, f"{stage}_game_version") or record.current_game_version
    if not url and record.effective_host == Host.DIRECT.value:
        url = record.url_direct
    return url, game_version


def destination_for(cfg: ModmanConfig, record: ModRecord, game_version: str, url: str, stage: str) -> Path:
    folder = cfg.download_dir / game_version
    subfolder = TYPE_FOLDERS.get(record.type.strip().lower(), "mods")
    if subfolder:
        folder = folder / subfolder
    filename = record.jar if stage == "current" and record.jar else ""
    if not filename:
        filename = filename_from_url(url)
    return folder / filename


def download_records(
    records: Iterable[ModRecord],
    cfg: ModmanConfig,
    *,
    stage: str = "current",
    downloader: Optional[Downloader] = None,
) -> DownloadSummary:
    """Fetch each record's ``stage`` artifact into ``download/{game_version}/{type folder}/``."""

    if stage not in STAGES:
        raise DownloadError(f"Unknown stage '{stage}'; expected one of {', '.join(STAGES)}")
    downloader = downloader or download_file
    headers = {"User-Agent": cfg.api_user_agent}
    summary = DownloadSummary()
    for record in records:
        try:
            url, game_version = stage_source(record, stage)
            if not url and record.type.strip().lower() == RecordType.SERVER.value and game_version:
                url = resolve_server_jar_url(cfg, game_version)
            if not url or not game_version:
                logger.debug("Nothing to download for %s (%s)", record.id, stage)
                continue
            dest = destination_for(cfg, record, game_version, url, stage)
            if dest.exists():
                summary.skipped.append(dest)
                continue
            logger.info("Downloading %s -> %s", record.label(), dest)
            downloader(url, dest, headers)
            summary.downloaded.append(dest)
        except (DownloadError, ProviderError, OSError) as exc:
            logger.warning("Download of %s failed: %s", record.id, exc)
            summary.failed[record.id] = str(exc)
    return summary
