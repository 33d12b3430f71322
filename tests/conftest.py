"""
Shared fixtures: an isolated configuration, a fake JSON fetcher keyed by URL
and upstream payload builders for Modrinth and CurseForge.
"""

import copy
import csv
from pathlib import Path

import pytest

from modman.config import default_config
from modman.providers import CurseForgeProvider, ModrinthProvider, ProjectNotFoundError

MODRINTH = "https://api.modrinth.com/v2"
CURSEFORGE = "https://api.curseforge.com/v1"


class FakeFetcher:
    """Stands in for the HTTP layer; unknown URLs behave like a 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, url, headers):
        self.calls.append(url)
        if url not in self.responses:
            raise ProjectNotFoundError(f"Not found: {url}")
        value = self.responses[url]
        if isinstance(value, Exception):
            raise value
        return copy.deepcopy(value)


def modrinth_version(version, game_versions, loaders=("fabric",), filename=None, url=True, dependencies=()):
    filename = filename or f"{version}.jar"
    file_entry = {"filename": filename, "primary": True}
    if url:
        file_entry["url"] = f"https://cdn.modrinth.com/data/AANobbMI/versions/v-{version}/{filename}"
    return {
        "id": f"v-{version}",
        "project_id": "AANobbMI",
        "version_number": version,
        "game_versions": list(game_versions),
        "loaders": list(loaders),
        "files": [file_entry],
        "dependencies": [
            {"project_id": dep_id, "version_id": None, "dependency_type": dep_type}
            for dep_id, dep_type in dependencies
        ],
    }


def modrinth_project(slug="sodium", game_versions=("1.20.1", "1.21.1", "1.21.2")):
    return {
        "id": "AANobbMI",
        "slug": slug,
        "project_type": "mod",
        "title": "Sodium",
        "description": "A modern rendering engine",
        "icon_url": "https://cdn.modrinth.com/data/AANobbMI/icon.png",
        "client_side": "required",
        "server_side": "unsupported",
        "issues_url": "https://github.com/CaffeineMC/sodium/issues",
        "source_url": "https://github.com/CaffeineMC/sodium",
        "wiki_url": None,
        "game_versions": list(game_versions),
    }


def sodium_versions():
    # newest first, as Modrinth returns them
    return [
        modrinth_version("mc1.21.2-0.6.0", ["1.21.2"], dependencies=[("P7dR8mSH", "required")]),
        modrinth_version("mc1.21.1-0.5.11-neoforge", ["1.21.1"], loaders=["neoforge"]),
        modrinth_version("mc1.21.1-0.5.11", ["1.21.1"], dependencies=[("YL57xq9U", "optional")]),
        modrinth_version("mc1.20.1-0.5.8", ["1.20.1"], filename="sodium-fabric-0.5.8+mc1.20.1.jar"),
    ]


def modrinth_responses(slug="sodium", project=None, versions=None):
    return {
        f"{MODRINTH}/project/{slug}": project if project is not None else modrinth_project(slug),
        f"{MODRINTH}/project/{slug}/version": versions if versions is not None else sodium_versions(),
    }


def curseforge_file(file_id, display_name, file_name, game_versions, download_url=True, dependencies=()):
    return {
        "id": file_id,
        "displayName": display_name,
        "fileName": file_name,
        "downloadUrl": f"https://edge.forgecdn.net/files/{file_id // 1000}/{file_id % 1000}/{file_name}"
        if download_url
        else None,
        "gameVersions": list(game_versions),
        "dependencies": [{"modId": mod_id, "relationType": relation} for mod_id, relation in dependencies],
    }


def curseforge_responses(mod_id="324717", files=None):
    if files is None:
        files = [
            curseforge_file(5002001, "Jade 15.2.0", "Jade-1.21.2-fabric-15.2.0.jar", ["1.21.2", "Fabric", "Client"], dependencies=[(306612, 3)]),
            curseforge_file(5001001, "Jade 15.1.0 Forge", "Jade-1.21.1-forge-15.1.0.jar", ["1.21.1", "Forge"]),
            curseforge_file(5000001, "Jade 15.1.0", "Jade-1.21.1-fabric-15.1.0.jar", ["1.21.1", "Fabric"], dependencies=[(238222, 2)]),
        ]
    return {
        f"{CURSEFORGE}/mods/{mod_id}": {
            "data": {
                "id": int(mod_id),
                "name": "Jade",
                "summary": "Shows what you are looking at",
                "logo": {"url": "https://media.forgecdn.net/avatars/jade.png"},
                "links": {
                    "websiteUrl": "https://www.curseforge.com/minecraft/mc-mods/jade",
                    "issuesUrl": "https://github.com/Snownee/Jade/issues",
                    "sourceUrl": "https://github.com/Snownee/Jade",
                    "wikiUrl": "",
                },
            }
        },
        f"{CURSEFORGE}/mods/{mod_id}/files": {"data": files},
    }


def write_csv(path: Path, columns, rows):
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(columns), restval="")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def read_csv(path: Path):
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        return list(reader.fieldnames or []), list(reader)


@pytest.fixture
def cfg(tmp_path):
    return default_config(tmp_path, curseforge_api_key="test-key", max_retries=0, retry_backoff=0.0)


@pytest.fixture
def make_providers(cfg):
    """Build the provider map around one FakeFetcher."""

    def _make(responses=None):
        fetcher = FakeFetcher(responses)
        providers = {
            "modrinth": ModrinthProvider(cfg, fetcher),
            "curseforge": CurseForgeProvider(cfg, fetcher),
        }
        return providers, fetcher

    return _make
