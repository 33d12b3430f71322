from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

_NON_VERSION_CHARS = re.compile(r"[^0-9a-zA-Z]")
_GAME_VERSION = re.compile(r"^\d+(?:\.\d+)+$")


def normalize_version(value: Optional[str]) -> str:
    """Canonical form used to compare version strings from different hosts.

    Equality only: "1.21.5+build.3" and "1.21.5+BUILD.3" both become
    "1215build3". Delimiters are dropped, so "1.2.3" and "12.3" collide.
    """
    if not value:
        return ""
    return _NON_VERSION_CHARS.sub("", value.strip()).lower()


def versions_match(left: Optional[str], right: Optional[str]) -> bool:
    normalized = normalize_version(left)
    return bool(normalized) and normalized == normalize_version(right)


def is_game_version(value: Optional[str]) -> bool:
    return bool(value) and _GAME_VERSION.match(value.strip()) is not None


def game_version_key(value: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in value.strip().split("."))


def sorted_game_versions(values: Iterable[str]) -> List[str]:
    """Dotted-numeric game versions only, de-duplicated, oldest first."""
    seen = {value.strip() for value in values if is_game_version(value)}
    return sorted(seen, key=game_version_key)


def newest_game_version(values: Iterable[str]) -> str:
    ordered = sorted_game_versions(values)
    return ordered[-1] if ordered else ""


def split_game_versions(cell: Optional[str]) -> List[str]:
    if not cell:
        return []
    return [part.strip() for part in cell.split(",") if part.strip()]


def join_game_versions(values: Iterable[str]) -> str:
    result: List[str] = []
    for value in values:
        value = (value or "").strip()
        if value and value not in result:
            result.append(value)
    return ",".join(result)


@dataclass
class GameVersionStep:
    latest_game_version: str
    newer: List[str] = field(default_factory=list)
    anchored: bool = True


def next_game_version(current: Optional[str], available: Iterable[str]) -> GameVersionStep:
    """Advance one game version past ``current``.

    ``anchored`` is False when ``current`` is not in the available list, in
    which case the oldest available version is used as the anchor.
    """
    ordered = sorted_game_versions(available)
    current = (current or "").strip()
    if not ordered:
        return GameVersionStep(latest_game_version=current, newer=[], anchored=False)

    anchored = current in ordered
    index = ordered.index(current) if anchored else 0
    latest = ordered[index + 1] if index + 1 < len(ordered) else ordered[index]
    latest_key = game_version_key(latest)
    newer = [value for value in ordered if game_version_key(value) > latest_key]
    return GameVersionStep(latest_game_version=latest, newer=newer, anchored=anchored)
