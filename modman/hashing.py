from __future__ import annotations

import hashlib
from typing import Any, Dict, Mapping, Union

from .records import COLUMNS, HASH_COLUMN, ModRecord

FIELD_SEPARATOR = "\x1f"

RecordLike = Union[ModRecord, Mapping[str, Any]]


def _fields(record: RecordLike) -> Mapping[str, Any]:
    if isinstance(record, ModRecord):
        return record.to_row()
    return record


def _hashed_values(record: RecordLike) -> Dict[str, Any]:
    # absent and empty columns hash the same
    fields = _fields(record)
    values: Dict[str, Any] = {name: fields.get(name) for name in COLUMNS if name != HASH_COLUMN}
    for name, value in fields.items():
        if name not in values and name != HASH_COLUMN and value not in (None, ""):
            values[name] = value
    return values


def record_hash(record: RecordLike) -> str:
    """SHA-256 over the sorted ``name=value`` pairs of every column but the hash itself."""
    parts = sorted(
        f"{name}={'' if value is None else value}" for name, value in _hashed_values(record).items()
    )
    digest = hashlib.sha256(FIELD_SEPARATOR.join(parts).encode("utf-8"))
    return digest.hexdigest()


def verify_record_hash(record: RecordLike) -> bool:
    """A record without a stored hash has never been validated and does not verify."""
    stored = _fields(record).get(HASH_COLUMN) or ""
    if not stored:
        return False
    return stored == record_hash(record)


def stamp_record_hash(record: ModRecord) -> bool:
    """Store a fresh hash on ``record``; True if the stored value changed."""
    digest = record_hash(record)
    if record.record_hash == digest:
        return False
    record.record_hash = digest
    return True
