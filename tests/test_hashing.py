"""
Unit tests for modman/hashing.py: stable content hash over a record.
"""

import hashlib

from modman.hashing import FIELD_SEPARATOR, record_hash, stamp_record_hash, verify_record_hash
from modman.records import COLUMNS, ModRecord


def _record(**overrides):
    values = dict(id="sodium", type="mod", loader="fabric", current_version="mc1.21.1-0.5.11", host="modrinth")
    values.update(overrides)
    return ModRecord(**values)


class TestRecordHash:
    def test_matches_documented_algorithm(self):
        parts = sorted([f"{name}=" for name in COLUMNS if name != "RecordHash"] + ["A=1", "B=2"])
        expected = hashlib.sha256(FIELD_SEPARATOR.join(parts).encode("utf-8")).hexdigest()
        assert record_hash({"B": "2", "A": "1"}) == expected

    def test_field_order_does_not_matter(self):
        left = {"ID": "sodium", "Type": "mod", "Loader": "fabric"}
        right = {"Loader": "fabric", "ID": "sodium", "Type": "mod"}
        assert record_hash(left) == record_hash(right)

    def test_lowercase_hex_sha256(self):
        digest = record_hash(_record())
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_hash_column_is_excluded(self):
        assert record_hash(_record(record_hash="")) == record_hash(_record(record_hash="deadbeef"))

    def test_any_field_change_changes_hash(self):
        base = record_hash(_record())
        assert record_hash(_record(current_version="mc1.21.1-0.5.12")) != base
        assert record_hash(_record(title="Sodium")) != base
        assert record_hash(_record(next_game_version="1.21.2")) != base

    def test_missing_values_render_empty(self):
        assert record_hash({"ID": "x", "Title": None}) == record_hash({"ID": "x", "Title": ""})

    def test_empty_extra_column_matches_absent_column(self):
        in_memory = _record()
        reloaded = ModRecord.from_row({**_record().to_row(), "Notes": ""})
        assert record_hash(reloaded) == record_hash(in_memory)

    def test_filled_extra_column_counts(self):
        noted = ModRecord.from_row({**_record().to_row(), "Notes": "client only"})
        assert record_hash(noted) != record_hash(_record())

    def test_mapping_and_record_agree(self):
        record = _record()
        sparse = {"ID": "sodium", "Type": "mod", "Loader": "fabric", "CurrentVersion": "mc1.21.1-0.5.11", "Host": "modrinth"}
        assert record_hash(record.to_row()) == record_hash(sparse)


class TestVerify:
    def test_true_right_after_stamping(self):
        record = _record()
        assert stamp_record_hash(record) is True
        assert verify_record_hash(record) is True

    def test_false_after_edit(self):
        record = _record()
        stamp_record_hash(record)
        record.current_version = "something-else"
        assert verify_record_hash(record) is False

    def test_no_stored_hash_is_unvalidated(self):
        assert verify_record_hash(_record()) is False

    def test_stamp_is_noop_when_current(self):
        record = _record()
        stamp_record_hash(record)
        assert stamp_record_hash(record) is False
