"""
Unit tests for modman/schema.py: column backfill, legacy migration and
rollback on failure.
"""

import pytest

import modman.schema as schema
from modman.records import COLUMNS
from modman.schema import (
    SchemaError,
    SchemaMigrationError,
    SchemaState,
    SchemaStructureError,
    Table,
    detect_schema,
    ensure_columns,
    ensure_columns_file,
    migrate_schema,
    read_table,
)

from conftest import read_csv, write_csv

LEGACY_COLUMNS = ["Group", "Type", "GameVersion", "ID", "Loader", "Version", "Name", "Jar", "Url", "VersionUrl"]


def _legacy_rows():
    return [
        {"Group": "required", "Type": "mod", "GameVersion": "1.21.1", "ID": "sodium", "Loader": "fabric",
         "Version": "mc1.21.1-0.5.11", "Name": "Sodium", "Jar": "sodium.jar", "Url": "https://modrinth.com/mod/sodium",
         "VersionUrl": "https://cdn.modrinth.com/sodium.jar"},
        {"Group": "optional", "Type": "mod", "GameVersion": "1.21.1", "ID": "238222", "Loader": "fabric",
         "Version": "15.1.0", "Name": "JEI", "Jar": "", "Url": "", "VersionUrl": ""},
        {"Group": "system", "Type": "installer", "GameVersion": "1.21.1", "ID": "fabric-installer", "Loader": "",
         "Version": "1.0.1", "Name": "Fabric Installer", "Jar": "", "Url": "", "VersionUrl": ""},
    ]


class TestDetectSchema:
    def test_states(self):
        assert detect_schema([]) is SchemaState.CURRENT
        assert detect_schema(list(COLUMNS)) is SchemaState.CURRENT
        assert detect_schema(LEGACY_COLUMNS) is SchemaState.LEGACY
        assert detect_schema(["Name", "Version"]) is SchemaState.UNKNOWN
        assert detect_schema(["ID", "Name"]) is SchemaState.UNKNOWN


class TestEnsureColumns:
    def test_adds_missing_columns_with_defaults(self):
        table = Table(columns=["ID", "Type", "CurrentVersion"], rows=[{"ID": "238222", "Type": "mod", "CurrentVersion": "1"}])
        updated, added = ensure_columns(table, "1.21.5")
        assert set(COLUMNS) <= set(updated.columns)
        assert "NextVersion" in added
        row = updated.rows[0]
        assert row["CurrentGameVersion"] == "1.21.5"
        assert row["Host"] == "curseforge"
        assert row["NextVersion"] == ""

    def test_input_table_is_not_mutated(self):
        table = Table(columns=["ID"], rows=[{"ID": "sodium"}])
        ensure_columns(table)
        assert table.columns == ["ID"]
        assert table.rows == [{"ID": "sodium"}]

    def test_idempotent(self):
        first, _ = ensure_columns(Table(columns=["ID", "Type"], rows=[{"ID": "sodium", "Type": "mod"}]))
        second, added = ensure_columns(first)
        assert added == []
        assert second.columns == first.columns
        assert second.rows == first.rows

    def test_zero_rows(self):
        updated, added = ensure_columns(Table(columns=["ID"]))
        assert updated.rows == []
        assert set(COLUMNS) <= set(updated.columns)
        assert added


class TestEnsureColumnsFile:
    def test_writes_backup_only_when_something_changes(self, tmp_path):
        path = tmp_path / "modlist.csv"
        backups = tmp_path / "backups"
        write_csv(path, ["ID", "Type", "CurrentVersion"], [{"ID": "sodium", "Type": "mod", "CurrentVersion": "1"}])

        backup = ensure_columns_file(path, backup_dir=backups)
        assert backup is not None
        assert backup.exists()
        assert backup.name.startswith("modlist-columns-")
        columns, rows = read_csv(path)
        assert set(COLUMNS) <= set(columns)
        assert rows[0]["ID"] == "sodium"

        assert ensure_columns_file(path, backup_dir=backups) is None
        assert len(list(backups.glob("*.csv"))) == 1


class TestMigrateSchema:
    def test_missing_file(self, tmp_path):
        with pytest.raises(SchemaError):
            migrate_schema(tmp_path / "nope.csv")

    def test_legacy_table_is_migrated(self, tmp_path):
        path = tmp_path / "modlist.csv"
        write_csv(path, LEGACY_COLUMNS, _legacy_rows())

        result = migrate_schema(path, backup_dir=tmp_path / "backups", default_game_version="1.21.5")

        assert result.migrated is True
        assert result.backup is not None and result.backup.exists()
        assert set(result.renamed) == {"Version", "VersionUrl", "GameVersion"}
        columns, rows = read_csv(path)
        assert "Version" not in columns
        assert "GameVersion" not in columns
        for name in ("CurrentVersion", "CurrentVersionUrl", "CurrentGameVersion", "NextVersion", "NextVersionUrl", "NextGameVersion"):
            assert name in columns
        assert [row["ID"] for row in rows] == ["sodium", "238222", "fabric-installer"]
        assert rows[0]["CurrentVersion"] == "mc1.21.1-0.5.11"
        assert rows[0]["CurrentVersionUrl"] == "https://cdn.modrinth.com/sodium.jar"
        # existing values win over the default
        assert rows[0]["CurrentGameVersion"] == "1.21.1"

    def test_already_migrated_is_noop(self, tmp_path):
        path = tmp_path / "modlist.csv"
        write_csv(path, LEGACY_COLUMNS, _legacy_rows())
        migrate_schema(path, backup_dir=tmp_path / "backups")
        before = path.read_bytes()

        result = migrate_schema(path, backup_dir=tmp_path / "backups")

        assert result.migrated is False
        assert path.read_bytes() == before
        assert len(list((tmp_path / "backups").glob("*.csv"))) == 1

    def test_unknown_layout_is_left_untouched(self, tmp_path):
        path = tmp_path / "modlist.csv"
        write_csv(path, ["Name", "Version"], [{"Name": "Sodium", "Version": "1"}])
        before = path.read_bytes()

        with pytest.raises(SchemaStructureError):
            migrate_schema(path, backup_dir=tmp_path / "backups")

        assert path.read_bytes() == before
        assert not (tmp_path / "backups").exists()

    def test_failure_restores_backup(self, tmp_path, monkeypatch):
        path = tmp_path / "modlist.csv"
        write_csv(path, LEGACY_COLUMNS, _legacy_rows())
        before = path.read_bytes()

        def broken_write(target, table):
            target.write_text("half,written\n", encoding="utf-8")
            raise OSError("disk full")

        monkeypatch.setattr(schema, "write_table", broken_write)

        with pytest.raises(SchemaMigrationError):
            migrate_schema(path, backup_dir=tmp_path / "backups")

        assert path.read_bytes() == before
        assert read_table(path).columns == LEGACY_COLUMNS
