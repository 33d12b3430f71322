"""
Tests for modman/config.py: defaults, .modman.json and environment overrides.
"""

import json

import pytest

from modman.config import DEFAULT_GAME_VERSION, ConfigError, load_config

ENV_VARS = (
    "CURSEFORGE_API_KEY",
    "MODMAN_CURSEFORGE_API_KEY",
    "MODMAN_DATABASE",
    "MODMAN_DEFAULT_GAME_VERSION",
    "MODMAN_DEFAULT_LOADER",
    "MODMAN_MAX_RETRIES",
    "MODMAN_RCON_PASSWORD",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        cfg = load_config(tmp_path)
        root = tmp_path.resolve()
        assert cfg.root == root
        assert cfg.database == root / "modlist.csv"
        assert cfg.download_dir == root / "download"
        assert cfg.api_cache_dir == root / "apiresponse"
        assert cfg.backup_dir == root / "backups"
        assert cfg.default_loader == "fabric"
        assert cfg.default_game_version == DEFAULT_GAME_VERSION
        assert cfg.curseforge_api_key is None
        assert cfg.max_retries == 3

    def test_file_values(self, tmp_path):
        (tmp_path / ".modman.json").write_text(
            json.dumps(
                {
                    "database": "lists/mods.csv",
                    "default_loader": "quilt",
                    "max_retries": 5,
                    "curseforge_api_key": "from-file",
                    "rcon": {"port": 25580, "password": "secret"},
                }
            )
        )
        cfg = load_config(tmp_path)
        assert cfg.database == tmp_path.resolve() / "lists" / "mods.csv"
        assert cfg.default_loader == "quilt"
        assert cfg.max_retries == 5
        assert cfg.curseforge_api_key == "from-file"
        assert cfg.rcon.port == 25580
        assert cfg.rcon.password == "secret"

    def test_environment_wins_over_file(self, tmp_path, monkeypatch):
        (tmp_path / ".modman.json").write_text(json.dumps({"default_game_version": "1.20.1", "curseforge_api_key": "from-file"}))
        monkeypatch.setenv("MODMAN_DEFAULT_GAME_VERSION", "1.21.4")
        monkeypatch.setenv("CURSEFORGE_API_KEY", "from-env")
        monkeypatch.setenv("MODMAN_RCON_PASSWORD", "env-pw")

        cfg = load_config(tmp_path)

        assert cfg.default_game_version == "1.21.4"
        assert cfg.curseforge_api_key == "from-env"
        assert cfg.rcon.password == "env-pw"

    def test_invalid_json(self, tmp_path):
        (tmp_path / ".modman.json").write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(tmp_path)
