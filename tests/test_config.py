"""Unit tests for statedocs.engine.config — statedocs.yaml loading."""

import pytest

from statedocs.engine.config import (
    LocksConfig,
    StateDocsConfig,
    get_config,
    load_config,
)
from statedocs.engine.errors import StateDocsConfigError


class TestDefaults:

    def test_defaults(self):
        cfg = StateDocsConfig()
        assert cfg.locks.collection_name == "__locks__"
        assert cfg.locks.timeout_seconds == 3600
        assert cfg.users.collection_name == "__users__"
        assert cfg.pagination.default_per_page == 100
        assert cfg.pagination.max_per_page == 1000
        assert cfg.logging.enabled is False
        assert cfg.logging.level == "INFO"

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            LocksConfig(timeout_seconds=0)

    def test_level_normalized(self):
        cfg = StateDocsConfig(logging={"level": "debug"})
        assert cfg.logging.level == "DEBUG"

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            StateDocsConfig(logging={"level": "chatty"})


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = load_config()
        assert cfg == StateDocsConfig()

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "statedocs.yaml"
        path.write_text(
            "locks:\n"
            "  collection_name: edit_locks\n"
            "  timeout_seconds: 60\n"
            "pagination:\n"
            "  default_per_page: 20\n",
            encoding="utf-8",
        )
        cfg = load_config(str(path))
        assert cfg.locks.collection_name == "edit_locks"
        assert cfg.locks.timeout_seconds == 60
        assert cfg.pagination.default_per_page == 20
        assert cfg.users.collection_name == "__users__"

    def test_wrapped_under_statedocs_key(self, tmp_path):
        path = tmp_path / "statedocs.yaml"
        path.write_text("statedocs:\n  users:\n    collection_name: people\n", encoding="utf-8")
        assert load_config(str(path)).users.collection_name == "people"

    def test_discovered_from_parent_directory(self, tmp_path, monkeypatch):
        (tmp_path / "statedocs.yaml").write_text("locks:\n  timeout_seconds: 5\n", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        assert load_config().locks.timeout_seconds == 5

    def test_invalid_raises_config_error(self, tmp_path):
        path = tmp_path / "statedocs.yaml"
        path.write_text("locks:\n  timeout_seconds: -1\n", encoding="utf-8")
        with pytest.raises(StateDocsConfigError) as exc:
            load_config(str(path))
        assert exc.value.context["config_path"] == str(path)

    def test_get_config_caches(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert get_config() is get_config()
