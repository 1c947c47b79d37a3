"""Tests for YAML settings loading."""

from __future__ import annotations

import pytest
import yaml

from newsdesk.config import Settings, load_settings
from newsdesk.errors import ConfigError


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.api.page_size == 12
        assert settings.download.storage_ceiling_percent == 80.0

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_settings(str(path)) == Settings()

    def test_sections_override_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "api": {"language": "ja", "page_size": 20},
            "storage": {"db_path": "x.db", "retention_days": 7},
            "download": {"auto_pages": 1},
        }))
        settings = load_settings(str(path))
        assert settings.api.language == "ja"
        assert settings.api.page_size == 20
        assert settings.storage.db_path == "x.db"
        assert settings.storage.retention_days == 7
        assert settings.download.auto_pages == 1
        assert settings.download.manual_max_pages == 20

    def test_env_reference_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NEWSDESK_TEST_KEY", "abc123")
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  api_key: ${NEWSDESK_TEST_KEY}\n")
        assert load_settings(str(path)).api.api_key == "abc123"

    def test_unset_env_reference_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NEWSDESK_UNSET_KEY", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("api:\n  api_key: ${NEWSDESK_UNSET_KEY}\n")
        assert load_settings(str(path)).api.api_key == ""

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("api: [unclosed\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            load_settings(str(path))

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"storage": {"bogus": 1}}))
        with pytest.raises(ConfigError):
            load_settings(str(path))
