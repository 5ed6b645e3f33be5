"""Tests for settings loading and storage path resolution."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from roomwire.config import ChatSettings, get_config, load_config, set_config


def test_missing_files_yield_defaults(tmp_path):
    """Absent settings and secrets files fall back to model defaults."""
    cfg = load_config(settings_path=tmp_path / "roomwire.settings.yaml")
    assert cfg.auth.verifier == "jwt"
    assert cfg.chat.outbound_queue_size == 256
    assert cfg.chat.typing_timeout_seconds == 5.0
    assert cfg.history.retention_days == 30
    assert cfg.secrets.jwt.algorithm == "HS256"


def test_settings_and_secrets_are_merged(tmp_path):
    """Secrets come from the sibling secrets file."""
    settings_file = tmp_path / "roomwire.settings.yaml"
    settings_file.write_text(
        "auth:\n"
        "  verifier: http\n"
        "  identity_url: http://cms.local/api/users/me\n"
        "chat:\n"
        "  outbound_queue_size: 32\n",
        encoding="utf-8",
    )
    (tmp_path / "roomwire.secrets.yaml").write_text(
        "jwt:\n"
        "  secret_key: from-the-secrets-file\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.auth.verifier == "http"
    assert cfg.auth.identity_url == "http://cms.local/api/users/me"
    assert cfg.chat.outbound_queue_size == 32
    assert cfg.secrets.jwt.secret_key == "from-the-secrets-file"


def test_paths_relative_to_project_root_when_settings_in_config_dir(tmp_path):
    """Relative storage paths resolve from project root for ./config layout."""
    project_root = tmp_path / "project"
    config_dir = project_root / "config"
    config_dir.mkdir(parents=True)

    settings_file = config_dir / "roomwire.settings.yaml"
    settings_file.write_text(
        "history:\n"
        "  db_path: data/chat.duckdb\n"
        "files:\n"
        "  upload_dir: data/uploads\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.history.db_path) == project_root.resolve() / "data" / "chat.duckdb"
    assert Path(cfg.files.upload_dir) == project_root.resolve() / "data" / "uploads"


def test_paths_relative_to_settings_dir_otherwise(tmp_path):
    settings_file = tmp_path / "roomwire.settings.yaml"
    settings_file.write_text("history:\n  db_path: local/chat.duckdb\n", encoding="utf-8")

    cfg = load_config(settings_path=settings_file)
    assert Path(cfg.history.db_path) == tmp_path.resolve() / "local" / "chat.duckdb"


def test_in_memory_and_absolute_paths_unchanged(tmp_path):
    absolute = tmp_path / "abs" / "files.duckdb"
    settings_file = tmp_path / "roomwire.settings.yaml"
    settings_file.write_text(
        "history:\n"
        "  db_path: ':memory:'\n"
        "files:\n"
        f"  db_path: {absolute}\n",
        encoding="utf-8",
    )

    cfg = load_config(settings_path=settings_file)
    assert cfg.history.db_path == ":memory:"
    assert Path(cfg.files.db_path) == absolute


def test_queue_size_must_be_positive():
    with pytest.raises(ValidationError):
        ChatSettings(outbound_queue_size=0)


def test_file_size_limit_in_bytes():
    cfg = load_config(settings_path=Path("/nonexistent/roomwire.settings.yaml"))
    assert cfg.files.max_file_size_bytes == 20 * 1024 * 1024


def test_set_config_replaces_singleton(test_config):
    assert get_config() is test_config
    set_config(None)
    set_config(test_config)
    assert get_config() is test_config
