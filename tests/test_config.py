from __future__ import annotations

from pathlib import Path

import pytest

from feed_relay.config import load_config


_ENV = (
    "FEED_RELAY_CONFIG",
    "LOG_LEVEL",
    "FEED_RELAY_DB_PATH",
    "DISCORD_TOKEN",
    "GITHUB_TOKEN",
    "GITHUB_ADDITIONAL_TOKENS",
    "GITHUB_APP_ID",
    "GITHUB_APP_PRIVATE_KEY",
    "GITHUB_APP_PRIVATE_KEY_B64",
    "GITHUB_APP_PRIVATE_KEY_PATH",
    "GITHUB_WEBHOOK_SECRET",
    "STATUS_WEBHOOK_PUBLIC_KEY",
    "FEED_RELAY_ADMIN_TOKEN",
    "FEED_RELAY_HOST",
    "FEED_RELAY_PORT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file(tmp_path: Path) -> None:
    cfg = load_config(str(tmp_path / "missing.yaml"))
    assert cfg.gates.status_silence_threshold == 3600
    assert cfg.gates.comment_max_empty_polls == 2
    assert cfg.previews.owner == "Discord-Datamining"
    assert cfg.webhooks.port == 8080


def test_yaml_then_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "relay.yaml"
    path.write_text(
        "db_path: /var/lib/relay.db\n"
        "gates:\n  status_silence_threshold: 120\n"
        "previews:\n  tokens: [ghp_file]\n"
        "webhooks:\n  port: 9000\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("FEED_RELAY_PORT", "9100")
    monkeypatch.setenv("DISCORD_TOKEN", "bot-abc")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")
    monkeypatch.setenv("GITHUB_ADDITIONAL_TOKENS", "ghp_x, ghp_file ,")

    cfg = load_config(str(path))
    assert cfg.db_path == "/var/lib/relay.db"
    assert cfg.gates.status_silence_threshold == 120
    assert cfg.webhooks.port == 9100
    assert cfg.chat.bot_token == "bot-abc"
    assert cfg.previews.tokens == ["ghp_file", "ghp_env", "ghp_x"]


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "other.yaml"
    path.write_text("log_level: DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("FEED_RELAY_CONFIG", str(path))
    assert load_config().log_level == "DEBUG"


def test_non_mapping_file_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))
