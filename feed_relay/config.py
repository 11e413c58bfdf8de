"""Configuration for the relay service."""

from __future__ import annotations

import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _env_csv(name: str) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return []
    return [part.strip() for part in str(raw).split(",") if part.strip()]


class GateTimingConfig(BaseModel):
    """Timers of the two delivery-mode gates, in seconds."""
    comment_poll_interval: float = Field(default=15, description="Comment feed poll cadence")
    comment_recheck_interval: float = Field(default=10 * 60, description="Push integration re-probe cadence")
    comment_temporary_max: float = Field(default=15 * 60, description="Safety cap on temporary comment polling")
    comment_max_empty_polls: int = Field(default=2, description="Empty polls that end temporary polling")
    status_poll_interval: float = Field(default=60, description="Status feed poll cadence")
    status_health_interval: float = Field(default=60, description="Webhook silence check cadence")
    status_silence_threshold: float = Field(default=60 * 60, description="Silence before falling back to polling")
    status_temporary_max: float = Field(default=15 * 60, description="Safety cap on temporary status polling")


class StatusFeedConfig(BaseModel):
    base_url: str = Field(default="https://discordstatus.com", description="Statuspage host")
    timeout_seconds: float = Field(default=15.0, description="Per-request timeout")
    max_retries: int = Field(default=3, description="Attempts per request on 5xx or network errors")
    retry_delay_seconds: float = Field(default=1.5, description="Linear backoff step")
    page_limit: int = Field(default=25, description="Max pages fetched for history")


class PreviewsFeedConfig(BaseModel):
    api_base_url: str = Field(default="https://api.github.com", description="GitHub API root")
    owner: str = Field(default="Discord-Datamining", description="Monitored repository owner")
    repo: str = Field(default="Discord-Datamining", description="Monitored repository name")
    tokens: list[str] = Field(default_factory=list, description="Personal access tokens for the pool")
    app_id: Optional[str] = Field(default=None, description="GitHub App id for the installation probe")
    app_private_key: Optional[str] = Field(default=None, description="GitHub App key (PEM, escaped PEM or base64)")
    app_private_key_path: Optional[str] = Field(default=None, description="Path to the GitHub App key")
    commits_depth: int = Field(default=75, description="Recent commits walked per pass")
    max_event_pages: int = Field(default=5, description="Event log pages walked per pass")
    bootstrap_event_pages: int = Field(default=3, description="Event log pages scanned on bootstrap")
    bootstrap_commits_depth: int = Field(default=100, description="Commits scanned on bootstrap")
    timeout_seconds: float = Field(default=20.0, description="Per-request timeout")
    max_retries: int = Field(default=3, description="Attempts per request")
    retry_delay_seconds: float = Field(default=1.0, description="Linear backoff step")


class ChatConfig(BaseModel):
    api_base_url: str = Field(default="https://discord.com/api/v10", description="Chat REST root")
    bot_token: str = Field(default="", description="Bot token")
    timeout_seconds: float = Field(default=15.0, description="Per-request timeout")
    orphan_cleanup_interval: float = Field(default=10 * 60, description="Orphaned subscription sweep cadence")
    crosspost_retry_interval: float = Field(default=60, description="Rate-limited crosspost retry cadence")
    crosspost_cooldown: float = Field(default=10 * 60, description="Cooldown after a publish rate limit")


class WebhookConfig(BaseModel):
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="Bind port")
    github_secret: str = Field(default="", description="HMAC secret for GitHub deliveries")
    status_public_key: str = Field(default="", description="Hex Ed25519 key for status deliveries")
    admin_token: str = Field(default="", description="Bearer token for admin endpoints")


class RelayConfig(BaseModel):
    """Main configuration for the relay."""
    log_level: str = Field(default="INFO", description="Logging level")
    db_path: str = Field(default="data/feed-relay.db", description="sqlite database path")
    status: StatusFeedConfig = Field(default_factory=StatusFeedConfig)
    previews: PreviewsFeedConfig = Field(default_factory=PreviewsFeedConfig)
    gates: GateTimingConfig = Field(default_factory=GateTimingConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)


def _set_nested(data: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = data
    for p in parts[:-1]:
        child = node.get(p)
        if not isinstance(child, dict):
            child = {}
            node[p] = child
        node = child
    node[parts[-1]] = value


def load_config(config_path: Optional[str] = None) -> RelayConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("FEED_RELAY_CONFIG", "config/feed-relay.yaml")

    config_data: dict[str, Any] = {}
    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        config_data = loaded

    env_overrides: dict[str, Any] = {
        "log_level": os.getenv("LOG_LEVEL"),
        "db_path": os.getenv("FEED_RELAY_DB_PATH"),
        "chat.bot_token": os.getenv("DISCORD_TOKEN"),
        "previews.app_id": os.getenv("GITHUB_APP_ID"),
        "previews.app_private_key": os.getenv("GITHUB_APP_PRIVATE_KEY_B64") or os.getenv("GITHUB_APP_PRIVATE_KEY"),
        "previews.app_private_key_path": os.getenv("GITHUB_APP_PRIVATE_KEY_PATH"),
        "webhooks.github_secret": os.getenv("GITHUB_WEBHOOK_SECRET"),
        "webhooks.status_public_key": os.getenv("STATUS_WEBHOOK_PUBLIC_KEY"),
        "webhooks.admin_token": os.getenv("FEED_RELAY_ADMIN_TOKEN"),
        "webhooks.host": os.getenv("FEED_RELAY_HOST"),
        "webhooks.port": _env_int("FEED_RELAY_PORT", None),
    }
    for key, value in env_overrides.items():
        if value is not None and value != "":
            _set_nested(config_data, key, value)

    tokens = [t for t in [os.getenv("GITHUB_TOKEN", "").strip()] if t] + _env_csv("GITHUB_ADDITIONAL_TOKENS")
    if tokens:
        previews = config_data.setdefault("previews", {})
        existing = [str(t) for t in previews.get("tokens") or []]
        previews["tokens"] = existing + [t for t in tokens if t not in existing]

    return RelayConfig(**config_data)
