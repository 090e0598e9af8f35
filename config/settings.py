"""
Configuration loader for the webhook relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

# Delays (seconds) between delivery attempts, indexed by the attempt just completed.
WEBHOOK_RETRY_SCHEDULE = [0, 0, 0, 0, 10 * 60, 30 * 60, 60 * 60, 6 * 60 * 60]
MESSAGE_RETRY_SCHEDULE = [0, 5, 30, 2 * 60, 10 * 60, 30 * 60, 60 * 60, 6 * 60 * 60]


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./webhook_relay.db"     # postgresql:// | sqlite://
    store_backend: str = "sql"                     # "sql" | "memory"


@dataclass
class QueueConfig:
    enabled: bool = True
    retry_schedule_seconds: list[float] = field(default_factory=lambda: list(WEBHOOK_RETRY_SCHEDULE))
    batch_size: int = 10
    poll_interval_seconds: float = 5.0
    delivery_timeout_seconds: float = 10.0


@dataclass
class ForwarderConfig:
    forwarded_by: str = "Meta-Webhook-Forwarder"
    get_timeout_seconds: float = 30.0
    directory_refresh_seconds: float = 60.0


@dataclass
class ChatwootConfig:
    base_url: str = ""
    api_token: str = ""
    account_id: int = 1
    inbox_id: int = 1
    default_contact_name: str = "Desconhecido"


@dataclass
class SecurityConfig:
    verify_token: str = ""                         # Meta hub.verify_token and API token


@dataclass
class Settings:
    app_name: str = "WebhookRelay"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    webhook_queue: QueueConfig = field(default_factory=QueueConfig)
    message_queue: QueueConfig = field(default_factory=lambda: QueueConfig(
        retry_schedule_seconds=list(MESSAGE_RETRY_SCHEDULE),
    ))
    forwarder: ForwarderConfig = field(default_factory=ForwarderConfig)
    chatwoot: ChatwootConfig = field(default_factory=ChatwootConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (empty if unset)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _queue_config(raw: dict[str, Any], default: QueueConfig) -> QueueConfig:
    return QueueConfig(
        enabled=bool(raw.get("enabled", default.enabled)),
        retry_schedule_seconds=[
            float(s) for s in raw.get("retry_schedule_seconds", default.retry_schedule_seconds)
        ],
        batch_size=int(raw.get("batch_size", default.batch_size)),
        poll_interval_seconds=float(raw.get("poll_interval_seconds", default.poll_interval_seconds)),
        delivery_timeout_seconds=float(
            raw.get("delivery_timeout_seconds", default.delivery_timeout_seconds)
        ),
    )


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url") or settings.database.url,
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "webhook_queue" in raw:
            settings.webhook_queue = _queue_config(raw["webhook_queue"], settings.webhook_queue)

        if "message_queue" in raw:
            settings.message_queue = _queue_config(raw["message_queue"], settings.message_queue)

        if "forwarder" in raw:
            fw = raw["forwarder"]
            settings.forwarder = ForwarderConfig(
                forwarded_by=fw.get("forwarded_by", settings.forwarder.forwarded_by),
                get_timeout_seconds=float(fw.get("get_timeout_seconds", settings.forwarder.get_timeout_seconds)),
                directory_refresh_seconds=float(
                    fw.get("directory_refresh_seconds", settings.forwarder.directory_refresh_seconds)
                ),
            )

        if "chatwoot" in raw:
            cw = raw["chatwoot"]
            settings.chatwoot = ChatwootConfig(
                base_url=cw.get("base_url", ""),
                api_token=cw.get("api_token", ""),
                account_id=int(cw.get("account_id", 1)),
                inbox_id=int(cw.get("inbox_id", 1)),
                default_contact_name=cw.get("default_contact_name", "Desconhecido"),
            )

        if "security" in raw:
            settings.security = SecurityConfig(
                verify_token=raw["security"].get("verify_token", ""),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
