"""
Configuration loader for the fan-out pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./fanout.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"             # "sql" | "memory"


@dataclass
class StompConfig:
    servers: list[str] = field(default_factory=list)   # "host:port"
    username: str = ""
    password: str = ""
    vhost: str = "/"
    basename: str = "/queue/fanout/"
    persistent: bool = True


@dataclass
class QueueConfig:
    backend: str = "memory"             # inprocess | memory | db | redis | stomp
    queues: list[str] = field(default_factory=lambda: ["notification", "activitypub"])
    max_attempts: int = 10
    poll_interval: float = 10.0         # seconds to idle when every queue is empty
    claim_timeout: float = 300.0        # seconds before a claimed row/message is reclaimed
    retry_backoff_base: float = 30.0    # base seconds for exponential retry backoff
    retry_backoff_max: float = 3600.0
    redis_url: str = "redis://localhost:6379"
    redis_prefix: str = "fanout:"
    consumer_group: str = "fanout-workers"
    dead_letter_dir: str = ""           # stomp: dump dead letters here for inspection
    site: str = "default"
    embedded_worker: bool = False      # api: run the manager loop inside the web process
    stomp: StompConfig = field(default_factory=StompConfig)


@dataclass
class FederationConfig:
    base_url: str = "https://social.example"
    user_agent: str = "FanoutBot/0.1"
    timeout: float = 30.0
    max_batch_size: int = 100           # remote targets per delivery job


@dataclass
class NotificationConfig:
    notify_self: bool = False
    notification_queue: str = "notification"
    federation_queue: str = "activitypub"


@dataclass
class Settings:
    app_name: str = "fanout"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    federation: FederationConfig = field(default_factory=FederationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _section(cls, raw: dict[str, Any], default):
    """Overlay known keys of a YAML section onto a dataclass default."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**{**default.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FANOUT_CONFIG",
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
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)

        if "queue" in raw:
            q = dict(raw["queue"])
            stomp = q.pop("stomp", None)
            settings.queue = _section(QueueConfig, q, settings.queue)
            if stomp:
                settings.queue.stomp = _section(StompConfig, stomp, StompConfig())

        if "federation" in raw:
            settings.federation = _section(FederationConfig, raw["federation"], settings.federation)

        if "notifications" in raw:
            settings.notifications = _section(
                NotificationConfig, raw["notifications"], settings.notifications,
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
