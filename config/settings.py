"""
Typed settings for the conversation pipeline.

settings.yaml is parsed into one dataclass per section; string values may
reference the environment as ${VAR} or ${VAR:-fallback}.
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
    url: str = "sqlite:///./conversation_pipeline.db"   # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                        # "sql" | "memory"


@dataclass
class BufferConfig:
    default_buffer_seconds: int = 10    # idle window used when a tenant sets none
    media_wait_seconds: int = 15        # extra wait for media URLs still resolving
    sweep_interval: float = 1.0         # seconds between dispatch sweeps
    lease_seconds: int = 60             # claimed groups reopen after this
    max_attempts: int = 5               # claims before a group is marked failed
    batch_size: int = 50
    responder_timeout: float = 30.0     # must stay below lease_seconds

    def __post_init__(self):
        if self.responder_timeout >= self.lease_seconds:
            raise ValueError("buffer.responder_timeout must be shorter than buffer.lease_seconds")


@dataclass
class SchedulerConfig:
    interval: float = 5.0               # seconds between trigger sweeps


@dataclass
class ExecutorConfig:
    poll_interval: float = 2.0
    concurrency: int = 20               # max executions running in one worker
    lease_seconds: int = 60
    step_max_attempts: int = 3          # delivery attempts per content step
    retry_backoff_max: float = 10.0
    step_pause_seconds: float = 1.0     # pause between consecutive content steps
    delivery_timeout: float = 30.0

    def __post_init__(self):
        # The lease is renewed before each delivery attempt
        if self.delivery_timeout + self.retry_backoff_max >= self.lease_seconds:
            raise ValueError(
                "executor.delivery_timeout + retry_backoff_max must be shorter than "
                "executor.lease_seconds"
            )


@dataclass
class ResponderConfig:
    webhook_url: str = ""               # AI agent receiving grouped turns
    generation_url: str = ""            # endpoint backing ai_function steps
    auth_token: str = ""
    timeout: float = 30.0
    history_limit: int = 30


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ConversationPipeline"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    responder: ResponderConfig = field(default_factory=ResponderConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    tenants: list[dict[str, Any]] = field(default_factory=list)
    flows: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None

DEFAULT_CONFIG_PATH = Path(__file__).parent / "settings.yaml"

# ${VAR} or ${VAR:-fallback}; unset variables without a fallback stay literal
_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

# top-level key -> dataclass for the typed sections
_SECTIONS = {
    "database": DatabaseConfig,
    "buffer": BufferConfig,
    "scheduler": SchedulerConfig,
    "executor": ExecutorConfig,
    "responder": ResponderConfig,
}


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_REF.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) if m.group(2) is not None else m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {key: _expand(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def _build(cls, raw: Optional[dict[str, Any]]):
    """Instantiate a section dataclass, dropping keys it does not declare."""
    fields = cls.__dataclass_fields__
    return cls(**{key: value for key, value in (raw or {}).items() if key in fields})


def load_settings(config_path: str = None) -> Settings:
    """
    Read settings.yaml (or ``$PIPELINE_CONFIG``) into a Settings object
    and cache it for get_settings(). A missing file yields the defaults.
    """
    global _settings

    path = Path(config_path or os.environ.get("PIPELINE_CONFIG", DEFAULT_CONFIG_PATH))
    raw: dict[str, Any] = {}
    if path.exists():
        raw = _expand(yaml.safe_load(path.read_text()) or {})

    settings = Settings()
    for key in ("app_name", "debug", "timezone"):
        if key in raw:
            setattr(settings, key, raw[key])
    for key, cls in _SECTIONS.items():
        if key in raw:
            setattr(settings, key, _build(cls, raw[key]))
    settings.channels = {
        name: _build(ChannelConfig, data) for name, data in (raw.get("channels") or {}).items()
    }
    settings.tenants = list(raw.get("tenants") or [])
    settings.flows = list(raw.get("flows") or [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Cached settings, loading the default file on first use."""
    if _settings is None:
        return load_settings()
    return _settings
