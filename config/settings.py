"""
Configuration loader for the RecoPilot worker and API.
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
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.2
    max_tokens: int = 2048
    api_key: str = ""
    max_retries: int = 3


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./recopilot.db"             # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    queue_key: str = "recopilot:jobs"
    dlq_key: str = "recopilot:dlq"
    max_attempts: int = 5
    pop_timeout: int = 5                # seconds a BRPOP blocks before re-checking shutdown
    consumer_concurrency: int = 1       # consumer instances per worker process


@dataclass
class SchedulerConfig:
    enabled: bool = True
    timezone: str = "UTC"


@dataclass
class ExecutionConfig:
    enabled: bool = True
    interval_seconds: int = 30
    webhook_url: str = ""               # default target for the webhook executor


@dataclass
class ReaperConfig:
    interval_seconds: int = 60
    running_timeout_minutes: int = 30
    queued_timeout_minutes: int = 10
    event_max_attempts: int = 3


@dataclass
class PrioritizerConfig:
    drop_threshold: float = 0.2
    delta_multiplier: float = 0.1
    max_delta: float = 2.0
    max_signals: int = 5
    signal_context_chars: int = 2000


@dataclass
class SourceConfig:
    """External data source that analysis and snapshot jobs read from."""
    type: str = "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    app_name: str = "RecoPilot"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    prioritizer: PrioritizerConfig = field(default_factory=PrioritizerConfig)
    sources: dict[str, SourceConfig] = field(default_factory=dict)
    event_rules: list[dict[str, Any]] = field(default_factory=list)


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


def _section(cls, raw: dict[str, Any]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RECOPILOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "llm" in raw:
            settings.llm = _section(LLMConfig, raw["llm"])
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"])
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"])
        if "execution" in raw:
            settings.execution = _section(ExecutionConfig, raw["execution"])
        if "reaper" in raw:
            settings.reaper = _section(ReaperConfig, raw["reaper"])
        if "prioritizer" in raw:
            settings.prioritizer = _section(PrioritizerConfig, raw["prioritizer"])

        for name, src in (raw.get("sources") or {}).items():
            settings.sources[name] = _section(SourceConfig, src)

        settings.event_rules = raw.get("event_rules", [])

    # Secrets are usually injected through the environment rather than YAML
    if not settings.llm.api_key:
        settings.llm.api_key = os.environ.get("ANTHROPIC_API_KEY", "")

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
