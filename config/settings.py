"""
Configuration loader for the rules engine.
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
class EngineConfig:
    stage: str = "dev"
    service: str = "rules-engine"
    timezone: str = "Australia/Melbourne"      # call centre local time for System.*
    mobile_prefix: str = "+614"
    max_steps_per_turn: int = 100              # bound on automatic rule steps in one turn
    integration_poll_interval_s: float = 0.1
    dtmf_max_error_count: int = 3
    nlu_menu_max_error_count: int = 2
    yes_no_bot_name: str = "yesno"

    @property
    def resource_prefix(self) -> str:
        """Deployment name prefix for bots and functions."""
        return f"{self.stage}-{self.service}-"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./rules_engine.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                    # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                   # directory for file backend


@dataclass
class ConfigProviderConfig:
    type: str = "file"                               # "file" | "rest"
    rule_sets_path: str = "config/rulesets.yaml"
    lookups_path: str = ""
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    timeout_s: float = 10.0


@dataclass
class NLUConfig:
    type: str = "mock"                               # "mock" | "rest"
    base_url: str = ""
    api_key: str = ""
    timeout_s: float = 5.0


@dataclass
class SpeechConfig:
    type: str = "none"                               # "none" | "rest"
    base_url: str = ""
    api_key: str = ""
    voice_id: str = "Olivia"
    language_code: str = "en-AU"
    timeout_s: float = 5.0


@dataclass
class InvokerConfig:
    type: str = "mock"                               # "mock" | "rest"
    base_url: str = ""
    api_key: str = ""
    timeout_s: float = 5.0


@dataclass
class Settings:
    app_name: str = "RulesEngine"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    config_provider: ConfigProviderConfig = field(default_factory=ConfigProviderConfig)
    nlu: NLUConfig = field(default_factory=NLUConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    invoker: InvokerConfig = field(default_factory=InvokerConfig)


# Top-level YAML section → Settings attribute of the same name
SECTIONS = {
    "engine": EngineConfig,
    "database": DatabaseConfig,
    "config_provider": ConfigProviderConfig,
    "nlu": NLUConfig,
    "speech": SpeechConfig,
    "invoker": InvokerConfig,
}

_ENV_REF = re.compile(r"\$\{(\w+)\}")

_settings: Optional[Settings] = None


def _expand_env(obj: Any) -> Any:
    """Expand ${VAR} in every string; unset variables are left as written."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {key: _expand_env(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(value) for value in obj]
    return obj


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a section dataclass, ignoring keys it does not declare."""
    known = cls.__dataclass_fields__
    return cls(**{key: value for key, value in (raw or {}).items() if key in known})


def default_config_path() -> str:
    return os.environ.get("RULES_ENGINE_CONFIG", str(Path(__file__).parent / "settings.yaml"))


def load_settings(config_path: str = None) -> Settings:
    """Load settings from ``config_path`` (default: RULES_ENGINE_CONFIG or settings.yaml)."""
    global _settings

    path = Path(config_path or default_config_path())
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = _expand_env(yaml.safe_load(f) or {})

    settings = Settings(
        app_name=raw.get("app_name", Settings.app_name),
        debug=bool(raw.get("debug", Settings.debug)),
    )
    for name, cls in SECTIONS.items():
        if name in raw:
            setattr(settings, name, _section(cls, raw[name]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
