from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from polymodel_chat.completion_engine import DEFAULT_API_URL


@dataclass
class RuntimeEnv:
    api_key: str | None
    api_key_env_var: str


@dataclass
class AppConfig:
    api_url: str
    model: str | None
    storage_path: str
    request_timeout_seconds: float
    max_request_attempts: int
    referer: str | None
    app_title: str | None
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        api_url=str(config.get("ApiUrl", DEFAULT_API_URL)).strip() or DEFAULT_API_URL,
        model=_optional_str(config.get("Model")),
        storage_path=str(config.get("StoragePath", ".polymodel/chat.db")),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 120.0)),
        max_request_attempts=int(config.get("MaxRequestAttempts", 3)),
        referer=_optional_str(config.get("Referer")),
        app_title=_optional_str(config.get("AppTitle", "PolyModel Chat")),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_key=os.environ.get("OPENROUTER_API_KEY") or None,
        api_key_env_var="OPENROUTER_API_KEY",
    )
