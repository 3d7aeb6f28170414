from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class RuntimeEnv:
    api_base: str | None
    stream_api_base: str | None
    access_token: str
    id_token: str


@dataclass
class RuntimeConfig:
    api_base: str | None = None
    stream_api_base: str | None = None
    first_byte_timeout_seconds: float = 30.0
    progress_timeout_seconds: float = 120.0
    flush_threshold_chars: int = 2048
    flush_interval_seconds: float = 0.05
    poll_interval_seconds: float = 1.2
    poll_deadline_seconds: float = 60.0
    thread_list_limit: int = 20
    request_timeout_seconds: float = 30.0
    web_search: bool = False
    non_streaming_fallback: bool = False
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _optional_str(value: object) -> str | None:
    text = str(value or "").strip()
    return text or None


def parse_app_config(config: dict, env: RuntimeEnv | None = None) -> RuntimeConfig:
    """Build the runtime config; environment base URLs win over config.json."""
    api_base = _optional_str(config.get("ApiBase"))
    stream_api_base = _optional_str(config.get("StreamApiBase"))
    if env is not None:
        api_base = env.api_base or api_base
        stream_api_base = env.stream_api_base or stream_api_base

    return RuntimeConfig(
        api_base=api_base,
        stream_api_base=stream_api_base,
        first_byte_timeout_seconds=float(config.get("FirstByteTimeoutSeconds", 30)),
        progress_timeout_seconds=float(config.get("ProgressTimeoutSeconds", 120)),
        flush_threshold_chars=int(config.get("FlushThresholdChars", 2048)),
        flush_interval_seconds=float(config.get("FlushIntervalSeconds", 0.05)),
        poll_interval_seconds=float(config.get("PollIntervalSeconds", 1.2)),
        poll_deadline_seconds=float(config.get("PollDeadlineSeconds", 60)),
        thread_list_limit=int(config.get("ThreadListLimit", 20)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 30)),
        web_search=_to_bool(config.get("WebSearch", False), default=False),
        non_streaming_fallback=_to_bool(config.get("NonStreamingFallback", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        api_base=_optional_str(os.environ.get("API_BASE")),
        stream_api_base=_optional_str(os.environ.get("STREAM_API_BASE")),
        access_token=os.environ.get("ACCESS_TOKEN", ""),
        id_token=os.environ.get("ID_TOKEN", ""),
    )
