"""Runtime settings for the Clinigate gateway."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int_map(value: str | None) -> dict[str, int]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    out: dict[str, int] = {}
    for key, raw in parsed.items():
        try:
            out[str(key)] = int(raw)
        except (TypeError, ValueError):
            continue
    return out


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("CLINIGATE_APP_NAME", "clinigate-gateway"))
    log_level: str = field(default_factory=lambda: os.getenv("CLINIGATE_LOG_LEVEL", "INFO"))

    # Local model runtime (Ollama-compatible).
    ollama_base_url: str = field(
        default_factory=lambda: _first_env("CLINIGATE_OLLAMA_BASE_URL", "OLLAMA_BASE_URL") or "http://localhost:11434"
    )
    ollama_model: str = field(
        default_factory=lambda: _first_env("CLINIGATE_OLLAMA_MODEL", "OLLAMA_MODEL") or "gemma3:4b"
    )
    ollama_keep_alive: str = field(default_factory=lambda: os.getenv("CLINIGATE_OLLAMA_KEEP_ALIVE", "5m"))
    default_temperature: float = field(
        default_factory=lambda: float(os.getenv("CLINIGATE_DEFAULT_TEMPERATURE", "0.2"))
    )

    # Optional secondary provider, tried once when the primary fails transiently.
    secondary_base_url: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_SECONDARY_BASE_URL"))
    secondary_model: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_SECONDARY_MODEL"))

    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("CLINIGATE_REQUEST_TIMEOUT_SEC", "60"))
    )
    stream_stale_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("CLINIGATE_STREAM_STALE_TIMEOUT_SEC", "20"))
    )

    # Admission control.
    global_limit_per_minute: int = field(
        default_factory=lambda: int(os.getenv("CLINIGATE_GLOBAL_LIMIT_PER_MINUTE", "200"))
    )
    task_limit_overrides: dict[str, int] = field(
        default_factory=lambda: _as_int_map(os.getenv("CLINIGATE_TASK_LIMITS"))
    )
    role_quota_overrides: dict[str, int] = field(
        default_factory=lambda: _as_int_map(os.getenv("CLINIGATE_ROLE_QUOTAS"))
    )
    cache_enabled: bool = field(
        default_factory=lambda: _as_bool(os.getenv("CLINIGATE_CACHE_ENABLED"), default=True)
    )

    # Policy and prompt schema sources.
    policy_path: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_POLICY_PATH"))
    prompt_schema_dir: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_PROMPT_SCHEMA_DIR"))

    # Read-only patient context collaborator.
    context_base_url: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_CONTEXT_BASE_URL"))

    # Audit persistence
    s3_bucket: str | None = field(default_factory=lambda: os.getenv("CLINIGATE_S3_BUCKET"))
    s3_region: str = field(default_factory=lambda: os.getenv("CLINIGATE_S3_REGION", "us-east-1"))
    s3_prefix: str = field(default_factory=lambda: os.getenv("CLINIGATE_S3_PREFIX", "clinigate/audit"))
    local_storage_dir: str = field(
        default_factory=lambda: os.getenv("CLINIGATE_LOCAL_STORAGE_DIR", ".clinigate_local_store")
    )


def get_settings() -> Settings:
    return Settings()
