"""Engine runtime configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_ALLOWED_EXTENSIONS: list[str] = [
    ".java", ".js", ".ts", ".tsx", ".jsx", ".py", ".go", ".rs", ".kt", ".rb",
    ".c", ".h", ".cpp", ".cs", ".sql", ".sh",
    ".md", ".txt", ".json", ".yaml", ".yml", ".toml", ".xml", ".properties", ".cfg", ".ini",
]

NOTIFICATION_CHANNELS: set[str] = {"slack", "teams", "email", "webhook", "console"}


class EngineConfig(BaseModel):
    """Validated orchestration engine configuration."""

    tool_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    ai_timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    run_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    max_tool_call_depth: int = Field(default=3, ge=0, le=20)
    session_idle_timeout_seconds: float = Field(default=300.0, ge=1.0)
    closed_session_retention_seconds: float = Field(default=3600.0, ge=0.0)
    sweep_interval_seconds: float = Field(default=30.0, ge=0.1)
    ai_endpoint: str = Field(default="http://localhost:3000")
    ai_api_key: str = Field(default="")
    review_db_path: str | None = Field(default=None)
    filesystem_root: str | None = Field(default=None)
    max_file_size: int = Field(default=1024 * 1024, ge=1)
    allowed_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    critical_notification_channel: str = Field(default="console")
    notification_webhooks: dict[str, str] = Field(default_factory=dict)

    @field_validator("ai_endpoint")
    @classmethod
    def _validate_ai_endpoint(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"ai_endpoint must be an http(s) URL, got {value!r}")
        return value.rstrip("/")

    @field_validator("allowed_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        normalized = []
        for ext in value:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith(".") else f".{ext}")
        return normalized

    @field_validator("critical_notification_channel")
    @classmethod
    def _validate_channel(cls, value: str) -> str:
        if value not in NOTIFICATION_CHANNELS:
            allowed = sorted(NOTIFICATION_CHANNELS)
            raise ValueError(f"critical_notification_channel must be one of {allowed}")
        return value

    @field_validator("notification_webhooks")
    @classmethod
    def _validate_webhooks(cls, value: dict[str, str]) -> dict[str, str]:
        for channel, url in value.items():
            if channel not in NOTIFICATION_CHANNELS:
                raise ValueError(f"notification_webhooks has unknown channel {channel!r}")
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"notification_webhooks[{channel!r}] must be an http(s) URL")
        return value


def load_engine_config(config_path: str | Path) -> EngineConfig:
    """Load engine config from the ``engine`` section of a JSON file.

    Returns:
    - EngineConfig with defaults when the file has no ``engine`` section.
    - EngineConfig built from the section otherwise.
    Raises:
    - FileNotFoundError if config file is missing.
    - pydantic ValidationError on invalid values.
    - json.JSONDecodeError for malformed JSON.
    """

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get("engine") if isinstance(payload, dict) else None
    if section is None:
        return EngineConfig()
    if not isinstance(section, dict):
        raise ValueError("engine must be an object when provided")

    config = EngineConfig.model_validate(section)

    # Relative paths are resolved against the config file's directory.
    base = path.parent
    if (
        config.review_db_path not in (None, ":memory:")
        and not Path(config.review_db_path).is_absolute()
    ):
        config.review_db_path = str((base / config.review_db_path).resolve())
    if config.filesystem_root is not None and not Path(config.filesystem_root).is_absolute():
        config.filesystem_root = str((base / config.filesystem_root).resolve())

    return config
