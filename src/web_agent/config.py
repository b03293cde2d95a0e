"""Configuration models for the web agent."""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseModel):
    """Settings for the reasoning service."""

    provider: str = Field(default="openai")
    model: Optional[str] = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class BrowserConfig(BaseModel):
    """Settings for the browser automation engine."""

    headless: bool = True
    viewport_width: int = 1280
    viewport_height: int = 720
    connect_url_template: Optional[str] = Field(
        default=None,
        description=(
            "CDP endpoint for remote sessions, formatted with {session_id} and {api_key}. "
            "A local Chromium is launched when unset."
        ),
    )
    api_key: Optional[str] = None
    navigate_timeout_ms: int = 60_000
    action_timeout_ms: int = 60_000
    max_observed_elements: int = 150
    max_page_text_chars: int = 20_000


class LiveViewConfig(BaseModel):
    """Where to look up the human-viewable URL of a session."""

    provider: str = Field(default="none")
    api_key: Optional[str] = None
    base_url: str = "https://api.browserbase.com/v1"
    url_template: Optional[str] = None


class LoopConfig(BaseModel):
    """Bounds applied to every agent run."""

    max_steps: int = Field(default=50, ge=1)
    max_wait_ms: int = Field(default=300_000, ge=0)


class NotificationConfig(BaseModel):
    """Notification channel settings."""

    channel: str = Field(default="console")
    options: dict[str, Any] = Field(default_factory=dict)


class AgentConfig(BaseSettings):
    """Top-level configuration for the agent."""

    model_config = SettingsConfigDict(
        env_prefix="WEB_AGENT_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    live_view: LiveViewConfig = Field(default_factory=LiveViewConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


def load_config(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> AgentConfig:
    """Load configuration from an optional file and overrides."""

    data: dict[str, Any] = {}
    if path:
        import yaml

        data = yaml.safe_load(path.read_text()) or {}
    if overrides:
        _deep_update(data, overrides)
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    config = AgentConfig(**data, **settings_kwargs)
    if not data:
        return config

    merged = config.model_dump(mode="python")
    _deep_update(merged, data)
    return AgentConfig.model_validate(merged)


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> None:
    """Recursively merge ``updates`` into ``target`` in-place."""

    for key, value in updates.items():
        if (
            isinstance(value, Mapping)
            and isinstance(existing := target.get(key), Mapping)
        ):
            nested: dict[str, Any] = existing if isinstance(existing, dict) else dict(existing)
            _deep_update(nested, value)
            target[key] = nested
        else:
            target[key] = value
