"""Pydantic models for Cortex configuration.

Nested section models use plain ``BaseModel`` so that pydantic-settings does
not read environment variables for fields like ``path``.  Only the top-level
:class:`CortexConfig` extends ``BaseSettings``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CortexSection(BaseModel):
    """Core Cortex settings."""

    version: str = "0.1.0"
    data_dir: str = "~/.local/share/cortex"
    log_level: str = "info"
    log_format: Literal["text", "json"] = "text"
    log_file: str = "~/.local/share/cortex/cortex.log"


class StoreSection(BaseModel):
    """Persistence backends."""

    sqlite_path: str = "~/.local/share/cortex/cortex.db"
    kv_backend: str = "memory"  # "memory" | "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "cortex:"


class EventsSection(BaseModel):
    """Event store settings."""

    dedupe_ttl_seconds: int = 7 * 24 * 3600
    event_ttl_seconds: int = 7 * 24 * 3600


class CacheSection(BaseModel):
    """Entity cache and fetch deduplication settings."""

    entity_ttl_seconds: int = 24 * 3600
    fetch_dedup_ttl_seconds: int = 3600
    max_body_bytes: int = 5 * 1024
    recent_limit: int = 5

    @model_validator(mode="after")
    def _fingerprints_expire_first(self) -> CacheSection:
        # A fingerprint must never outlive the entities it points at.
        if self.fetch_dedup_ttl_seconds > self.entity_ttl_seconds:
            msg = (
                f"fetch_dedup_ttl_seconds ({self.fetch_dedup_ttl_seconds}) must not exceed "
                f"entity_ttl_seconds ({self.entity_ttl_seconds})"
            )
            raise ValueError(msg)
        return self


class RuntimeSection(BaseModel):
    """Runtime loop and concurrency settings."""

    sweep_interval_seconds: float = 30.0
    max_concurrent_runs: int = 16
    classifier_timeout_seconds: float = 15.0
    tool_timeout_seconds: float = 60.0
    schedule_enabled: bool = True


class OllamaSection(BaseModel):
    """Ollama configuration for llm actions and semantic conditions."""

    enabled: bool = False
    host: str = "localhost"
    port: int = 11434
    model: str = "llama3.1:8b"
    classifier_model: str = "llama3.2"
    timeout_seconds: float = 120.0

    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class NotifySection(BaseModel):
    """Webhook notification sink."""

    webhook_url: str = ""
    timeout_seconds: float = 10.0


class CortexConfig(BaseSettings):
    """Top-level Cortex configuration model.

    Maps to the TOML structure:
        [cortex] / [store] / [events] / [cache] / [runtime] / [ollama] / [notify]

    All fields are optional with sensible defaults. Config file lives at
    ``~/.config/cortex/config.toml``.
    """

    model_config = SettingsConfigDict(env_prefix="CORTEX_", env_nested_delimiter="__")

    cortex: CortexSection = Field(default_factory=CortexSection)
    store: StoreSection = Field(default_factory=StoreSection)
    events: EventsSection = Field(default_factory=EventsSection)
    cache: CacheSection = Field(default_factory=CacheSection)
    runtime: RuntimeSection = Field(default_factory=RuntimeSection)
    ollama: OllamaSection = Field(default_factory=OllamaSection)
    notify: NotifySection = Field(default_factory=NotifySection)

    def get_data_path(self) -> Path:
        """Return the resolved data directory path."""
        return Path(self.cortex.data_dir).expanduser()

    def get_sqlite_path(self) -> Path:
        """Return the resolved rule store database path."""
        return Path(self.store.sqlite_path).expanduser()

    def get_log_path(self) -> Path:
        """Return the resolved log file path."""
        return Path(self.cortex.log_file).expanduser()
