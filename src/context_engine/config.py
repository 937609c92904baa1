"""
Configuration management for Context-Engine

Uses pydantic-settings for environment variable parsing and validation.
Settings are passed explicitly to every component so several independently
configured engines can live in one process.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant.

Guidelines:
1. Be helpful, accurate, and concise
2. Reference relevant memories and user information naturally
3. If you're unsure, say so
4. Respect the user's privacy"""


class Settings(BaseSettings):
    """Main engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Context-Engine"
    debug: bool = False
    log_level: str = "INFO"

    # Token budget
    model: str = Field(default="claude-sonnet-4-20250514", description="Model identifier used for token counting")
    max_tokens: int | None = Field(default=None, description="Input budget; defaults to the model's context window")
    reserve_tokens: int = Field(default=4096, description="Tokens held out for the model's response")

    # Optimization
    optimize_threshold: float = Field(default=0.85, description="Budget fraction that triggers proactive compaction")
    summary_ratio: float = Field(default=0.25, description="Summary target as a fraction of the summarized tokens")
    proactive_compaction: bool = Field(default=False, description="Compress low-priority items before the budget is exceeded")
    relevance_pruning: bool = Field(default=False, description="Weight eviction order by relevance to the query")
    recent_turns: int = Field(default=6, description="History turns assembled at HIGH priority")
    memory_search_limit: int = Field(default=5, description="Long-term memories retrieved per assembly")

    # Memory tiers
    short_term_ttl_seconds: int = Field(default=86_400, description="Default TTL for SHORT_TERM records")
    working_ttl_seconds: int = Field(default=3_600, description="Default TTL for WORKING records")

    # Sessions
    session_timeout_minutes: int = Field(default=30, description="Inactivity before a session expires")
    session_idle_minutes: int = Field(default=5, description="Inactivity before a session is reported idle")

    # External calls (summarizer, embedder, tools)
    external_call_timeout_seconds: float = Field(default=30.0, description="Timeout for external capabilities")

    # Storage
    database_url: str = Field(default="", description="Database URL for durable tiers; empty keeps everything in-process")
    short_term_backend: Literal["memory", "database"] = "memory"

    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @field_validator("optimize_threshold", "summary_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("ratio must be within (0, 1]")
        return v

    @field_validator(
        "short_term_ttl_seconds",
        "working_ttl_seconds",
        "session_timeout_minutes",
        "external_call_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("reserve_tokens", "recent_turns", "memory_search_limit")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def validate_budget(self) -> "Settings":
        if self.max_tokens is not None and self.reserve_tokens >= self.max_tokens:
            raise ValueError("reserve_tokens must be smaller than max_tokens")
        return self

    @property
    def session_timeout(self) -> timedelta:
        """Inactivity window after which a session expires."""
        return timedelta(minutes=self.session_timeout_minutes)

    @property
    def session_idle_after(self) -> timedelta:
        return timedelta(minutes=self.session_idle_minutes)

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance (CLI entry point only)."""
    return Settings()
