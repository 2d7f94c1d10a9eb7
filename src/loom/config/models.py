"""Configuration models using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from loom.config.paths import get_projects_path
from loom.core.compaction import DEFAULT_IMPORTANT_KEYWORDS, CompactionSettings
from loom.core.tokens import TokenOverheads
from loom.sessions.types import DEFAULT_MODEL, SessionSettings


class SessionConfig(BaseModel):
    """Session behavior: auto-save and in-memory soft caps."""

    auto_save: bool = True
    auto_save_interval: float = Field(default=5.0, gt=0)  # seconds
    max_messages_in_memory: int = Field(default=1000, gt=0)
    max_tokens_in_memory: int = Field(default=400_000, gt=0)
    thinking_enabled: bool = True
    default_model: str = DEFAULT_MODEL

    def to_settings(self) -> SessionSettings:
        return SessionSettings(
            auto_save=self.auto_save,
            auto_save_interval=self.auto_save_interval,
            max_messages_in_memory=self.max_messages_in_memory,
            thinking_enabled=self.thinking_enabled,
        )


class CompactionConfig(BaseModel):
    """Context window budget and compaction heuristics."""

    max_tokens: int = Field(default=200_000, gt=0)
    threshold_ratio: float = Field(default=0.8, gt=0, le=1)
    reserved_tokens: int = Field(default=8192, ge=0)
    min_messages_to_preserve: int = Field(default=4, ge=0)
    preserve_ratio: float = Field(default=0.25, ge=0, le=1)
    user_preview_chars: int = Field(default=200, gt=0)
    assistant_preview_chars: int = Field(default=300, gt=0)
    important_keywords: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IMPORTANT_KEYWORDS)
    )

    @model_validator(mode="after")
    def _check_reserved(self) -> "CompactionConfig":
        if self.reserved_tokens >= self.max_tokens:
            raise ValueError("reserved_tokens must be smaller than max_tokens")
        return self

    def to_settings(self) -> CompactionSettings:
        return CompactionSettings(
            max_tokens=self.max_tokens,
            threshold_ratio=self.threshold_ratio,
            reserved_tokens=self.reserved_tokens,
            min_messages_to_preserve=self.min_messages_to_preserve,
            preserve_ratio=self.preserve_ratio,
            user_preview_chars=self.user_preview_chars,
            assistant_preview_chars=self.assistant_preview_chars,
            important_keywords=tuple(self.important_keywords),
        )


class TokenConfig(BaseModel):
    """Token estimation constants."""

    chars_per_token: int = Field(default=4, gt=0)
    message_overhead: int = Field(default=4, ge=0)
    tool_use_overhead: int = Field(default=10, ge=0)
    tool_result_overhead: int = Field(default=8, ge=0)
    image_tokens: int = Field(default=1600, ge=0)
    document_tokens: int = Field(default=3000, ge=0)

    def to_overheads(self) -> TokenOverheads:
        return TokenOverheads(
            chars_per_token=self.chars_per_token,
            message=self.message_overhead,
            tool_use=self.tool_use_overhead,
            tool_result=self.tool_result_overhead,
            image=self.image_tokens,
            document=self.document_tokens,
        )


class ConfigError(Exception):
    """Configuration error."""

    pass


class LoomConfig(BaseModel):
    """Root configuration model."""

    projects_path: Path = Field(default_factory=get_projects_path)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)

    @model_validator(mode="after")
    def _expand_paths(self) -> "LoomConfig":
        self.projects_path = self.projects_path.expanduser()
        return self
