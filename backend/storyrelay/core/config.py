from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(
        default="http://127.0.0.1:5173,http://localhost:5173",
        alias="CORS_ORIGINS",
    )
    db_url: str = Field(default="sqlite+aiosqlite:///./storyrelay.db", alias="DB_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    app_secret_key: str = Field(default="", alias="APP_SECRET_KEY")

    default_provider: str = Field(default="gemini", alias="DEFAULT_PROVIDER")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com", alias="GEMINI_BASE_URL"
    )
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com", alias="ANTHROPIC_BASE_URL"
    )
    xai_base_url: str = Field(default="https://api.x.ai", alias="XAI_BASE_URL")
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    xai_api_key: str = Field(default="", alias="XAI_API_KEY")
    gemini_model: str = Field(default="gemini-2.0-flash", alias="GEMINI_MODEL")
    chatgpt_model: str = Field(default="gpt-4o", alias="CHATGPT_MODEL")
    claude_model: str = Field(default="claude-3-5-sonnet-20241022", alias="CLAUDE_MODEL")
    grok_model: str = Field(default="grok-beta", alias="GROK_MODEL")
    anthropic_version: str = Field(default="2023-06-01", alias="ANTHROPIC_VERSION")

    provider_timeout_sec: float = Field(default=120.0, alias="PROVIDER_TIMEOUT_SEC")
    max_output_tokens: int = Field(default=8192, alias="MAX_OUTPUT_TOKENS")
    summary_max_output_tokens: int = Field(default=2048, alias="SUMMARY_MAX_OUTPUT_TOKENS")
    stream_chunk_chars: int = Field(default=0, alias="STREAM_CHUNK_CHARS")
    history_max_turns: int = Field(default=20, alias="HISTORY_MAX_TURNS")

    compaction_interval: int = Field(default=10, alias="COMPACTION_INTERVAL")
    max_plot_points: int = Field(default=20, alias="MAX_PLOT_POINTS")
    summary_prompt_template: str = Field(default="", alias="SUMMARY_PROMPT_TEMPLATE")
    max_concurrent_compactions: int = Field(default=4, alias="MAX_CONCURRENT_COMPACTIONS")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        raw = (self.cors_origins or "").strip()
        if not raw:
            return []
        if raw.startswith("["):
            try:
                import json

                value: Any = json.loads(raw)
                if isinstance(value, list):
                    items = [str(item).strip() for item in value]
                    return [item for item in items if item]
            except Exception:  # noqa: BLE001
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    def account_api_key(self, provider: str) -> str:
        """Return the account-level API key configured for a provider."""

        keys = {
            "gemini": self.gemini_api_key,
            "chatgpt": self.openai_api_key,
            "claude": self.anthropic_api_key,
            "grok": self.xai_api_key,
        }
        return (keys.get(provider) or "").strip()

    def default_model(self, provider: str) -> str:
        """Return the account-level default model for a provider."""

        models = {
            "gemini": self.gemini_model,
            "chatgpt": self.chatgpt_model,
            "claude": self.claude_model,
            "grok": self.grok_model,
        }
        return (models.get(provider) or "").strip()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
