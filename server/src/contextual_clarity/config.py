"""Configuration and environment loading for Contextual Clarity."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Anthropic
    anthropic_api_key: str

    # Supabase
    supabase_url: str
    supabase_key: str

    # Server
    host: str = "0.0.0.0"
    port: int = 3001
    debug: bool = False

    # Claude model config
    claude_model: str = "claude-sonnet-4-5-20250929"
    claude_max_tokens: int = 1024

    # FSRS scheduling
    fsrs_maximum_interval: int = 365  # Days
    fsrs_request_retention: float = 0.9

    # WebSocket sessions
    ws_chunk_size: int = 20  # Characters per assistant_chunk frame
    ws_chunk_delay_ms: int = 15
    ws_max_consecutive_errors: int = 5
    ws_idle_timeout_seconds: float = 300.0

    # Tangent detection
    tangent_confidence_threshold: float = 0.6
    tangent_return_confidence_threshold: float = 0.6
    tangent_message_window_size: int = 10


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
