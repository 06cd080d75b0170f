"""
CallCoach Configuration
Manages environment variables and application settings
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # API Keys
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    deepgram_api_key: str = Field(default="", alias="DEEPGRAM_API_KEY")

    # Storage
    database_url: str = Field(default="", alias="DATABASE_URL")
    # Empty or "memory:" keeps cache and pub/sub in-process
    redis_url: str = Field(default="", alias="REDIS_URL")

    # Application
    app_name: str = "CallCoach"
    debug: bool = False
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # AI Settings
    claude_model: str = "claude-sonnet-4-20250514"
    claude_summary_model: str = "claude-3-5-haiku-20241022"
    completion_timeout_seconds: float = 8.0
    completion_max_tokens: int = 500

    # Transcription
    transcription_model: str = "nova-2"
    transcription_language: str = "pt-BR"
    transcription_timeout_seconds: float = 10.0

    # Cache lifetimes
    session_ttl_hours: int = 4
    media_header_ttl_seconds: int = 4 * 3600

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        populate_by_name = True
        extra = "ignore"

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_hours * 3600

    @property
    def database_dsn(self) -> str:
        # Render/Heroku hand out postgres:// URLs, SQLAlchemy wants postgresql://
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url


# Global settings instance
settings = Settings()
