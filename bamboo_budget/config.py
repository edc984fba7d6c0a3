from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    supabase_url: str = ""
    supabase_service_key: str = ""
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    home_currency: str = "TWD"
    translation_language: str = "Traditional Chinese (Taiwan usage)"

    # Shared AI key quota
    daily_ai_limit: int = 2
    ai_allowlist: str = ""

    # Storage limits
    max_document_bytes: int = 1_048_576
    local_store_path: str = ""
    local_quota_bytes: int = 5 * 1024 * 1024

    log_level: str = "INFO"

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse comma-separated origins into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def ai_allowlist_set(self) -> set[str]:
        """Parse comma-separated e-mails that bypass the daily AI quota."""
        return {email.strip().lower() for email in self.ai_allowlist.split(",") if email.strip()}

    @property
    def remote_store_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
