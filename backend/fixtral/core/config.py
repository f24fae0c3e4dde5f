from pydantic import ConfigDict
from pydantic_settings import BaseSettings


# Values shipped in the example .env; they mean "not configured".
SUPABASE_PLACEHOLDER_URL = "https://your-project-id.supabase.co"
SUPABASE_PLACEHOLDER_KEY = "your-service-role-key-here"


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite+aiosqlite:///./fixtral.db"
    local_store_dir: str = "./.fixtral/storage"
    download_dir: str = "./.fixtral/downloads"
    cors_origins: str = "http://localhost:3000"
    log_level: str = "INFO"

    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_jwt_secret: str = ""
    supabase_timeout_seconds: float = 10.0

    admin_id: str = ""
    admin_uid: str = ""
    daily_generation_quota: int = 2
    credit_reset_timezone: str = ""

    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_image_model: str = "gemini-2.5-flash-image-preview"
    image_download_timeout_seconds: float = 30.0
    image_edit_timeout_seconds: float = 45.0

    reddit_client_id: str = ""
    reddit_client_secret: str = ""
    reddit_username: str = ""
    reddit_password: str = ""
    reddit_user_agent: str = "python:fixtral:v1.0.0"
    reddit_subreddit: str = "PhotoshopRequest"

    @property
    def supabase_configured(self) -> bool:
        return bool(
            self.supabase_url
            and self.supabase_service_role_key
            and self.supabase_url != SUPABASE_PLACEHOLDER_URL
            and self.supabase_service_role_key != SUPABASE_PLACEHOLDER_KEY
        )

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
