# receipt_app/config.py

from datetime import datetime
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    # --- OpenAI chat completions ---
    openai_api_key: Optional[str] = None
    openai_organization_id: Optional[str] = None
    openai_project_id: Optional[str] = None
    openai_model: str = "gpt-4o-2024-08-06"
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    openai_timeout_seconds: float = 60.0
    upstream_retries: int = 1
    image_fetch_timeout_seconds: float = 30.0

    # --- Upload policy ---
    max_image_mb: float = 2.0
    monthly_upload_limit: int = 10

    # --- Google Cloud / Firebase ---
    gcs_bucket_name: Optional[str] = None
    google_credentials_json: Optional[str] = None
    signed_url_expiration: datetime = datetime(2491, 3, 9)

    # --- Security & logging ---
    api_secret_key: Optional[str] = None
    cors_origins: str = "*"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Reads the settings from the process environment and a local .env
        file, environment first.
        """
        return cls()
