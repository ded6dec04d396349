from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Map the env var named DATABASE_URL to this field
    database_url: str = Field(alias="DATABASE_URL")

    # Gateway credentials are required at startup, never looked up per request
    gateway_api_key: str = Field(alias="GATEWAY_API_KEY", min_length=1)
    gateway_api_secret: str = Field(alias="GATEWAY_API_SECRET", min_length=1)
    gateway_base_url: str = Field(default="https://api.iamport.kr", alias="GATEWAY_BASE_URL")
    gateway_timeout_secs: float = Field(default=10.0, gt=0, alias="GATEWAY_TIMEOUT_SECS")

    # Optional HMAC check on webhook bodies; disabled when unset
    webhook_secret: Optional[str] = Field(default=None, alias="WEBHOOK_SECRET")

    cors_origins: List[str] = Field(default=["*"], alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Pydantic v2-style config: read .env and ignore extra env vars
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # don't error on POSTGRES_USER/PASSWORD/DB
    )

settings = Settings()
