from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import os

from lms_server.services.purchase_queue import RetryPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App Settings
    app_name: str = "LMS Purchase Backend"
    app_version: str = "1.0.0"
    debug: bool = False

    # API Settings
    backend_host: str = "0.0.0.0"
    backend_port: int = int(os.getenv("PORT", "3000"))
    allowed_origins: str = "http://localhost:5173,http://localhost:3000"

    # Hotmart webhook / dashboard bearer secret
    hotmart_api_secret: str = ""
    purchase_rate_limit: str = "60/minute"

    # Supabase REST backend (service role key, server side only)
    supabase_url: str = "http://localhost:54321"
    supabase_service_key: str = ""
    supabase_timeout: float = 10.0

    # Purchase queue
    queue_max_retries: int = 3
    queue_retry_delay: float = 2.0
    queue_retention_seconds: float = 3600.0
    queue_sweep_interval: float = 3600.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "json" in production

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.queue_max_retries,
            retry_delay=self.queue_retry_delay,
            retention_seconds=self.queue_retention_seconds,
            sweep_interval=self.queue_sweep_interval,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
