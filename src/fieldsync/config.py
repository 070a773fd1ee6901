from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    remote_url: str = ""
    remote_anon_key: str = ""
    photo_bucket: str = "job-photos"
    database_url: str = "sqlite:///./fieldsync.db"
    media_cache_dir: str = ""  # empty: system temp dir
    request_timeout_seconds: float = 30.0

    # Sync policy
    max_retry_count: int = 5
    sync_interval_minutes: int = 5
    failure_threshold: int = 3
    record_delay_seconds: float = 0.1
    connectivity_probe_seconds: int = 30

    # Jobs ever created per subscription tier; None is unlimited. Unknown
    # tiers get the "free" limit. jobs_count never decreases.
    tier_job_limits: Dict[str, Optional[int]] = {
        "free": 20,
        "starter": 200,
        "professional": None,
        "business": None,
    }

    # Media policy
    max_media_bytes: int = 10 * 1024 * 1024
    media_target_bytes: int = 50 * 1024
    media_max_width: int = 800
    media_quality: int = 70
    media_fallback_width: int = 600
    media_fallback_quality: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
