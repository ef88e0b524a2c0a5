# backend/app/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/scheduling.db"
    redis_url: str = "redis://localhost:6379/0"

    # Slot grid
    slot_step_minutes: int = 30
    recurring_horizon_days: int = 730
    slots_cache_ttl_seconds: int = 86400

    # Lifecycle policy
    auto_confirm_default: bool = False
    require_end_passed_for_completion: bool = False
    require_start_passed_for_no_show: bool = False

    # Background loops
    auto_complete_enabled: bool = False
    checker_interval_seconds: int = 60

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
