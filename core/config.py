# core/config.py
"""
Application settings.

Everything tunable lives here as an upper-case field so it can be overridden
from the environment or a ``.env`` file.  The timing defaults mirror what the
scrape loop has always used against the EGO "Otobüs Nerede" page.
"""

from functools import lru_cache
from typing import Any, Dict, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service-wide settings (env / .env driven)."""

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    PROJECT_NAME: str = "Arrival Watch"
    PORT: int = 3000
    DEBUG: bool = False
    WORKERS: int = 1
    LOG_LEVEL: str = "INFO"
    ALLOWED_HOSTS: List[str] = ["*"]

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------
    TARGETS_FILE: str = "configs/targets.yaml"
    BASE_URL: str = (
        "https://www.ego.gov.tr/tr/otobusnerede/index?durak_no={stop}&hat_no={line}"
    )

    # ------------------------------------------------------------------
    # Browser
    # ------------------------------------------------------------------
    HEADLESS: bool = True
    BROWSER_ARGS: List[str] = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--ignore-certificate-errors",
    ]
    BROWSER_LAUNCH_ATTEMPTS: int = 2

    # ------------------------------------------------------------------
    # Scrape loop timings (seconds)
    # ------------------------------------------------------------------
    NAVIGATION_TIMEOUT: float = 30.0
    INTERACTION_TIMEOUT: float = 10.0
    EXTRACTION_TIMEOUT: float = 15.0
    SETTLE_DELAY: float = 2.0
    POLL_INTERVAL: float = 0.5
    ERROR_RETRY_DELAY: float = 3.0
    COOLDOWN_DELAY: float = 30.0
    MAX_CONSECUTIVE_ERRORS: int = 3
    LOOP_START_STAGGER: float = 1.0
    LOOP_STOP_GRACE: float = 5.0

    # ------------------------------------------------------------------
    # Worker pool process
    # ------------------------------------------------------------------
    CHANNEL_POLL_INTERVAL: float = 0.5
    POOL_SHUTDOWN_TIMEOUT: float = 15.0

    @field_validator("ALLOWED_HOSTS", "BROWSER_ARGS", mode="before")
    @classmethod
    def _split_csv(cls, v: Any) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    def to_payload(self) -> Dict[str, Any]:
        """Plain dict used to rebuild the settings inside the worker process."""
        return self.model_dump(mode="json")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
