from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Postpartum Hypertension Emergency Response"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Identity tokens are issued elsewhere; we only verify them
    SECRET_KEY: str = "change-me-in-production-use-strong-random-key"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    DATABASE_URL: str = "sqlite:///./htn_response.db"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Protocol timing
    RECHECK_TIMER_MINUTES: int = 15
    ADMINISTRATION_DEADLINE_MINUTES: int = 45  # midpoint of the 30-60 min window
    CONFIRMATION_MIN_GAP_SECONDS: int = 60  # minimum separation of two high readings

    # Asthma / labetalol contraindication: warn by default, block when True
    ASTHMA_BLOCKS_LABETALOL: bool = False

    # Expiry polling
    TIMER_POLL_INTERVAL_SECONDS: float = 5.0
    TIMER_WATCHER_ENABLED: bool = True

    # External notification delivery
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_API_KEY: Optional[str] = None
    NOTIFICATION_TIMEOUT: int = 10
    NOTIFICATION_MOCK_MODE: bool = True

    # Case orchestrators idle this long (and not observed) are dropped from memory
    REGISTRY_IDLE_SECONDS: int = 900

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
