# storefront/core/config.py

from typing import List, Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    DATABASE_USER: str = "storefront"
    DATABASE_PASSWORD: str = "storefront"
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "storefront"

    # Redis (job queue + startup lock)
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # MercadoPago
    MERCADOPAGO_ACCESS_TOKEN: str = ""
    MERCADOPAGO_WEBHOOK_SECRET: str = ""
    MERCADOPAGO_API_URL: str = "https://api.mercadopago.com"

    # Email (Resend HTTP API)
    RESEND_API_KEY: str = ""
    RESEND_API_URL: str = "https://api.resend.com"
    EMAIL_FROM: str = "noreply@storefront.local"
    FRONTEND_URL: str = "http://localhost:3000"

    # Telegram admin alerts. Empty token disables them.
    TELEGRAM_BOT_TOKEN: str = ""
    ADMIN_CHAT_IDS_STR: str = Field(default="", alias="ADMIN_CHAT_IDS")

    # Key for the /admin endpoints
    ADMIN_API_KEY: str = ""

    STORE_TIMEZONE: str = "America/Argentina/Buenos_Aires"
    STORE_CURRENCY: str = "ARS"

    LOG_LEVEL: str = "INFO"

    # --- Jobs ---
    JOB_DISCOUNT_CODE_SCAN_CRON: str = "5 0 * * *"
    JOB_DISCOUNT_CODE_SCAN_BATCH_SIZE: int = 10
    JOB_DISCOUNT_CODE_SETTLE_CONCURRENCY: int = 2
    JOB_DISCOUNT_CODE_SETTLE_SINGLETON_SECONDS: int = 60 * 60 * 24
    # Must stay below one scan period
    JOB_DISCOUNT_CODE_SCAN_FOLLOWUP_SINGLETON_SECONDS: int = 60 * 60
    JOB_LEAD_NOTIFICATION_CONCURRENCY: int = 5
    JOB_LEAD_NOTIFICATION_SINGLETON_SECONDS: int = 60 * 60
    JOB_LEAD_NOTIFICATION_DELAY_SECONDS: float = 1.0
    JOB_RETRY_LIMIT: int = 5
    JOB_RETRY_DELAY_SECONDS: int = 30
    JOB_VISIBILITY_TIMEOUT_SECONDS: int = 15 * 60
    JOB_RETENTION_SECONDS: int = 7 * 24 * 60 * 60
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    # Run the worker loop inside every API process as well (off when storefront.worker runs separately)
    JOB_WORKER_EMBEDDED: bool = True

    # Lead reservation codes
    LEAD_DISCOUNT_TYPE: Literal["percentage", "fixed"] = "percentage"
    LEAD_DISCOUNT_VALUE: float = 15
    LEAD_DISCOUNT_VALID_DAYS: int = 7

    DATABASE_URL_OVERRIDE: Optional[str] = None

    @property
    def ADMIN_CHAT_IDS(self) -> List[int]:
        return [int(chat_id.strip()) for chat_id in self.ADMIN_CHAT_IDS_STR.split(',') if chat_id.strip()]

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True, extra="ignore")

settings = Settings()
