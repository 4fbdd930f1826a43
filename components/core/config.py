from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database settings
    DB_URL: str = "sqlite+aiosqlite:///./koperasi.db"
    DB_ECHO: bool = False
    AUTO_CREATE_TABLES: bool = True

    # API settings
    APP_NAME: str = "Koperasi Loan Service"
    API_VERSION: str = "v1"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "standard"

    # Scheduler settings (all times are local to TIMEZONE)
    TIMEZONE: str = "Asia/Jakarta"
    SCHEDULER_ENABLED: bool = True
    REMINDER_HOUR: int = 9
    REMINDER_MINUTE: int = 0
    DRAIN_INTERVAL_MINUTES: int = 5
    DPD_MINUTE: int = 0
    REMINDER_DISPATCH_DELAY_MINUTES: int = 1

    # Delivery policy
    MAX_SEND_ATTEMPTS: int = 3
    SEND_TIMEOUT_SECONDS: float = 30.0
    WHATSAPP_RATE_LIMIT_HOURS: int = 24

    # Email (SMTP) provider
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_USE_TLS: bool = True

    # WhatsApp Cloud API provider
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v18.0"

    # Template rendering
    PAYMENT_LINK_BASE: str = "https://pay.koperasi.com"
    SUPPORT_CONTACT: str = "0811-2345-6789"
    CURRENCY_PREFIX: str = "Rp"

    # Fernet key for customer contact fields; empty stores them as plaintext
    FIELD_ENCRYPTION_KEY: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        validate_default = True

    @property
    def is_sqlite(self) -> bool:
        return self.DB_URL.startswith("sqlite")

    @property
    def email_configured(self) -> bool:
        """SMTP credentials are complete enough to use the live provider."""
        return bool(self.SMTP_HOST and self.SMTP_USERNAME)

    @property
    def whatsapp_configured(self) -> bool:
        """WhatsApp credentials are complete enough to use the live provider."""
        return bool(self.WHATSAPP_ACCESS_TOKEN and self.WHATSAPP_PHONE_NUMBER_ID)


@lru_cache()
def get_settings(env_file: Optional[str] = None) -> Settings:
    """
    Returns cached Settings instance to avoid reloading .env file on every access
    """
    if env_file:
        return Settings(_env_file=env_file)
    return Settings()
