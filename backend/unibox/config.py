from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

_env_path = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_path),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str = "sqlite:///./unibox.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    LOG_LEVEL: str = "INFO"

    # Comma-separated platform names, e.g. "whatsapp,whatsapp-business,gmail"
    ENABLED_PLATFORMS: str = "whatsapp,whatsapp-business,gmail"

    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GMAIL_REFRESH_TOKEN: str = ""
    GMAIL_FETCH_LIMIT: int = 50
    GMAIL_SYNC_MINUTES: int = 15
    PUBSUB_TOPIC: str = ""
    PUBSUB_VERIFICATION_TOKEN: str = ""

    WHATSAPP_BRIDGE_URL: str = "http://localhost:3100"
    BRIDGE_TOKEN: str = ""
    INGEST_API_KEY: str = ""

    BUS_DELIVERY_ATTEMPTS: int = 3
    USE_REDIS_LOCKS: bool = False
    USE_EVENT_RELAY: bool = False

    @property
    def enabled_platforms(self) -> list[str]:
        return [p.strip() for p in self.ENABLED_PLATFORMS.split(",") if p.strip()]


settings = Settings()
