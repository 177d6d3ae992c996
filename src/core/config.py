from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = ""
    LOG_LEVEL: str = "INFO"

    # Session lifecycle
    SESSION_CHALLENGE_TIMEOUT_SECONDS: float = 30.0
    RECONNECT_DELAY_SECONDS: float = 2.0
    PAIRING_REQUEST_DELAY_SECONDS: float = 1.0
    TRANSPORT_FACTORY: str = ""  # "package.module:attr", see core.transport

    # Counters older than this are recomputed on read.
    STATS_STALE_AFTER_SECONDS: int = 3600

    # Media offload; empty OBJECT_STORE_URL disables the worker.
    OBJECT_STORE_URL: str = ""
    OBJECT_STORE_KEY: str = ""
    OBJECT_STORE_BUCKET: str = "whatsapp-media"
    MEDIA_QUEUE_SIZE: int = 1000

    NOTIFY_QUEUE_SIZE: int = 256
    MCP_PORT: int = 8002

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
