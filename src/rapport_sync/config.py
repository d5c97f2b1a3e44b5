from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    POSTGRES_USER: str = "rapport"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "rapport"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 300

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CHANGES_CHANNEL: str = "directory.changes"

    JWT_SECRET: str = ""
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_TTL_SECONDS: int = 3600
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60

    # Deadlines for every outbound directory call.
    DIRECTORY_CALL_TIMEOUT: float = 10.0
    PROFILE_FETCH_TIMEOUT: float = 5.0

    HEALTH_CHECK_INTERVAL_SECONDS: float = 60.0

    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    PRESENCE_TTL_SECONDS: float = 90.0
    PRESENCE_SWEEP_INTERVAL_SECONDS: float = 15.0

    ATTACHMENTS_BUCKET: str = "chat-files"

    # Headless client credentials used by ``python -m rapport_sync``.
    CLIENT_EMAIL: str = ""
    CLIENT_PASSWORD: str = ""

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.POSTGRES_DB}"
        )

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
