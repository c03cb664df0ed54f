from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "Raisin Protect"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    # ── Auth ──
    JWT_SECRET: str = "change-me-in-production"
    JWT_ISSUER: str = "raisin-protect"
    ACCESS_TOKEN_TTL_MINUTES: int = 15
    REFRESH_TOKEN_TTL_DAYS: int = 7
    BCRYPT_COST: int = 12

    # ── Timeouts ──
    READINESS_TIMEOUT_SECONDS: float = 3.0
    NOTIFICATION_TIMEOUT_SECONDS: float = 10.0

    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def bcrypt_rounds(self) -> int:
        """Production floor is 10 rounds; tests may go lower."""
        if self.TESTING:
            return max(4, self.BCRYPT_COST)
        return max(10, self.BCRYPT_COST)


settings = Settings()
