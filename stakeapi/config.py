from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="stakeapi/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "Challenge Settlement API"
    PROJECT_NAME: str = "Stake API"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    ALLOWED_ORIGINS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json | text

    # Database
    DATABASE_URL: str = "sqlite:///./stakeapi.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Security
    SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Escrow / settlement
    STAKE_FUNDING_RATIO: Decimal = Decimal("0.5")
    WINNER_REWARD_RATIO: Decimal = Decimal("0.95")
    ADMIN_FEE_RATIO: Decimal = Decimal("0.05")
    DEFAULT_WALLET_BALANCE: Decimal = Decimal("1000")
    PLATFORM_WALLET_ID: str = "platform"

    # Timers (minutes)
    SCORECARD_WINDOW_MINUTES: int = 5
    VERIFICATION_WINDOW_MINUTES: int = 5

    # Verification service
    VERIFICATION_SERVICE_URL: str = "http://localhost:8500"
    VERIFICATION_API_KEY: Optional[str] = None
    VERIFICATION_TIMEOUT_SECONDS: float = 30.0
    PROOF_CONFIDENCE_THRESHOLD: float = 0.8

    # Payment gateway
    PAYMENT_GATEWAY: str = "manual"  # manual | http
    PAYMENT_GATEWAY_URL: str = "http://localhost:8600"
    PAYMENT_GATEWAY_API_KEY: Optional[str] = None
    PAYMENT_TIMEOUT_SECONDS: float = 20.0

    @model_validator(mode="after")
    def check_reward_split(self) -> "Settings":
        if self.WINNER_REWARD_RATIO + self.ADMIN_FEE_RATIO != Decimal("1"):
            raise ValueError(
                "WINNER_REWARD_RATIO and ADMIN_FEE_RATIO must add up to 1"
            )
        if not Decimal("0") < self.STAKE_FUNDING_RATIO <= Decimal("1"):
            raise ValueError("STAKE_FUNDING_RATIO must be in (0, 1]")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""

    return Settings()


settings = get_settings()
