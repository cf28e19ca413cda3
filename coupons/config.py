import logging
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import PolicySettings


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Storage ---
    DATABASE_URL: Optional[str] = None

    # --- Messaging ---
    WHATSAPP_NUMBER: Optional[str] = None
    DEFAULT_COUNTRY_CODE: str = "90"

    # --- Tokens ---
    TOKEN_CODE_LENGTH: int = Field(default=8, ge=4, le=32)
    TOKEN_MAX_ATTEMPTS: int = Field(default=10, ge=1, le=10)

    # --- Policy defaults for a fresh store ---
    DEFAULT_REDEMPTION_THRESHOLD: int = Field(default=4, ge=1, le=100)
    TOKEN_EXPIRATION_HOURS: int = Field(default=24, ge=1, le=168)
    MAX_COUPONS_PER_DAY: int = Field(default=10, ge=1, le=50)
    BURN_TOKEN_ON_INELIGIBLE: bool = True
    BASE_REWARD_NAME: str = "Free Massage"
    POLICY_CACHE_TTL_SECONDS: float = Field(default=0.0, ge=0)

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    def policy_defaults(self) -> PolicySettings:
        return PolicySettings(
            default_redemption_threshold=self.DEFAULT_REDEMPTION_THRESHOLD,
            token_expiration_hours=self.TOKEN_EXPIRATION_HOURS,
            max_coupons_per_day=self.MAX_COUPONS_PER_DAY,
            burn_token_on_ineligible=self.BURN_TOKEN_ON_INELIGIBLE,
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
