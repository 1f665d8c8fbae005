"""Settings for the earnings ledger, loaded from ``EARNINGS_*`` environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, PositiveInt
from pydantic_settings import BaseSettings, SettingsConfigDict


class EarningsSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EARNINGS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = Field(
        "sqlite:///./earnings.db",
        description="SQLAlchemy connection string for SqlStorage",
    )
    database_echo: bool = False
    minimum_withdrawal: PositiveInt = Field(25000, description="Minor currency units")
    withdrawal_fee_percent: float = Field(10.0, ge=0, lt=100)
    frontend_url: str = "http://localhost:3000"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> EarningsSettings:
    return EarningsSettings()
