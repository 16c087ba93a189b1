"""Configuration objects for the dog walking service."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration pulled from environment variables."""

    database_path: str = Field(
        default="dogwalking.db",
        validation_alias="DOGWALKING_DATABASE_PATH",
        description="SQLite database file, or ':memory:' for a throwaway store.",
    )
    secret_key: SecretStr = Field(
        default=SecretStr("dogwalking-secret"),
        validation_alias="DOGWALKING_SECRET_KEY",
    )
    invitation_ttl_days: int = Field(default=7, ge=1, validation_alias="DOGWALKING_INVITATION_TTL_DAYS")
    billing_csv_locale: Literal["de", "en"] = Field(
        default="de", validation_alias="DOGWALKING_BILLING_CSV_LOCALE"
    )
    log_level: str = Field(default="INFO", validation_alias="DOGWALKING_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )
