"""
Configuration and settings for the billing backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    # Database (Postgres expected)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # S3-compatible storage (Tencent COS) for published invoices
    cos_endpoint: Optional[str] = Field(default=None, env="COS_ENDPOINT")
    cos_region: Optional[str] = Field(default=None, env="COS_REGION")
    cos_bucket: Optional[str] = Field(default=None, env="COS_BUCKET")
    aws_access_key_id: Optional[str] = Field(
        default=None, env="AWS_ACCESS_KEY_ID"
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Negotiation workflow
    negotiation_max_rounds: int = Field(default=5, ge=1)
    billing_write_retries: int = Field(default=3, ge=1)

    # Invoice rendering
    invoice_tax_rate: float = Field(default=0.12, ge=0)
    # Core PDF fonts are Latin-1 only, so the peso sign is spelled out.
    invoice_currency_prefix: str = Field(default="PHP ")
    invoice_company_name: str = Field(default="JCC Textile Printing Services")
    invoice_footer: str = Field(default="Thank you for choosing TechShirt!")
    invoice_url_expires_in: int = Field(default=3600, ge=60, le=86400)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
