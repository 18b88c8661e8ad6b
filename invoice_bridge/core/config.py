from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


Environment = Literal["sandbox", "prod"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "invoice-bridge"
    app_version: str = "0.1.0"
    environment: Environment = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    qbo_client_id: str = Field(..., alias="QBO_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QBO_CLIENT_SECRET")
    qbo_minor_version: str = Field(default="65", alias="QBO_MINOR_VERSION")

    database_url: str = Field(..., alias="DATABASE_URL")

    http_timeout_seconds: float = Field(default=30.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")

    token_refresh_buffer_seconds: int = Field(default=120, alias="TOKEN_REFRESH_BUFFER_SECONDS")

    # Tenants in these countries address tax per line with TaxCode ids; everyone else
    # uses the flat TAX/NON marker plus one TxnTaxDetail block.
    tax_code_countries: list[str] = Field(
        default_factory=lambda: ["CA", "GB", "AU"],
        alias="TAX_CODE_COUNTRIES",
    )
    catalog_root_category: str = Field(default="Work Orders", alias="CATALOG_ROOT_CATEGORY")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
