"""
Centralized settings using Pydantic Settings (v2).
Everything comes from environment variables (or a local .env) so the
OAuth client secret is never hard-coded.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    # ---- CRM ----
    AMO_URL: str = Field(default="", description="CRM base URL, e.g. https://example.amocrm.ru/")

    # ---- OAuth2 client ----
    CLIENT_ID: str = Field(default="", description="OAuth integration client id")
    CLIENT_SECRET: str = Field(default="", description="OAuth integration client secret")
    REDIRECT_URL: str = Field(default="", description="Redirect URI registered for the integration")
    AUTH_CODE: str | None = Field(
        default=None,
        description="One-time authorization code, used when none is passed on the command line",
    )
    TOKEN_REFRESH_MARGIN_S: int = Field(default=10, description="Refresh this many seconds before expiry")

    # ---- Server ----
    HOST: str = Field(default="0.0.0.0")
    APP_PORT: int = Field(default=3000)

    # ---- Observability ----
    SERVICE_NAME: str = Field(default="crm-gateway")
    LOG_LEVEL: str = Field(default="INFO")
    OTEL_EXPORTER_OTLP_ENDPOINT: str | None = None  # set to export traces

    # ---- PII Redaction (logs only; CRM payloads are never altered) ----
    PII_REDACTION_ENABLED: bool = Field(default=True)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
