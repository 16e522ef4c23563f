from functools import lru_cache
import json
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list_value(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if raw == "":
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in raw.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        validate_by_name=True,
        populate_by_name=True,
    )
    database_url: str = ""

    jwt_secret: str = Field(
        default="",
        validation_alias=AliasChoices("JWT_SECRET", "jwt_secret"),
    )
    jwt_algorithm: str = "HS256"
    jwt_audience: str = ""

    app_version: str = "1.0.0"
    docs_enabled: bool = Field(default=True)
    openapi_enabled: bool = Field(default=True)
    expose_error_details: bool = False
    security_headers_enabled: bool = True

    pii_redaction_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("PII_REDACTION_ENABLED", "pii_redaction_enabled"),
    )
    pii_redaction_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "phone",
            "email",
            "street_address",
            "national_id",
        ],
        validation_alias=AliasChoices("PII_REDACTION_FIELDS", "pii_redaction_fields"),
    )

    enable_notification_outbox: bool = True
    notification_channel: str = "email"

    request_number_prefix: str = "SR"
    harvest_max_workers: int = 50
    harvest_max_window_days: int = 30

    cors_allow_origins: Annotated[list[str], NoDecode] = Field(default_factory=list)
    cors_allow_methods: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "GET",
        "POST",
        "PUT",
        "DELETE",
        "OPTIONS",
    ])
    cors_allow_headers: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [
        "Authorization",
        "Content-Type",
        "Accept",
        "If-Match",
    ])

    @field_validator(
        "cors_allow_origins",
        "cors_allow_methods",
        "cors_allow_headers",
        "pii_redaction_fields",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return _parse_list_value(value)
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    return Settings()
