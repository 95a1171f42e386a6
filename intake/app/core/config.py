"""
Centralized configuration management for the registration intake service.

Settings are read once from the environment (and an optional .env file)
and are immutable afterwards. Missing values are tolerated at startup:
operations that need them raise ConfigurationError at request time, so a
partially configured deployment still serves the endpoints it can.
"""

import logging
from functools import lru_cache
from typing import Annotated, List

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("intake.config")

DEV_JWT_SECRET = "your-default-jwt-secret-change-in-production"


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

OptionalEnv = Annotated[
    str,
    Field(default=""),
]

SensitiveEnv = Annotated[
    SecretStr,
    Field(
        default=SecretStr(""),
        description="Sensitive credential, redacted from logs",
    ),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Only the broker connection is checked at startup. Storage, CAPTCHA and
    subject settings are validated lazily by the operations that use them.
    """

    # ---------------------------------------------------------------------
    # HTTP listener
    # ---------------------------------------------------------------------

    port: Annotated[int, Field(default=8081, ge=1, le=65535)]
    log_level: Annotated[str, Field(default="INFO")]
    cors_allow_origins: Annotated[
        List[str],
        Field(default_factory=lambda: ["*"]),
    ]

    # ---------------------------------------------------------------------
    # Message broker (NATS request/reply)
    # ---------------------------------------------------------------------

    nats_url: OptionalEnv
    register_individual_subject: OptionalEnv
    register_employer_subject: OptionalEnv
    register_employer_id_subject: OptionalEnv
    site_code: OptionalEnv
    broker_timeout_seconds: Annotated[float, Field(default=10.0, gt=0)]

    # ---------------------------------------------------------------------
    # Object storage (S3-compatible presigning)
    # ---------------------------------------------------------------------

    oss_endpoint: OptionalEnv
    oss_region: OptionalEnv
    oss_access_key_id: OptionalEnv
    oss_access_key_secret: SensitiveEnv
    oss_bucket_name: OptionalEnv
    presign_expiry_seconds: Annotated[int, Field(default=900, ge=1)]

    # ---------------------------------------------------------------------
    # CAPTCHA and upload tokens
    # ---------------------------------------------------------------------

    turnstile_secret_key: SensitiveEnv
    turnstile_verify_url: Annotated[
        str,
        Field(
            default="https://challenges.cloudflare.com/turnstile/v0/siteverify",
        ),
    ]
    jwt_secret: Annotated[
        SecretStr,
        Field(
            default=SecretStr(""),
            validation_alias=AliasChoices("jwt_secret", "jwt_secret_key"),
        ),
    ]

    # ---------------------------------------------------------------------
    # Direct uploads and client capability document
    # ---------------------------------------------------------------------

    upload_dir: Annotated[str, Field(default="uploads")]
    max_general_files: Annotated[int, Field(default=2, ge=0)]
    max_plate_numbers: Annotated[int, Field(default=5, ge=0)]
    concurrent_uploads: Annotated[int, Field(default=2, ge=1)]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
        frozen=True,
    )

    def signing_secret(self) -> str:
        """
        Return the upload-token signing secret.

        Falls back to a development default when JWT_SECRET is unset.
        Every token signed with the default is forgeable by anyone who
        has read this source file.
        """
        secret = self.jwt_secret.get_secret_value()
        if secret:
            return secret
        logger.warning(
            "jwt_secret_not_configured",
            extra={"fallback": "development_default"},
        )
        return DEV_JWT_SECRET


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.
    """
    return Settings()  # singleton within process
