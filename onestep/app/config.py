"""
Centralized configuration for the OneStep authentication service.

Pydantic v2 settings management to enforce strict validation,
zero secret leakage, and fast-failure on invalid configuration.

Fixed security policy (scoring thresholds, session lifetimes) is NOT
configurable and lives beside the code that enforces it.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

EnvRequired = Annotated[
    str,
    Field(min_length=1),
]

SensitiveEnv = Annotated[
    SecretStr,
    Field(description="Sensitive credential, redacted from logs"),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if the session signing secret is missing or
    too short to be a meaningful HMAC key.
    """

    # ---------------------------------------------------------------------
    # Runtime environment
    # ---------------------------------------------------------------------

    environment: Annotated[
        Literal["development", "production"],
        Field(
            default="development",
            description=(
                "Deployment environment. Production enables secure cookies "
                "and loopback penalties in device trust scoring."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Session token signing
    # ---------------------------------------------------------------------

    jwt_secret: SensitiveEnv

    jwt_algorithm: Annotated[
        Literal["HS256", "HS384", "HS512"],
        Field(default="HS256"),
    ]

    jwt_issuer: EnvRequired = "onestep-auth"
    jwt_audience: EnvRequired = "onestep-users"

    session_cookie_name: EnvRequired = "onestep-session"

    # ---------------------------------------------------------------------
    # Client address resolution
    # ---------------------------------------------------------------------

    trust_forwarded_headers: Annotated[
        bool,
        Field(
            default=False,
            description=(
                "Take the client address from X-Forwarded-For or "
                "CF-Connecting-IP. Enable only behind a proxy that "
                "overwrites these headers."
            ),
        ),
    ]

    # ---------------------------------------------------------------------
    # Passcode hashing
    # ---------------------------------------------------------------------

    bcrypt_rounds: Annotated[
        int,
        Field(
            default=12,
            ge=4,
            le=16,
            description="bcrypt cost factor (log2 of the iteration count)",
        ),
    ]

    # ---------------------------------------------------------------------
    # OTP delivery and rate limiting
    # ---------------------------------------------------------------------

    otp_ttl_minutes: Annotated[int, Field(default=10, ge=1, le=60)]
    otp_max_attempts: Annotated[int, Field(default=3, ge=1, le=10)]

    otp_resend_limit: Annotated[
        int,
        Field(
            default=3,
            ge=1,
            description="OTP resend requests allowed per client IP per window",
        ),
    ]
    otp_resend_window_minutes: Annotated[int, Field(default=15, ge=1)]

    otp_sweep_interval_seconds: Annotated[
        float,
        Field(
            default=60.0,
            gt=0,
            description="Interval of the background expired-OTP sweep",
        ),
    ]

    # ---------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ---------------------------------------------------------------------

    @field_validator("jwt_secret")
    @classmethod
    def secret_has_minimum_length(cls, v: SecretStr) -> SecretStr:
        if len(v.get_secret_value()) < 32:
            raise ValueError(
                "ONESTEP_JWT_SECRET must be at least 32 characters."
            )
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    model_config = SettingsConfigDict(
        env_prefix="ONESTEP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()
