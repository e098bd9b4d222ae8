"""
Session credential schema.

A SessionCredential is created by the session issuer after a successful
verification step. It is immutable once issued and superseded (never
mutated) by the next successful login.

The signed token is the unit of trust. It is held as a SecretStr so that
it is redacted from reprs, logs and model dumps.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class LoginMethod(str, Enum):
    PASSCODE = "passcode"
    BIOMETRIC = "biometric"
    OTP = "otp"


class SessionCredential(BaseModel):
    subject_user_id: str
    os_identifier: str
    username: str | None = None
    is_setup_complete: bool
    is_verified: bool
    login_method: LoginMethod
    token_id: str = Field(..., description="JWT ID, usable for revocation")
    issued_at: datetime
    expires_at: datetime
    token: SecretStr

    model_config = ConfigDict(frozen=True)

    @property
    def max_age_seconds(self) -> int:
        return int((self.expires_at - self.issued_at).total_seconds())
