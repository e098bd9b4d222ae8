"""
User record as seen by the authentication core.

The record is owned by the external user directory. The core reads it,
writes the passcode hash and the last-login timestamp, and nothing else.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserRecord(BaseModel):
    user_id: str = Field(..., min_length=1)
    os_identifier: str = Field(..., description="User-facing OS-ID")
    username: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None

    # One-way hash only; the cleartext passcode is never stored or read back.
    passcode_hash: Optional[str] = Field(None, repr=False)

    is_verified: bool = False
    is_setup_complete: bool = False
    last_login_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def matches(self, identifier: str) -> bool:
        """Exact-match lookup against every identifier the user owns."""
        return identifier in {
            self.user_id,
            self.os_identifier,
            self.username,
            self.email,
            self.phone_number,
        }
