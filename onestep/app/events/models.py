from __future__ import annotations

from typing import Any, Dict, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4, UUID

from pydantic import BaseModel, Field, ConfigDict

from onestep.app.schemas.avv import CheckResult


REDACTION_MARKER = "REDACTED"


# ----------------------------------------------------------------------
# Event Types (Finite and Versioned)
# ----------------------------------------------------------------------
class AuditEventType(str, Enum):
    """
    Security events recorded by the core.

    NOTE:
    This enum is finite and versioned.
    New entries must preserve append-only semantics.
    """

    # ------------------------------------------------------------------
    # AVV
    # ------------------------------------------------------------------
    AVV_CHECK = "AVV_CHECK"

    # ------------------------------------------------------------------
    # Passcode lifecycle
    # ------------------------------------------------------------------
    PASSCODE_SETUP = "PASSCODE_SETUP"
    PASSCODE_REJECTED = "PASSCODE_REJECTED"

    # ------------------------------------------------------------------
    # Login / session issuance
    # ------------------------------------------------------------------
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------
    OTP_ISSUED = "OTP_ISSUED"
    OTP_RESEND = "OTP_RESEND"

    # ------------------------------------------------------------------
    # Collaborator failures
    # ------------------------------------------------------------------
    SYSTEM_ERROR = "SYSTEM_ERROR"


class RiskLevel(str, Enum):
    """Risk grading of a security event. Ordering MUST remain stable."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# ----------------------------------------------------------------------
# Client metadata
# ----------------------------------------------------------------------
class ClientInfo(BaseModel):
    """Connection metadata attached to audit entries."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# Audit Log Entry
# ----------------------------------------------------------------------
class AuditLogEntry(BaseModel):
    """
    An immutable, append-only security record.

    Entries are:
    - created by the AVV orchestrator, the passcode lifecycle and the
      session issuer
    - never mutated or deleted by the core
    - free of secrets: secret-bearing inputs carry REDACTION_MARKER and
      session tokens are never included
    """

    entry_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: AuditEventType
    user_id: Optional[str] = None
    check_type: Optional[str] = None
    redacted_input: Optional[str] = None
    result: CheckResult
    reason: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.LOW
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
