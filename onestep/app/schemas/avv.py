"""
AVV (Adaptive Verification & Validation) check schemas.

Defines the request and verdict contracts shared by the orchestrator, the
passcode lifecycle and the HTTP boundary.

A CheckRequest is created per request and never persisted beyond its audit
record. A Verdict is produced exactly once per CheckRequest.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------


class CheckType(str, Enum):
    """
    The fixed set of AVV check kinds.

    Adding a member requires registering a handler in the orchestrator;
    the orchestrator refuses to start with an incomplete registry.
    """

    STRENGTH = "STRENGTH"
    PERSONAL_DATA = "PERSONAL_DATA"
    BIOMETRIC_QUALITY = "BIOMETRIC_QUALITY"
    DEVICE_TRUST = "DEVICE_TRUST"
    BEHAVIORAL = "BEHAVIORAL"

    @property
    def carries_secret(self) -> bool:
        """Whether the check input is a secret and must be redacted."""
        return self in {CheckType.STRENGTH, CheckType.PERSONAL_DATA}


class CheckResult(str, Enum):
    """
    Outcome of a single check.

    WARNING means "degraded", never "failed": it is reserved for a missing
    correlating input or an unimplemented check kind.
    """

    PASS = "PASS"
    FAIL = "FAIL"
    WARNING = "WARNING"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class CheckContext(BaseModel):
    """Auxiliary fields a check may correlate against."""

    date_of_birth: Optional[date] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    input_time_ms: Optional[int] = Field(None, ge=0)

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def accept_iso_timestamps(cls, v: Any) -> Any:
        # Stored dates of birth frequently arrive as midnight timestamps.
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CheckRequest(BaseModel):
    """
    A single AVV check request.

    check_type is kept as a plain string so that an unknown kind reaches
    the orchestrator and degrades to WARNING instead of being rejected
    as malformed.
    """

    check_type: str = Field(..., min_length=1)
    input: str = Field(..., min_length=1)
    context: CheckContext = Field(default_factory=CheckContext)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


class Verdict(BaseModel):
    """
    Structured outcome of one AVV check.

    Invariant: result == FAIL whenever a required numeric threshold is
    not met.
    """

    result: CheckResult
    reason: Optional[str] = None
    score: Optional[int] = Field(None, ge=0, le=100)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


def result_for_score(score: int, *, pass_at: int, warn_at: int) -> CheckResult:
    """Map a heuristic score onto the three-way result."""
    if score >= pass_at:
        return CheckResult.PASS
    if score >= warn_at:
        return CheckResult.WARNING
    return CheckResult.FAIL
