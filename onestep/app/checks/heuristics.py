"""
Device and behavior heuristics.

Lightweight scoring over connection metadata and input shape. These are
weak signals: they are not cryptographically meaningful and exist to
surface obvious automation. Thresholds are fixed and MUST remain stable
so that verdicts are reproducible across deployments.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from onestep.app.schemas.avv import CheckResult, result_for_score


PASS_AT = 70
WARN_AT = 50

SUSPICIOUS_AGENT_MARKERS = ("bot", "crawler")

MIN_AGENT_LENGTH = 20
SHORT_AGENT_LENGTH = 50

REASONABLE_INPUT_TIME_MS = 30_000

_HAS_DIGIT = re.compile(r"\d")
_HAS_LETTER = re.compile(r"[a-zA-Z]")


class HeuristicScore(BaseModel):
    score: int
    result: CheckResult

    model_config = ConfigDict(frozen=True)


# ------------------------------------------------------------------
# Device trust
# ------------------------------------------------------------------


def is_suspicious_user_agent(user_agent: str) -> bool:
    return (
        any(marker in user_agent for marker in SUSPICIOUS_AGENT_MARKERS)
        or len(user_agent) < MIN_AGENT_LENGTH
    )


def is_loopback_address(ip_address: str) -> bool:
    """
    Loopback detection over a raw address or a forwarded-for list.

    Unparseable entries are ignored, except the literal "localhost".
    """
    for part in ip_address.split(","):
        candidate = part.strip()
        if candidate.lower() == "localhost":
            return True
        try:
            if ipaddress.ip_address(candidate).is_loopback:
                return True
        except ValueError:
            continue
    return False


def score_device_trust(
    user_agent: Optional[str],
    ip_address: Optional[str],
    *,
    environment: str,
) -> HeuristicScore:
    """
    Start at 100:
    - -30 suspicious agent ("bot"/"crawler", or shorter than 20 chars)
    - -20 loopback address while running in production
    - -10 agent shorter than 50 chars
    """
    user_agent = user_agent or ""
    score = 100

    if is_suspicious_user_agent(user_agent):
        score -= 30
    if (
        ip_address
        and environment == "production"
        and is_loopback_address(ip_address)
    ):
        score -= 20
    if len(user_agent) < SHORT_AGENT_LENGTH:
        score -= 10

    return HeuristicScore(
        score=score,
        result=result_for_score(score, pass_at=PASS_AT, warn_at=WARN_AT),
    )


# ------------------------------------------------------------------
# Behavioral pattern
# ------------------------------------------------------------------


def score_behavior(
    value: str,
    input_time_ms: Optional[int],
) -> HeuristicScore:
    """
    Start at 50 (neutral):
    - +20 input length within [6, 20]
    - +15 input mixes digits and letters
    - +15 input time reported and under 30 seconds
    """
    score = 50

    if 6 <= len(value) <= 20:
        score += 20
    if _HAS_DIGIT.search(value) and _HAS_LETTER.search(value):
        score += 15
    if input_time_ms is not None and input_time_ms < REASONABLE_INPUT_TIME_MS:
        score += 15

    return HeuristicScore(
        score=score,
        result=result_for_score(score, pass_at=PASS_AT, warn_at=WARN_AT),
    )
