"""
Passcode strength scoring.

Scores a six-digit numeric passcode on four additive sub-checks and
reports human-readable feedback for every sub-check that did not score.

Scoring is deterministic, pure and bounded to [0, 100]. The caller must
pass a well-formed passcode; anything else is rejected with a format
error rather than scored.
"""

from __future__ import annotations

import re
from typing import List

from pydantic import BaseModel, ConfigDict

from onestep.app.errors import PasscodeFormatError


# ------------------------------------------------------------------
# Policy constants
# ------------------------------------------------------------------

PASSCODE_LENGTH = 6

WEAK_THRESHOLD = 60

_PASSCODE_FORMAT = re.compile(r"[0-9]{6}")

_ALL_SAME_DIGIT = re.compile(r"^([0-9])\1+$")

_ASCENDING_RUNS = re.compile(r"012345|123456|234567|345678|456789|567890")

_DESCENDING_RUNS = re.compile(r"987654|876543|765432|654321|543210|432109")

COMMON_PASSCODES = frozenset(
    {"000000", "111111", "123456", "654321", "123123", "456456"}
)

FEEDBACK_SHORT = "Passcode should be at least 6 digits"
FEEDBACK_PATTERN = "Avoid obvious patterns like 111111 or 123456"
FEEDBACK_VARIETY = "Use different digits for better security"
FEEDBACK_COMMON = "This passcode is too common and easily guessed"


class PasscodeStrength(BaseModel):
    score: int
    feedback: List[str]
    is_weak: bool

    model_config = ConfigDict(frozen=True)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def validate_passcode_format(secret: str) -> None:
    """Raise PasscodeFormatError unless secret is exactly six ASCII digits."""
    if not isinstance(secret, str) or not _PASSCODE_FORMAT.fullmatch(secret):
        raise PasscodeFormatError()


def has_obvious_pattern(secret: str) -> bool:
    return bool(
        _ALL_SAME_DIGIT.match(secret)
        or _ASCENDING_RUNS.search(secret)
        or _DESCENDING_RUNS.search(secret)
    )


# ------------------------------------------------------------------
# Public scorer
# ------------------------------------------------------------------


def score_strength(secret: str) -> PasscodeStrength:
    """
    Score a passcode.

    Sub-checks (additive, starting at 0):
    - +20 length >= 6
    - +30 no all-identical, ascending or descending run
    - +25 four or more distinct digits, +15 for two or three
    - +25 not in the common-passcode deny-list

    is_weak is true below 60.
    """
    validate_passcode_format(secret)

    feedback: List[str] = []
    score = 0

    if len(secret) >= PASSCODE_LENGTH:
        score += 20
    else:
        feedback.append(FEEDBACK_SHORT)

    if not has_obvious_pattern(secret):
        score += 30
    else:
        feedback.append(FEEDBACK_PATTERN)

    unique_digits = len(set(secret))
    if unique_digits >= 4:
        score += 25
    elif unique_digits >= 2:
        score += 15
    else:
        feedback.append(FEEDBACK_VARIETY)

    if secret not in COMMON_PASSCODES:
        score += 25
    else:
        feedback.append(FEEDBACK_COMMON)

    score = min(score, 100)

    return PasscodeStrength(
        score=score,
        feedback=feedback,
        is_weak=score < WEAK_THRESHOLD,
    )
