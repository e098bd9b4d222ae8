"""
Personal-data correlation for passcodes.

Decides whether a passcode embeds a substring derivable from the account
holder's date of birth.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import List, Union


DateLike = Union[date, datetime, str]


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    # ISO date or ISO timestamp; only the calendar date matters.
    return date.fromisoformat(value.strip()[:10])


def dob_candidates(date_of_birth: DateLike) -> List[str]:
    """
    Build the DOB-derived candidate substrings.

    Order: DDMM, MMDD, DDMMYY, MMDDYY, YYMMDD, DDYY, MMYY, YYYY.
    """
    dob = _as_date(date_of_birth)

    day = f"{dob.day:02d}"
    month = f"{dob.month:02d}"
    year = f"{dob.year:04d}"
    short_year = year[-2:]

    return [
        day + month,
        month + day,
        day + month + short_year,
        month + day + short_year,
        short_year + month + day,
        day + short_year,
        month + short_year,
        year,
    ]


def is_related_to_dob(secret: str, date_of_birth: DateLike) -> bool:
    """
    True iff the secret contains a candidate, or a candidate contains
    the secret.
    """
    return any(
        candidate in secret or secret in candidate
        for candidate in dob_candidates(date_of_birth)
    )
