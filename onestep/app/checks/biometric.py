"""
Biometric enrollment payload quality.

Presence scoring over a WebAuthn enrollment payload. No attestation or
signature verification happens here; that belongs to the platform's
credential APIs.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from onestep.app.schemas.avv import CheckResult, result_for_score


PASS_AT = 80
WARN_AT = 60

FIELD_WEIGHTS = {
    "credentialId": 30,
    "publicKey": 40,
    "authenticatorData": 30,
}


class BiometricQuality(BaseModel):
    score: int
    result: CheckResult
    present_fields: Dict[str, bool]

    model_config = ConfigDict(frozen=True)


def parse_enrollment_payload(raw: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object, or None if the payload is not one."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def score_biometric_quality(payload: Dict[str, Any]) -> BiometricQuality:
    present = {name: bool(payload.get(name)) for name in FIELD_WEIGHTS}
    score = sum(
        weight for name, weight in FIELD_WEIGHTS.items() if present[name]
    )
    return BiometricQuality(
        score=score,
        result=result_for_score(score, pass_at=PASS_AT, warn_at=WARN_AT),
        present_fields=present,
    )
