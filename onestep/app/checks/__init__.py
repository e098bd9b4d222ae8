from .strength import PasscodeStrength, score_strength, validate_passcode_format
from .personal_data import dob_candidates, is_related_to_dob
from .heuristics import HeuristicScore, score_behavior, score_device_trust
from .biometric import (
    BiometricQuality,
    parse_enrollment_payload,
    score_biometric_quality,
)

__all__ = [
    "PasscodeStrength",
    "score_strength",
    "validate_passcode_format",
    "dob_candidates",
    "is_related_to_dob",
    "HeuristicScore",
    "score_behavior",
    "score_device_trust",
    "BiometricQuality",
    "parse_enrollment_payload",
    "score_biometric_quality",
]
