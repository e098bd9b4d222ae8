"""
AVV (Adaptive Verification & Validation) coordinator.

IMPORTANT:
The coordinator is a DUMB AUTHORITY.

It MUST NOT:
- score anything itself
- treat missing correlating data as a security failure
- let audit logging influence the verdict

Its sole responsibilities are:
- validating the request shape
- dispatching to exactly one check by kind
- building the Verdict
- appending a redacted audit entry (best effort)
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from onestep.app.checks.strength import score_strength, validate_passcode_format
from onestep.app.checks.personal_data import is_related_to_dob
from onestep.app.checks.heuristics import score_behavior, score_device_trust
from onestep.app.checks.biometric import (
    parse_enrollment_payload,
    score_biometric_quality,
)
from onestep.app.errors import InvalidRequestError, PasscodeFormatError
from onestep.app.schemas.avv import (
    CheckRequest,
    CheckResult,
    CheckType,
    Verdict,
)
from onestep.app.events import (
    REDACTION_MARKER,
    AuditEventType,
    AuditLogEntry,
    AuditSink,
    ClientInfo,
    NullAuditSink,
    RiskLevel,
    append_best_effort,
)

logger = logging.getLogger("onestep.avv")

LOGGED_INPUT_MAX_CHARS = 100

CheckHandler = Callable[[CheckRequest], Verdict]


class AVVCoordinator:
    """
    Stateless per-request check dispatcher.

    evaluate() is the pure verdict path. check() is evaluate() plus one
    audit entry, and is what the API boundary calls.
    """

    def __init__(
        self,
        *,
        environment: str = "development",
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._environment = environment
        self._audit_sink = audit_sink or NullAuditSink()

        self._handlers: Dict[CheckType, CheckHandler] = {
            CheckType.STRENGTH: self._check_strength,
            CheckType.PERSONAL_DATA: self._check_personal_data,
            CheckType.BIOMETRIC_QUALITY: self._check_biometric_quality,
            CheckType.DEVICE_TRUST: self._check_device_trust,
            CheckType.BEHAVIORAL: self._check_behavior,
        }

        missing = set(CheckType) - set(self._handlers)
        if missing:
            raise RuntimeError(
                f"AVV handlers missing for: {sorted(m.value for m in missing)}"
            )

    # ------------------------------------------------------------------
    # Request parsing
    # ------------------------------------------------------------------

    @staticmethod
    def parse_request(payload: object) -> CheckRequest:
        """
        Validate a raw payload into a CheckRequest.

        Malformed shapes fail closed as a client error; they are never
        defaulted to a verdict.
        """
        if isinstance(payload, CheckRequest):
            return payload
        try:
            return CheckRequest.model_validate(payload)
        except ValidationError as exc:
            raise InvalidRequestError("Invalid AVV request format") from exc

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate(self, request: CheckRequest) -> Verdict:
        """
        Produce the verdict for one request. Pure: no audit, no I/O.

        Raises PasscodeFormatError for a secret-bearing check whose input
        is not a six-digit passcode.
        """
        try:
            check_type = CheckType(request.check_type)
        except ValueError:
            return Verdict(
                result=CheckResult.WARNING,
                reason="check type not implemented",
                metadata={
                    "checkType": request.check_type,
                    "implemented": False,
                },
            )

        return self._handlers[check_type](request)

    async def check(
        self,
        request: CheckRequest,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> Verdict:
        client = client or ClientInfo()

        try:
            verdict = self.evaluate(request)
        except PasscodeFormatError:
            logger.info(
                "avv_check_rejected_format",
                extra={"check_type": request.check_type},
            )
            await append_best_effort(
                self._audit_sink,
                AuditLogEntry(
                    event_type=AuditEventType.AVV_CHECK,
                    user_id=user_id,
                    check_type=request.check_type,
                    redacted_input=REDACTION_MARKER,
                    result=CheckResult.FAIL,
                    reason="invalid_format",
                    risk_level=RiskLevel.MEDIUM,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                ),
                logger,
            )
            raise

        logger.info(
            "avv_check_completed",
            extra={
                "check_type": request.check_type,
                "result": verdict.result.value,
                "score": verdict.score,
            },
        )

        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=AuditEventType.AVV_CHECK,
                user_id=user_id,
                check_type=request.check_type,
                redacted_input=self.redact_input(request),
                result=verdict.result,
                reason=verdict.reason,
                risk_level=self._risk_for(verdict),
                metadata=verdict.metadata,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )

        return verdict

    # ------------------------------------------------------------------
    # Structural helpers
    # ------------------------------------------------------------------

    @staticmethod
    def redact_input(request: CheckRequest) -> str:
        try:
            carries_secret = CheckType(request.check_type).carries_secret
        except ValueError:
            carries_secret = False

        if carries_secret:
            return REDACTION_MARKER
        return request.input[:LOGGED_INPUT_MAX_CHARS]

    @staticmethod
    def _risk_for(verdict: Verdict) -> RiskLevel:
        if verdict.result == CheckResult.FAIL:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # ------------------------------------------------------------------
    # Check handlers
    # ------------------------------------------------------------------

    def _check_strength(self, request: CheckRequest) -> Verdict:
        strength = score_strength(request.input)

        return Verdict(
            result=CheckResult.FAIL if strength.is_weak else CheckResult.PASS,
            reason=(
                ", ".join(strength.feedback)
                if strength.is_weak
                else "Passcode meets security requirements"
            ),
            score=strength.score,
            metadata={
                "score": strength.score,
                "feedback": strength.feedback,
                "uniqueDigits": len(set(request.input)),
            },
        )

    def _check_personal_data(self, request: CheckRequest) -> Verdict:
        # Same format contract as the strength check.
        validate_passcode_format(request.input)

        date_of_birth = request.context.date_of_birth
        if date_of_birth is None:
            return Verdict(
                result=CheckResult.WARNING,
                reason=(
                    "Cannot check against personal data - "
                    "date of birth not provided"
                ),
                metadata={"hasDateOfBirth": False},
            )

        related = is_related_to_dob(request.input, date_of_birth)

        return Verdict(
            result=CheckResult.FAIL if related else CheckResult.PASS,
            reason=(
                "Passcode appears to be related to your date of birth"
                if related
                else "Passcode is not related to your personal data"
            ),
            metadata={
                "hasDateOfBirth": True,
                "dobRelated": related,
            },
        )

    def _check_biometric_quality(self, request: CheckRequest) -> Verdict:
        payload = parse_enrollment_payload(request.input)
        if payload is None:
            return Verdict(
                result=CheckResult.FAIL,
                reason="Invalid biometric data format",
                score=0,
                metadata={"parseError": True},
            )

        quality = score_biometric_quality(payload)
        reasons = {
            CheckResult.PASS: "Biometric data quality is good",
            CheckResult.WARNING: (
                "Biometric data quality is acceptable but could be better"
            ),
            CheckResult.FAIL: "Biometric data quality is poor",
        }

        return Verdict(
            result=quality.result,
            reason=reasons[quality.result],
            score=quality.score,
            metadata={
                "qualityScore": quality.score,
                "hasCredentialId": quality.present_fields["credentialId"],
                "hasPublicKey": quality.present_fields["publicKey"],
                "hasAuthenticatorData": quality.present_fields[
                    "authenticatorData"
                ],
                "dataSize": len(request.input),
            },
        )

    def _check_device_trust(self, request: CheckRequest) -> Verdict:
        user_agent = request.context.user_agent or ""
        ip_address = request.context.ip_address or "unknown"

        trust = score_device_trust(
            user_agent,
            ip_address,
            environment=self._environment,
        )
        reasons = {
            CheckResult.PASS: "Device appears trustworthy",
            CheckResult.WARNING: "Device has some suspicious characteristics",
            CheckResult.FAIL: "Device appears suspicious",
        }

        return Verdict(
            result=trust.result,
            reason=reasons[trust.result],
            score=trust.score,
            metadata={
                "trustScore": trust.score,
                "userAgent": user_agent[:LOGGED_INPUT_MAX_CHARS],
                # IPv6 textual maximum
                "ipAddress": ip_address[:45],
            },
        )

    def _check_behavior(self, request: CheckRequest) -> Verdict:
        input_time_ms = request.context.input_time_ms
        behavior = score_behavior(request.input, input_time_ms)
        reasons = {
            CheckResult.PASS: "Behavioral pattern appears normal",
            CheckResult.WARNING: "Some behavioral anomalies detected",
            CheckResult.FAIL: "Unusual behavioral pattern detected",
        }

        return Verdict(
            result=behavior.result,
            reason=reasons[behavior.result],
            score=behavior.score,
            metadata={
                "behaviorScore": behavior.score,
                "inputLength": len(request.input),
                "inputTimeMs": input_time_ms,
            },
        )
