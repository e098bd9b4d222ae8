"""
One-time code (OTP) login flow.

Lifecycle of a code:

    issue -> (verify attempts)* -> used | expired | exhausted -> swept

IMPORTANT:
- Only a digest of each code is held; the clear code exists solely on its
  way to the delivery channel.
- Issuing a code for an (identifier, purpose) pair invalidates every
  outstanding code for that pair.
- Verification reads and updates a record without yielding to the event
  loop, so concurrent guesses cannot both consume the same attempt.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict

from onestep.app.errors import (
    CollaboratorFailure,
    OtpVerificationError,
    RateLimitExceededError,
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
from onestep.app.schemas.avv import CheckResult
from onestep.app.schemas.session import LoginMethod, SessionCredential
from onestep.app.services.rate_limit import RateLimiter
from onestep.app.services.sessions import SessionIssuer
from onestep.app.services.user_directory import UserDirectory

logger = logging.getLogger("onestep.otp")


OTP_EXPIRED_MESSAGE = "Invalid or expired OTP"
OTP_EXHAUSTED_MESSAGE = "Maximum attempts exceeded"
OTP_MISMATCH_MESSAGE = "Invalid OTP code"


class OtpPurpose(str, Enum):
    LOGIN = "LOGIN"
    SIGNUP = "SIGNUP"
    RESET_PASSWORD = "RESET_PASSWORD"
    VERIFY_PHONE = "VERIFY_PHONE"
    VERIFY_EMAIL = "VERIFY_EMAIL"


class OtpRecord(BaseModel):
    identifier: str
    purpose: OtpPurpose
    code_digest: str
    attempts: int = 0
    max_attempts: int = 3
    expires_at: datetime
    is_used: bool = False

    model_config = ConfigDict(frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class OtpVerification(BaseModel):
    """Outcome of a successful verification."""

    is_new_user: bool
    session: Optional[SessionCredential] = None

    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# Delivery channel
# ----------------------------------------------------------------------

class OtpDelivery(Protocol):
    async def deliver(
        self,
        identifier: str,
        code: str,
        expires_at: datetime,
    ) -> None:
        ...


class LoggingOtpDelivery:
    """
    Development delivery channel.

    Records that a code was dispatched. The code itself is never logged;
    a real deployment plugs an SMS or e-mail gateway in here.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("onestep.otp.delivery")

    async def deliver(
        self,
        identifier: str,
        code: str,
        expires_at: datetime,
    ) -> None:
        self._logger.info(
            "otp_dispatched",
            extra={
                "identifier": identifier,
                "expires_at": expires_at.isoformat(),
            },
        )


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Six-digit code without a leading zero."""
    return str(100000 + secrets.randbelow(900000))


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class OtpService:
    def __init__(
        self,
        *,
        directory: UserDirectory,
        issuer: SessionIssuer,
        delivery: OtpDelivery,
        rate_limiter: RateLimiter,
        audit_sink: Optional[AuditSink] = None,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._directory = directory
        self._issuer = issuer
        self._delivery = delivery
        self._rate_limiter = rate_limiter
        self._audit_sink = audit_sink or NullAuditSink()
        self._ttl = ttl
        self._max_attempts = max_attempts
        self._clock = clock
        self._code_factory = code_factory

        self._records: Dict[Tuple[str, OtpPurpose], OtpRecord] = {}

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue(
        self,
        identifier: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        *,
        client: Optional[ClientInfo] = None,
    ) -> datetime:
        """Issue and deliver a fresh code. Returns its expiry."""
        client = client or ClientInfo()
        purpose = OtpPurpose(purpose)
        expires_at = await self._issue_and_deliver(identifier, purpose, client)

        await self._audit(
            AuditEventType.OTP_ISSUED,
            result=CheckResult.PASS,
            reason="OTP issued",
            client=client,
            metadata={
                "identifier": identifier,
                "purpose": purpose.value,
                "expiresAt": expires_at.isoformat(),
            },
        )
        return expires_at

    async def resend(
        self,
        identifier: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        *,
        client: Optional[ClientInfo] = None,
    ) -> datetime:
        """
        Rate-limited issue or reissue, keyed by client IP. This is the
        only send path exposed over HTTP.

        The limiter is consulted before any code is generated; a refused
        request leaves outstanding codes untouched.
        """
        client = client or ClientInfo()
        key = client.ip_address or "unknown"

        decision = self._rate_limiter.check(key)
        if not decision.allowed:
            logger.warning("otp_resend_rate_limited", extra={"client_ip": key})
            await self._audit(
                AuditEventType.OTP_RESEND,
                result=CheckResult.FAIL,
                reason="rate_limited",
                risk_level=RiskLevel.MEDIUM,
                client=client,
                metadata={"identifier": identifier},
            )
            raise RateLimitExceededError(
                "Too many OTP requests. Please try again later."
            )

        expires_at = await self._issue_and_deliver(identifier, purpose, client)

        await self._audit(
            AuditEventType.OTP_RESEND,
            result=CheckResult.PASS,
            reason="OTP resent",
            client=client,
            metadata={
                "identifier": identifier,
                "attemptsRemaining": decision.remaining,
                "expiresAt": expires_at.isoformat(),
            },
        )
        return expires_at

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        identifier: str,
        code: str,
        purpose: OtpPurpose = OtpPurpose.LOGIN,
        *,
        client: Optional[ClientInfo] = None,
    ) -> OtpVerification:
        client = client or ClientInfo()
        failure = self._consume(identifier, code, purpose)

        if failure is not None:
            message, risk_level = failure
            await self._audit(
                AuditEventType.LOGIN_FAILED,
                result=CheckResult.FAIL,
                reason=message,
                risk_level=risk_level,
                client=client,
                metadata={
                    "loginMethod": LoginMethod.OTP.value,
                    "identifier": identifier,
                },
            )
            raise OtpVerificationError(message)

        try:
            user = await self._directory.find_by_identifier(identifier)
        except Exception as exc:
            logger.error(
                "user_lookup_failed",
                extra={"error_type": type(exc).__name__},
            )
            raise CollaboratorFailure() from exc

        if user is None:
            logger.info("otp_verified_new_user", extra={"identifier": identifier})
            return OtpVerification(is_new_user=True)

        credential = await self._issuer.issue(
            user,
            LoginMethod.OTP,
            client=client,
            # Setup is complete once the account has chosen a username.
            is_setup_complete=bool(user.username),
        )

        try:
            await self._directory.update_last_login(user.user_id)
        except Exception:
            logger.warning(
                "last_login_update_failed",
                extra={"user_id": user.user_id},
            )

        return OtpVerification(is_new_user=False, session=credential)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Remove expired and used records. Returns the number removed."""
        now = self._clock()
        stale = [
            key
            for key, record in self._records.items()
            if record.is_used or record.is_expired(now)
        ]
        for key in stale:
            del self._records[key]

        if stale:
            logger.debug("otp_sweep", extra={"removed": len(stale)})
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _issue_and_deliver(
        self,
        identifier: str,
        purpose: OtpPurpose,
        client: ClientInfo,
    ) -> datetime:
        purpose = OtpPurpose(purpose)
        code = self._code_factory()
        expires_at = self._clock() + self._ttl
        key = (identifier, purpose)

        # Replacing the record invalidates any outstanding code.
        self._records[key] = OtpRecord(
            identifier=identifier,
            purpose=purpose,
            code_digest=_digest(code),
            max_attempts=self._max_attempts,
            expires_at=expires_at,
        )

        try:
            await self._delivery.deliver(identifier, code, expires_at)
        except Exception as exc:
            self._records.pop(key, None)
            logger.error(
                "otp_delivery_failed",
                extra={"error_type": type(exc).__name__},
            )
            await self._audit(
                AuditEventType.SYSTEM_ERROR,
                result=CheckResult.FAIL,
                reason="otp_delivery_failed",
                risk_level=RiskLevel.HIGH,
                client=client,
                metadata={"identifier": identifier},
            )
            raise CollaboratorFailure() from exc

        logger.info(
            "otp_issued",
            extra={"identifier": identifier, "purpose": purpose.value},
        )
        return expires_at

    def _consume(
        self,
        identifier: str,
        code: str,
        purpose: OtpPurpose,
    ) -> Optional[Tuple[str, RiskLevel]]:
        """
        Check a code against the live record and update it in place.

        Returns None on success, otherwise the client message and the
        risk grading of the failure. Synchronous: no await may
        separate the read from the write.
        """
        key = (identifier, OtpPurpose(purpose))
        record = self._records.get(key)

        if record is None or record.is_used or record.is_expired(self._clock()):
            return OTP_EXPIRED_MESSAGE, RiskLevel.MEDIUM

        if record.attempts >= record.max_attempts:
            return OTP_EXHAUSTED_MESSAGE, RiskLevel.HIGH

        record = record.model_copy(update={"attempts": record.attempts + 1})
        self._records[key] = record

        if not hmac.compare_digest(record.code_digest, _digest(code)):
            return OTP_MISMATCH_MESSAGE, RiskLevel.MEDIUM

        self._records[key] = record.model_copy(update={"is_used": True})
        return None

    async def _audit(
        self,
        event_type: AuditEventType,
        *,
        result: CheckResult,
        reason: str,
        client: ClientInfo,
        risk_level: RiskLevel = RiskLevel.LOW,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=event_type,
                redacted_input=REDACTION_MARKER,
                result=result,
                reason=reason,
                risk_level=risk_level,
                metadata=metadata or {},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )
