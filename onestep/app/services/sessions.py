"""
Session issuance policy.

Builds the fixed claim set for a verified user, signs it through the
TokenSigner collaborator, and records the login.

Session lifetimes are fixed policy:
- passcode and otp logins: 7 days
- biometric logins: 30 days

The signed token is the unit of trust. It is returned to the caller
inside the SessionCredential and is never written to a log or an audit
entry.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from onestep.app.errors import CollaboratorFailure
from onestep.app.events import (
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
from onestep.app.schemas.users import UserRecord
from onestep.app.services.signing import TokenSigner

logger = logging.getLogger("onestep.sessions")


SESSION_LIFETIMES: Dict[LoginMethod, timedelta] = {
    LoginMethod.PASSCODE: timedelta(days=7),
    LoginMethod.OTP: timedelta(days=7),
    LoginMethod.BIOMETRIC: timedelta(days=30),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionIssuer:
    def __init__(
        self,
        *,
        signer: TokenSigner,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._signer = signer
        self._audit_sink = audit_sink or NullAuditSink()
        self._clock = clock

    async def issue(
        self,
        user: UserRecord,
        method: LoginMethod,
        *,
        client: Optional[ClientInfo] = None,
        is_setup_complete: Optional[bool] = None,
    ) -> SessionCredential:
        """
        Issue a signed session for a user who has just been verified.

        Callers MUST only invoke this after a successful verification step.
        """
        method = LoginMethod(method)
        client = client or ClientInfo()

        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + SESSION_LIFETIMES[method]
        token_id = secrets.token_urlsafe(16)

        setup_complete = (
            user.is_setup_complete
            if is_setup_complete is None
            else is_setup_complete
        )

        claims: Dict[str, Any] = {
            "sub": user.user_id,
            "userId": user.user_id,
            "osId": user.os_identifier,
            "username": user.username,
            "isSetupComplete": setup_complete,
            "isVerified": user.is_verified,
            "loginMethod": method.value,
            "iat": issued_at,
            "jti": token_id,
        }

        try:
            token = self._signer.sign(claims, expires_at)
        except Exception as exc:
            logger.exception(
                "session_signing_failed",
                extra={"user_id": user.user_id, "login_method": method.value},
            )
            await append_best_effort(
                self._audit_sink,
                AuditLogEntry(
                    event_type=AuditEventType.SYSTEM_ERROR,
                    user_id=user.user_id,
                    result=CheckResult.FAIL,
                    reason="session_signing_failed",
                    risk_level=RiskLevel.HIGH,
                    metadata={"loginMethod": method.value},
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                ),
                logger,
            )
            raise CollaboratorFailure() from exc

        credential = SessionCredential(
            subject_user_id=user.user_id,
            os_identifier=user.os_identifier,
            username=user.username,
            is_setup_complete=setup_complete,
            is_verified=user.is_verified,
            login_method=method,
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
            token=token,
        )

        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=AuditEventType.LOGIN_SUCCESS,
                user_id=user.user_id,
                result=CheckResult.PASS,
                reason=f"Successful {method.value} login",
                risk_level=RiskLevel.LOW,
                metadata={
                    "loginMethod": method.value,
                    "tokenId": token_id,
                    "expiresAt": expires_at.isoformat(),
                },
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )

        logger.info(
            "session_issued",
            extra={
                "user_id": user.user_id,
                "login_method": method.value,
                "token_id": token_id,
            },
        )

        return credential

    def authenticate(self, token: str) -> Dict[str, Any]:
        """
        Verify a presented session token and return its claims.

        Raises InvalidSessionError for missing, expired or tampered tokens.
        """
        return self._signer.verify(token)
