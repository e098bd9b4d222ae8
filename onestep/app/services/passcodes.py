"""
Passcode lifecycle: creation and verification.

Creation lifecycle (strictly enforced):

    1. Strength check            (AVV, pure)
    2. Date-of-birth correlation (AVV, pure, only if a DOB is on file)
    3. Slow salted hash          (worker thread)
    4. Persist, overwriting any prior record
    5. One LOW audit entry

Steps 1 and 2 MUST both pass before step 3 runs. Nothing is persisted on
any rejection. The sequence runs under a per-user advisory lock so that
concurrent writes for the same user cannot interleave between validation
and persistence.

Every path, success or rejection, produces exactly one audit entry. No
secret or hash ever reaches a log record or an audit entry.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Dict, List, Optional

import anyio.to_thread
from pydantic import BaseModel, ConfigDict

from onestep.app.checks.strength import validate_passcode_format
from onestep.app.coordinator.avv_coordinator import AVVCoordinator
from onestep.app.errors import (
    AccountNotFoundError,
    CollaboratorFailure,
    NoSecretConfiguredError,
    PasscodeFormatError,
    PersonalDataCorrelationError,
    SecretMismatchError,
    UnverifiedAccountError,
    WeakSecretError,
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
from onestep.app.schemas.avv import CheckRequest, CheckResult, CheckType
from onestep.app.schemas.session import LoginMethod, SessionCredential
from onestep.app.schemas.users import UserRecord
from onestep.app.services.sessions import SessionIssuer
from onestep.app.services.user_directory import UserDirectory
from onestep.app.utils.hashing import SecretHasher

logger = logging.getLogger("onestep.passcodes")


class PasscodeCreated(BaseModel):
    user_id: str
    strength_score: int

    model_config = ConfigDict(frozen=True)


class PasscodeLifecycleManager:
    def __init__(
        self,
        *,
        coordinator: AVVCoordinator,
        directory: UserDirectory,
        hasher: SecretHasher,
        issuer: SessionIssuer,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._coordinator = coordinator
        self._directory = directory
        self._hasher = hasher
        self._issuer = issuer
        self._audit_sink = audit_sink or NullAuditSink()

        # Locks live only while some coroutine holds a reference.
        self._user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_passcode(
        self,
        user_id: str,
        secret: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> PasscodeCreated:
        client = client or ClientInfo()

        async with self._lock_for(user_id):
            # ----------------------------------------------------------
            # 1. Strength (format errors surface here too)
            # ----------------------------------------------------------
            try:
                validate_passcode_format(secret)
                strength = self._coordinator.evaluate(
                    CheckRequest(
                        check_type=CheckType.STRENGTH.value,
                        input=secret,
                    )
                )
            except PasscodeFormatError:
                await self._record_rejection(
                    user_id,
                    check_type=CheckType.STRENGTH,
                    reason="invalid_format",
                    client=client,
                )
                raise

            if strength.result == CheckResult.FAIL:
                feedback: List[str] = list(strength.metadata.get("feedback", []))
                await self._record_rejection(
                    user_id,
                    check_type=CheckType.STRENGTH,
                    reason=strength.reason,
                    client=client,
                    metadata={"score": strength.score},
                )
                logger.info(
                    "passcode_rejected_weak",
                    extra={"user_id": user_id, "score": strength.score},
                )
                raise WeakSecretError(feedback)

            # ----------------------------------------------------------
            # 2. Date-of-birth correlation
            # ----------------------------------------------------------
            user = await self._lookup(user_id, client=client)
            if user is None:
                await self._record_rejection(
                    user_id,
                    check_type=None,
                    reason="user_not_found",
                    client=client,
                    risk_level=RiskLevel.MEDIUM,
                )
                raise AccountNotFoundError("User account not found")

            if user.date_of_birth is not None:
                personal = self._coordinator.evaluate(
                    CheckRequest(
                        check_type=CheckType.PERSONAL_DATA.value,
                        input=secret,
                        context={"date_of_birth": user.date_of_birth},
                    )
                )
                if personal.result == CheckResult.FAIL:
                    await self._record_rejection(
                        user.user_id,
                        check_type=CheckType.PERSONAL_DATA,
                        reason=personal.reason,
                        client=client,
                    )
                    logger.info(
                        "passcode_rejected_personal_data",
                        extra={"user_id": user.user_id},
                    )
                    raise PersonalDataCorrelationError()
            else:
                logger.info(
                    "passcode_dob_check_skipped",
                    extra={"user_id": user.user_id},
                )

            # ----------------------------------------------------------
            # 3 + 4. Hash and persist
            # ----------------------------------------------------------
            try:
                digest = await anyio.to_thread.run_sync(
                    self._hasher.hash, secret
                )
                await self._directory.set_passcode_hash(user.user_id, digest)
            except Exception as exc:
                await self._record_system_error(
                    user.user_id,
                    reason="passcode_persist_failed",
                    exc=exc,
                    client=client,
                )
                raise CollaboratorFailure() from exc

            # ----------------------------------------------------------
            # 5. Success record
            # ----------------------------------------------------------
            await append_best_effort(
                self._audit_sink,
                AuditLogEntry(
                    event_type=AuditEventType.PASSCODE_SETUP,
                    user_id=user.user_id,
                    check_type=CheckType.STRENGTH.value,
                    redacted_input=REDACTION_MARKER,
                    result=CheckResult.PASS,
                    reason="User successfully created their passcode",
                    risk_level=RiskLevel.LOW,
                    metadata={
                        "avvPassed": True,
                        "strengthScore": strength.score,
                        "osId": user.os_identifier,
                    },
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                ),
                logger,
            )

            logger.info(
                "passcode_created",
                extra={"user_id": user.user_id, "score": strength.score},
            )

            return PasscodeCreated(
                user_id=user.user_id,
                strength_score=strength.score or 0,
            )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_passcode(
        self,
        identifier: str,
        secret: str,
        *,
        client: Optional[ClientInfo] = None,
    ) -> SessionCredential:
        """
        Verify a passcode login and issue a passcode session.

        Not-found and mismatch surface with the same client message; the
        audit reasons differ. A malformed passcode is rejected before any
        lookup but still leaves one LOGIN_FAILED entry. A mismatch against a known account is
        graded HIGH as an active guessing attempt.
        """
        client = client or ClientInfo()
        try:
            validate_passcode_format(secret)
        except PasscodeFormatError:
            await self._record_login_failure(
                None,
                reason="invalid_format",
                risk_level=RiskLevel.MEDIUM,
                client=client,
                metadata={"identifier": identifier},
            )
            raise

        user = await self._lookup(identifier, client=client)

        if user is None:
            await self._record_login_failure(
                None,
                reason="user_not_found",
                risk_level=RiskLevel.MEDIUM,
                client=client,
                metadata={"identifier": identifier},
            )
            raise AccountNotFoundError()

        if not user.passcode_hash:
            await self._record_login_failure(
                user.user_id,
                reason="no_passcode_setup",
                risk_level=RiskLevel.MEDIUM,
                client=client,
            )
            raise NoSecretConfiguredError()

        if not user.is_verified:
            await self._record_login_failure(
                user.user_id,
                reason="account_not_verified",
                risk_level=RiskLevel.MEDIUM,
                client=client,
            )
            raise UnverifiedAccountError()

        try:
            matches = await anyio.to_thread.run_sync(
                self._hasher.verify, secret, user.passcode_hash
            )
        except Exception as exc:
            await self._record_system_error(
                user.user_id,
                reason="passcode_verify_failed",
                exc=exc,
                client=client,
            )
            raise CollaboratorFailure() from exc

        if not matches:
            await self._record_login_failure(
                user.user_id,
                reason="invalid_passcode",
                risk_level=RiskLevel.HIGH,
                client=client,
            )
            raise SecretMismatchError()

        credential = await self._issuer.issue(
            user,
            LoginMethod.PASSCODE,
            client=client,
        )

        try:
            await self._directory.update_last_login(user.user_id)
        except Exception:
            # The session is already issued; a stale timestamp is tolerable.
            logger.warning(
                "last_login_update_failed",
                extra={"user_id": user.user_id},
            )

        return credential

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock

    async def _lookup(
        self,
        identifier: str,
        *,
        client: ClientInfo,
    ) -> Optional[UserRecord]:
        try:
            return await self._directory.find_by_identifier(identifier)
        except Exception as exc:
            await self._record_system_error(
                None,
                reason="user_lookup_failed",
                exc=exc,
                client=client,
            )
            raise CollaboratorFailure() from exc

    async def _record_rejection(
        self,
        user_id: str,
        *,
        check_type: Optional[CheckType],
        reason: Optional[str],
        client: ClientInfo,
        risk_level: RiskLevel = RiskLevel.LOW,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=AuditEventType.PASSCODE_REJECTED,
                user_id=user_id,
                check_type=check_type.value if check_type else None,
                redacted_input=REDACTION_MARKER,
                result=CheckResult.FAIL,
                reason=reason,
                risk_level=risk_level,
                metadata=metadata or {},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )

    async def _record_login_failure(
        self,
        user_id: Optional[str],
        *,
        reason: str,
        risk_level: RiskLevel,
        client: ClientInfo,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            "passcode_login_failed",
            extra={"user_id": user_id, "reason": reason},
        )
        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=AuditEventType.LOGIN_FAILED,
                user_id=user_id,
                redacted_input=REDACTION_MARKER,
                result=CheckResult.FAIL,
                reason=reason,
                risk_level=risk_level,
                metadata={"loginMethod": LoginMethod.PASSCODE.value, **(metadata or {})},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )

    async def _record_system_error(
        self,
        user_id: Optional[str],
        *,
        reason: str,
        exc: Exception,
        client: ClientInfo,
    ) -> None:
        logger.error(
            reason,
            extra={"user_id": user_id, "error_type": type(exc).__name__},
        )
        await append_best_effort(
            self._audit_sink,
            AuditLogEntry(
                event_type=AuditEventType.SYSTEM_ERROR,
                user_id=user_id,
                result=CheckResult.FAIL,
                reason=reason,
                risk_level=RiskLevel.HIGH,
                metadata={"errorType": type(exc).__name__},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            ),
            logger,
        )
