from datetime import datetime, timedelta, timezone

import jwt
import pytest
from pydantic import SecretStr

from onestep.app.errors import CollaboratorFailure, InvalidSessionError
from onestep.app.events import AuditEventType, InMemoryAuditSink, RiskLevel
from onestep.app.schemas.session import LoginMethod
from onestep.app.services.sessions import SessionIssuer
from onestep.app.services.signing import JwtTokenSigner
from onestep.tests.fixtures.fakes import (
    TEST_JWT_SECRET,
    FailingSigner,
    MutableClock,
    make_user,
)

pytestmark = pytest.mark.anyio


def _signer(**overrides) -> JwtTokenSigner:
    options = {"secret": SecretStr(TEST_JWT_SECRET)}
    options.update(overrides)
    return JwtTokenSigner(**options)


@pytest.mark.parametrize(
    "method, days",
    [
        (LoginMethod.PASSCODE, 7),
        (LoginMethod.OTP, 7),
        (LoginMethod.BIOMETRIC, 30),
    ],
)
async def test_session_lifetime_depends_on_login_method(method, days):
    clock = MutableClock(datetime(2024, 5, 1, 8, 30, 15, 123456, tzinfo=timezone.utc))
    issuer = SessionIssuer(signer=_signer(), clock=clock)

    credential = await issuer.issue(make_user(), method)

    assert credential.issued_at == datetime(2024, 5, 1, 8, 30, 15, tzinfo=timezone.utc)
    assert credential.expires_at - credential.issued_at == timedelta(days=days)
    assert credential.max_age_seconds == days * 24 * 60 * 60


async def test_token_carries_the_fixed_claim_set():
    issuer = SessionIssuer(signer=_signer())
    user = make_user()

    credential = await issuer.issue(user, LoginMethod.PASSCODE)
    claims = issuer.authenticate(credential.token.get_secret_value())

    assert claims["sub"] == claims["userId"] == "user-1"
    assert claims["osId"] == "OS-0001"
    assert claims["username"] == "alice"
    assert claims["isSetupComplete"] is True
    assert claims["isVerified"] is True
    assert claims["loginMethod"] == "passcode"
    assert claims["jti"] == credential.token_id
    assert claims["iss"] == "onestep-auth"
    assert claims["aud"] == "onestep-users"


async def test_success_entry_never_contains_the_token():
    sink = InMemoryAuditSink()
    issuer = SessionIssuer(signer=_signer(), audit_sink=sink)

    credential = await issuer.issue(make_user(), LoginMethod.BIOMETRIC)

    [entry] = sink.entries
    assert entry.event_type == AuditEventType.LOGIN_SUCCESS
    assert entry.risk_level == RiskLevel.LOW
    assert entry.metadata["loginMethod"] == "biometric"
    assert credential.token.get_secret_value() not in entry.model_dump_json()
    assert credential.token.get_secret_value() not in repr(credential)


async def test_signing_failure_is_collaborator_failure():
    sink = InMemoryAuditSink()
    issuer = SessionIssuer(signer=FailingSigner(), audit_sink=sink)

    with pytest.raises(CollaboratorFailure):
        await issuer.issue(make_user(), LoginMethod.PASSCODE)

    [entry] = sink.entries
    assert entry.event_type == AuditEventType.SYSTEM_ERROR
    assert entry.risk_level == RiskLevel.HIGH


async def test_setup_flag_can_be_overridden_by_caller():
    issuer = SessionIssuer(signer=_signer())

    credential = await issuer.issue(
        make_user(is_setup_complete=True),
        LoginMethod.OTP,
        is_setup_complete=False,
    )

    assert credential.is_setup_complete is False


# ---------------------------------------------------------------------------
# authenticate
# ---------------------------------------------------------------------------


async def test_expired_token_is_rejected():
    clock = MutableClock(datetime.now(timezone.utc) - timedelta(days=8))
    issuer = SessionIssuer(signer=_signer(), clock=clock)

    credential = await issuer.issue(make_user(), LoginMethod.PASSCODE)

    with pytest.raises(InvalidSessionError) as exc_info:
        issuer.authenticate(credential.token.get_secret_value())

    assert "expired" in exc_info.value.client_message


async def test_token_for_another_audience_is_rejected():
    foreign = SessionIssuer(signer=_signer(audience="someone-else"))
    issuer = SessionIssuer(signer=_signer())

    credential = await foreign.issue(make_user(), LoginMethod.PASSCODE)

    with pytest.raises(InvalidSessionError):
        issuer.authenticate(credential.token.get_secret_value())


def test_tampered_and_garbage_tokens_are_rejected():
    issuer = SessionIssuer(signer=_signer())
    forged = jwt.encode(
        {"sub": "user-1", "exp": datetime.now(timezone.utc) + timedelta(days=1)},
        "x" * 40,
        algorithm="HS256",
    )

    for token in (forged, "not-a-token", ""):
        with pytest.raises(InvalidSessionError):
            issuer.authenticate(token)
