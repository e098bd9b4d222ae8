import pytest
from pydantic import SecretStr

from onestep.app.errors import (
    CollaboratorFailure,
    OtpVerificationError,
    RateLimitExceededError,
)
from onestep.app.events import (
    AuditEventType,
    ClientInfo,
    InMemoryAuditSink,
    RiskLevel,
)
from onestep.app.schemas.session import LoginMethod
from onestep.app.services.otp import OtpPurpose, OtpService, generate_code
from onestep.app.services.rate_limit import FixedWindowRateLimiter
from onestep.app.services.sessions import SessionIssuer
from onestep.app.services.signing import JwtTokenSigner
from onestep.tests.fixtures.fakes import (
    TEST_JWT_SECRET,
    MonotonicClock,
    MutableClock,
    RecordingOtpDelivery,
    RecordingUserDirectory,
    make_user,
)

pytestmark = pytest.mark.anyio

CLIENT = ClientInfo(ip_address="203.0.113.7", user_agent="pytest")


def build_service(*, clock=None, limit=3, codes=None):
    directory = RecordingUserDirectory()
    delivery = RecordingOtpDelivery()
    sink = InMemoryAuditSink()
    options = {}
    if codes is not None:
        options["code_factory"] = iter(codes).__next__

    service = OtpService(
        directory=directory,
        issuer=SessionIssuer(
            signer=JwtTokenSigner(secret=SecretStr(TEST_JWT_SECRET)),
            audit_sink=sink,
        ),
        delivery=delivery,
        rate_limiter=FixedWindowRateLimiter(limit, 900, clock=MonotonicClock()),
        audit_sink=sink,
        clock=clock or MutableClock(),
        **options,
    )
    return service, directory, delivery, sink


def test_generated_codes_are_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()
        assert code[0] != "0"


async def test_issue_delivers_code_and_stores_only_a_digest():
    service, _, delivery, sink = build_service()

    await service.issue("alice@example.com", client=CLIENT)

    code = delivery.last_code_for("alice@example.com")
    record = service._records[("alice@example.com", OtpPurpose.LOGIN)]
    assert record.code_digest != code
    assert code not in record.model_dump_json()
    assert sink.entries[0].event_type == AuditEventType.OTP_ISSUED
    assert code not in sink.entries[0].model_dump_json()


async def test_existing_user_gets_an_otp_session():
    service, directory, delivery, sink = build_service(clock=None)
    directory.add(make_user())

    await service.issue("alice@example.com", client=CLIENT)
    outcome = await service.verify(
        "alice@example.com",
        delivery.last_code_for("alice@example.com"),
        client=CLIENT,
    )

    assert outcome.is_new_user is False
    assert outcome.session.login_method == LoginMethod.OTP
    assert directory.last_login_updates == ["user-1"]
    assert sink.of_type(AuditEventType.LOGIN_SUCCESS)


async def test_unknown_identifier_is_reported_as_new_user():
    service, _, delivery, _ = build_service()

    await service.issue("+15559990000")
    outcome = await service.verify(
        "+15559990000",
        delivery.last_code_for("+15559990000"),
    )

    assert outcome.is_new_user is True
    assert outcome.session is None


async def test_code_is_single_use():
    service, _, delivery, _ = build_service()
    await service.issue("bob@example.com")
    code = delivery.last_code_for("bob@example.com")

    await service.verify("bob@example.com", code)

    with pytest.raises(OtpVerificationError) as exc_info:
        await service.verify("bob@example.com", code)
    assert exc_info.value.client_message == "Invalid or expired OTP"


async def test_expired_code_is_rejected():
    clock = MutableClock()
    service, _, delivery, sink = build_service(clock=clock)
    await service.issue("bob@example.com")
    code = delivery.last_code_for("bob@example.com")

    clock.advance(minutes=10)

    with pytest.raises(OtpVerificationError) as exc_info:
        await service.verify("bob@example.com", code)

    assert exc_info.value.client_message == "Invalid or expired OTP"
    assert sink.of_type(AuditEventType.LOGIN_FAILED)[0].risk_level == RiskLevel.MEDIUM


async def test_attempt_cap_blocks_even_the_right_code():
    service, _, _, sink = build_service(codes=["424242"])
    await service.issue("bob@example.com")

    for _ in range(3):
        with pytest.raises(OtpVerificationError) as exc_info:
            await service.verify("bob@example.com", "100000")
        assert exc_info.value.client_message == "Invalid OTP code"

    with pytest.raises(OtpVerificationError) as exc_info:
        await service.verify("bob@example.com", "424242")

    assert exc_info.value.client_message == "Maximum attempts exceeded"
    assert sink.of_type(AuditEventType.LOGIN_FAILED)[-1].risk_level == RiskLevel.HIGH


async def test_reissue_invalidates_the_previous_code():
    service, _, _, _ = build_service(codes=["111222", "333444"])
    await service.issue("bob@example.com")
    await service.issue("bob@example.com")

    with pytest.raises(OtpVerificationError):
        await service.verify("bob@example.com", "111222")

    outcome = await service.verify("bob@example.com", "333444")
    assert outcome.is_new_user is True


async def test_codes_are_scoped_by_purpose():
    service, _, delivery, _ = build_service()
    await service.issue("bob@example.com", OtpPurpose.SIGNUP)
    code = delivery.last_code_for("bob@example.com")

    with pytest.raises(OtpVerificationError):
        await service.verify("bob@example.com", code, OtpPurpose.LOGIN)

    outcome = await service.verify("bob@example.com", code, OtpPurpose.SIGNUP)
    assert outcome.is_new_user is True


async def test_resend_is_rate_limited_per_client_ip():
    service, _, delivery, sink = build_service(limit=3)

    for _ in range(3):
        await service.resend("bob@example.com", client=CLIENT)

    with pytest.raises(RateLimitExceededError) as exc_info:
        await service.resend("bob@example.com", client=CLIENT)

    assert exc_info.value.status_code == 429
    assert len(delivery.deliveries) == 3

    resends = sink.of_type(AuditEventType.OTP_RESEND)
    assert [e.reason for e in resends] == [
        "OTP resent",
        "OTP resent",
        "OTP resent",
        "rate_limited",
    ]

    other = ClientInfo(ip_address="198.51.100.4")
    await service.resend("bob@example.com", client=other)
    assert len(delivery.deliveries) == 4


async def test_delivery_failure_leaves_no_live_code():
    service, _, delivery, sink = build_service()
    delivery.fail = True

    with pytest.raises(CollaboratorFailure):
        await service.issue("bob@example.com")

    assert len(service) == 0
    assert sink.entries[0].event_type == AuditEventType.SYSTEM_ERROR


async def test_sweep_removes_used_and_expired_records():
    clock = MutableClock()
    service, _, delivery, _ = build_service(clock=clock)

    await service.issue("used@example.com")
    await service.verify("used@example.com", delivery.last_code_for("used@example.com"))
    await service.issue("stale@example.com")
    clock.advance(minutes=11)
    await service.issue("fresh@example.com")

    assert service.sweep() == 2
    assert len(service) == 1
