from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from onestep.app.config import Settings
from onestep.app.events import AuditEventType, InMemoryAuditSink
from onestep.app.main import create_app
from onestep.app.services.signing import JwtTokenSigner
from onestep.app.utils.hashing import BcryptSecretHasher
from onestep.tests.fixtures.fakes import (
    TEST_JWT_SECRET,
    RecordingOtpDelivery,
    RecordingUserDirectory,
    make_user,
)


PASSCODE = "194736"


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_JWT_SECRET, bcrypt_rounds=4)


@pytest.fixture
def directory():
    directory = RecordingUserDirectory()
    directory.add(
        make_user(passcode_hash=BcryptSecretHasher(rounds=4).hash(PASSCODE))
    )
    directory.add(
        make_user(
            "user-2",
            os_identifier="OS-0002",
            username="bob",
            email="bob@example.com",
            phone_number=None,
        )
    )
    return directory


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def delivery():
    return RecordingOtpDelivery()


@pytest.fixture
def client(settings, directory, audit_sink, delivery):
    app = create_app(
        settings,
        user_directory=directory,
        audit_sink=audit_sink,
        otp_delivery=delivery,
    )
    with TestClient(app) as test_client:
        yield test_client


def bearer_for(settings: Settings, user_id: str) -> dict:
    signer = JwtTokenSigner(
        secret=settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )
    now = datetime.now(timezone.utc)
    token = signer.sign(
        {"sub": user_id, "userId": user_id, "iat": now},
        now + timedelta(hours=1),
    )
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# POST /avv/check
# ---------------------------------------------------------------------------


def test_avv_check_returns_camel_case_verdict(client, audit_sink):
    response = client.post(
        "/avv/check",
        json={"checkType": "STRENGTH", "input": "111111"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["result"] == "FAIL"
    assert body["checkType"] == "STRENGTH"
    assert body["score"] == 20
    assert "timestamp" in body

    [entry] = audit_sink.of_type(AuditEventType.AVV_CHECK)
    assert entry.redacted_input == "REDACTED"


def test_avv_check_unknown_type_is_warning(client):
    response = client.post(
        "/avv/check",
        json={"checkType": "RETINA", "input": "scan"},
    )

    assert response.status_code == 200
    assert response.json()["result"] == "WARNING"


def test_avv_check_attributes_entry_to_session_user(client, settings, audit_sink):
    client.post(
        "/avv/check",
        json={"checkType": "BEHAVIORAL", "input": "abc123"},
        headers=bearer_for(settings, "user-2"),
    )

    assert audit_sink.entries[-1].user_id == "user-2"


@pytest.mark.parametrize(
    "payload",
    [
        {"checkType": "STRENGTH"},
        {"checkType": "STRENGTH", "input": "12ab56"},
        {"input": "123456"},
    ],
)
def test_avv_check_malformed_request_is_400(client, payload):
    response = client.post("/avv/check", json=payload)

    assert response.status_code == 400
    assert "error" in response.json()


# ---------------------------------------------------------------------------
# POST /auth/passcode/verify
# ---------------------------------------------------------------------------


def test_passcode_login_sets_cookie_and_returns_session(client, directory):
    response = client.post(
        "/auth/passcode/verify",
        json={"identifier": "alice", "passcode": PASSCODE},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["user"] == {
        "osIdentifier": "OS-0001",
        "username": "alice",
        "isSetupComplete": True,
    }
    assert body["sessionToken"]
    assert body["expiresAt"]

    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith("onestep-session=")
    assert "HttpOnly" in set_cookie
    assert "samesite=lax" in set_cookie.lower()
    assert "Max-Age=604800" in set_cookie
    assert "Secure" not in set_cookie

    assert directory.last_login_updates == ["user-1"]


def test_login_failures_share_status_and_message(client):
    unknown = client.post(
        "/auth/passcode/verify",
        json={"identifier": "nobody", "passcode": PASSCODE},
    )
    wrong = client.post(
        "/auth/passcode/verify",
        json={"identifier": "alice", "passcode": "582019"},
    )

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json() == {
        "error": "Invalid identifier or passcode"
    }


def test_login_without_configured_passcode_is_401(client):
    response = client.post(
        "/auth/passcode/verify",
        json={"identifier": "bob", "passcode": PASSCODE},
    )

    assert response.status_code == 401
    assert set(response.json()) == {"error"}


def test_login_request_validation_is_400(client):
    response = client.post("/auth/passcode/verify", json={"identifier": "alice"})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request data"


# ---------------------------------------------------------------------------
# POST /auth/passcode/create
# ---------------------------------------------------------------------------


def test_create_requires_a_session(client):
    response = client.post("/auth/passcode/create", json={"passcode": "582019"})

    assert response.status_code == 401


def test_create_rejects_weak_passcode_with_feedback(client, settings, directory):
    response = client.post(
        "/auth/passcode/create",
        json={"passcode": "123456"},
        headers=bearer_for(settings, "user-2"),
    )

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Passcode does not meet security requirements"
    assert "Avoid obvious patterns like 111111 or 123456" in body["feedback"]
    assert directory.passcode_writes == []


def test_create_rejects_dob_related_passcode(client, settings):
    response = client.post(
        "/auth/passcode/create",
        json={"passcode": "150390"},
        headers=bearer_for(settings, "user-2"),
    )

    assert response.status_code == 400
    assert response.json() == {
        "error": "Passcode cannot be related to your date of birth"
    }


def test_create_then_login_with_new_passcode(client, settings):
    created = client.post(
        "/auth/passcode/create",
        json={"passcode": "582019"},
        headers=bearer_for(settings, "user-2"),
    )

    assert created.status_code == 201
    assert created.json() == {"success": True, "strengthScore": 100}

    login = client.post(
        "/auth/passcode/verify",
        json={"identifier": "bob@example.com", "passcode": "582019"},
    )
    assert login.status_code == 200


def test_create_accepts_the_session_cookie(client):
    login = client.post(
        "/auth/passcode/verify",
        json={"identifier": "alice", "passcode": PASSCODE},
    )
    assert login.status_code == 200

    # The client jar now carries the session cookie.
    response = client.post("/auth/passcode/create", json={"passcode": "582019"})

    assert response.status_code == 201


def test_create_with_tampered_token_is_401(client):
    response = client.post(
        "/auth/passcode/create",
        json={"passcode": "582019"},
        headers={"Authorization": "Bearer not.a.token"},
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid session. Please log in again."}


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------


def test_otp_resend_then_verify_logs_in_existing_user(client, delivery):
    resend = client.post("/auth/otp/resend", json={"identifier": "alice@example.com"})

    assert resend.status_code == 200
    assert resend.json()["success"] is True

    response = client.post(
        "/auth/otp/verify",
        json={
            "identifier": "alice@example.com",
            "otp": delivery.last_code_for("alice@example.com"),
        },
    )

    assert response.status_code == 200
    assert response.json()["user"]["osIdentifier"] == "OS-0001"
    assert "onestep-session=" in response.headers["set-cookie"]


def test_otp_verify_for_unknown_identifier_reports_new_user(client, delivery):
    client.post("/auth/otp/resend", json={"identifier": "+15559990000"})

    response = client.post(
        "/auth/otp/verify",
        json={
            "identifier": "+15559990000",
            "otp": delivery.last_code_for("+15559990000"),
        },
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "isNewUser": True}


def test_otp_wrong_code_is_400(client):
    client.post("/auth/otp/resend", json={"identifier": "alice@example.com"})

    response = client.post(
        "/auth/otp/verify",
        json={"identifier": "nobody@example.com", "otp": "123456"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid or expired OTP"}


def test_otp_resend_is_rate_limited(client):
    statuses = [
        client.post(
            "/auth/otp/resend",
            json={"identifier": "alice@example.com"},
            headers={"X-Forwarded-For": "198.51.100.9"},
        ).status_code
        for _ in range(4)
    ]

    assert statuses == [200, 200, 200, 429]


def test_rotating_forwarded_for_does_not_escape_the_rate_limit(client):
    statuses = [
        client.post(
            "/auth/otp/resend",
            json={"identifier": "alice@example.com"},
            headers={"X-Forwarded-For": f"198.51.100.{i}"},
        ).status_code
        for i in range(4)
    ]

    assert statuses == [200, 200, 200, 429]


def test_forwarded_for_is_honoured_behind_a_trusted_proxy(
    directory, audit_sink, delivery
):
    settings = Settings(
        jwt_secret=TEST_JWT_SECRET,
        bcrypt_rounds=4,
        trust_forwarded_headers=True,
    )
    app = create_app(
        settings,
        user_directory=directory,
        audit_sink=audit_sink,
        otp_delivery=delivery,
    )

    with TestClient(app) as proxied:
        for _ in range(3):
            proxied.post(
                "/auth/otp/resend",
                json={"identifier": "alice@example.com"},
                headers={"X-Forwarded-For": "198.51.100.9, 10.0.0.1"},
            )
        limited = proxied.post(
            "/auth/otp/resend",
            json={"identifier": "alice@example.com"},
            headers={"X-Forwarded-For": "198.51.100.9"},
        )
        other = proxied.post(
            "/auth/otp/resend",
            json={"identifier": "alice@example.com"},
            headers={"X-Forwarded-For": "198.51.100.10"},
        )

    assert limited.status_code == 429
    assert other.status_code == 200
    assert audit_sink.entries[-1].ip_address == "198.51.100.10"


def test_malformed_login_passcode_is_400_and_audited(client, audit_sink):
    response = client.post(
        "/auth/passcode/verify",
        json={"identifier": "alice", "passcode": "12ab"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Passcode must be exactly 6 digits"}

    [entry] = audit_sink.of_type(AuditEventType.LOGIN_FAILED)
    assert entry.reason == "invalid_format"
    assert "12ab" not in entry.model_dump_json()


def test_malformed_avv_input_is_400_and_audited(client, audit_sink):
    response = client.post(
        "/avv/check",
        json={"checkType": "STRENGTH", "input": "abc"},
    )

    assert response.status_code == 400

    [entry] = audit_sink.of_type(AuditEventType.AVV_CHECK)
    assert entry.reason == "invalid_format"
    assert entry.redacted_input == "REDACTED"
