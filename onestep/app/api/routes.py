import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from onestep.app.config import Settings
from onestep.app.coordinator.avv_coordinator import AVVCoordinator
from onestep.app.errors import InvalidSessionError
from onestep.app.events import ClientInfo
from onestep.app.schemas.session import SessionCredential
from onestep.app.services.otp import OtpService
from onestep.app.services.passcodes import PasscodeLifecycleManager
from onestep.app.services.sessions import SessionIssuer

logger = logging.getLogger("onestep.api")

router = APIRouter()

# Longest textual IPv6 address; anything longer is not an address.
_MAX_IP_LENGTH = 45


# =============================================================================
# Wire models
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class PasscodeCreateBody(_CamelModel):
    passcode: str = Field(..., min_length=1, max_length=64)


class PasscodeVerifyBody(_CamelModel):
    identifier: str = Field(..., min_length=1, max_length=256)
    passcode: str = Field(..., min_length=1, max_length=64)


class OtpResendBody(_CamelModel):
    identifier: str = Field(..., min_length=1, max_length=256)


class OtpVerifyBody(_CamelModel):
    identifier: str = Field(..., min_length=1, max_length=256)
    otp: str = Field(..., pattern=r"^[0-9]{6}$")


class SessionUser(_CamelModel):
    os_identifier: str
    username: Optional[str] = None
    is_setup_complete: bool


class SessionBody(_CamelModel):
    session_token: str
    user: SessionUser
    expires_at: datetime


class AvvCheckResponse(_CamelModel):
    result: str
    reason: Optional[str] = None
    score: Optional[int] = None
    metadata: Dict[str, Any]
    check_type: str
    timestamp: datetime


class PasscodeCreatedResponse(_CamelModel):
    success: bool = True
    strength_score: int


class OtpResendResponse(_CamelModel):
    success: bool = True
    expires_at: datetime


class OtpNewUserResponse(_CamelModel):
    success: bool = True
    is_new_user: bool = True


# =============================================================================
# Dependency providers
# =============================================================================

def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_coordinator(request: Request) -> AVVCoordinator:
    return request.app.state.avv_coordinator


def get_passcode_manager(request: Request) -> PasscodeLifecycleManager:
    return request.app.state.passcode_manager


def get_otp_service(request: Request) -> OtpService:
    return request.app.state.otp_service


def get_session_issuer(request: Request) -> SessionIssuer:
    return request.app.state.session_issuer


def get_client_info(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings_dep)],
    x_forwarded_for: Annotated[Optional[str], Header()] = None,
    cf_connecting_ip: Annotated[Optional[str], Header()] = None,
    user_agent: Annotated[Optional[str], Header()] = None,
) -> ClientInfo:
    """
    Resolve the caller's address.

    Proxy headers are client-controlled, so they are read only when the
    deployment declares a trusted proxy. Otherwise the socket peer wins.
    """
    ip_address: Optional[str] = None
    if settings.trust_forwarded_headers and x_forwarded_for:
        ip_address = x_forwarded_for.split(",", 1)[0].strip()
    elif settings.trust_forwarded_headers and cf_connecting_ip:
        ip_address = cf_connecting_ip.strip()
    elif request.client is not None:
        ip_address = request.client.host

    if ip_address and len(ip_address) > _MAX_IP_LENGTH:
        ip_address = None

    return ClientInfo(ip_address=ip_address or None, user_agent=user_agent)


def _presented_token(request: Request, settings: Settings) -> Optional[str]:
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def require_session(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings_dep)],
    issuer: Annotated[SessionIssuer, Depends(get_session_issuer)],
) -> Dict[str, Any]:
    """Claims of the presented session, or InvalidSessionError (401)."""
    token = _presented_token(request, settings)
    if token is None:
        raise InvalidSessionError(
            "Authentication required. Please complete account setup first."
        )
    return issuer.authenticate(token)


def optional_session(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings_dep)],
    issuer: Annotated[SessionIssuer, Depends(get_session_issuer)],
) -> Optional[Dict[str, Any]]:
    """Claims of a valid presented session, if any. Used for attribution only."""
    token = _presented_token(request, settings)
    if token is None:
        return None
    try:
        return issuer.authenticate(token)
    except InvalidSessionError:
        logger.info("avv_session_ignored")
        return None


def _set_session_cookie(
    response: Response,
    credential: SessionCredential,
    settings: Settings,
) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=credential.token.get_secret_value(),
        max_age=credential.max_age_seconds,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        path="/",
    )


def _session_body(credential: SessionCredential) -> SessionBody:
    return SessionBody(
        session_token=credential.token.get_secret_value(),
        user=SessionUser(
            os_identifier=credential.os_identifier,
            username=credential.username,
            is_setup_complete=credential.is_setup_complete,
        ),
        expires_at=credential.expires_at,
    )


# =============================================================================
# POST /avv/check
# =============================================================================

@router.post(
    "/avv/check",
    tags=["AVV"],
    summary="Run one adaptive verification check",
    response_model=AvvCheckResponse,
    response_model_by_alias=True,
    responses={400: {"description": "Malformed check request"}},
)
async def avv_check(
    payload: Annotated[Dict[str, Any], Body()],
    coordinator: Annotated[AVVCoordinator, Depends(get_coordinator)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
    claims: Annotated[Optional[Dict[str, Any]], Depends(optional_session)],
) -> AvvCheckResponse:
    check_request = coordinator.parse_request(payload)

    verdict = await coordinator.check(
        check_request,
        user_id=claims.get("userId") if claims else None,
        client=client,
    )

    return AvvCheckResponse(
        result=verdict.result.value,
        reason=verdict.reason,
        score=verdict.score,
        metadata=verdict.metadata,
        check_type=check_request.check_type,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# POST /auth/passcode/create
# =============================================================================

@router.post(
    "/auth/passcode/create",
    tags=["Passcode"],
    summary="Set or replace the caller's passcode",
    status_code=status.HTTP_201_CREATED,
    response_model=PasscodeCreatedResponse,
    response_model_by_alias=True,
    responses={
        400: {"description": "Weak, malformed or DOB-related passcode"},
        401: {"description": "Missing or invalid session"},
    },
)
async def create_passcode(
    body: PasscodeCreateBody,
    claims: Annotated[Dict[str, Any], Depends(require_session)],
    manager: Annotated[PasscodeLifecycleManager, Depends(get_passcode_manager)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> PasscodeCreatedResponse:
    created = await manager.create_passcode(
        claims["sub"],
        body.passcode,
        client=client,
    )
    return PasscodeCreatedResponse(strength_score=created.strength_score)


# =============================================================================
# POST /auth/passcode/verify
# =============================================================================

@router.post(
    "/auth/passcode/verify",
    tags=["Passcode"],
    summary="Log in with identifier and passcode",
    response_model=SessionBody,
    response_model_by_alias=True,
    responses={401: {"description": "Login rejected"}},
)
async def verify_passcode(
    body: PasscodeVerifyBody,
    response: Response,
    manager: Annotated[PasscodeLifecycleManager, Depends(get_passcode_manager)],
    settings: Annotated[Settings, Depends(get_settings_dep)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> SessionBody:
    credential = await manager.verify_passcode(
        body.identifier,
        body.passcode,
        client=client,
    )
    _set_session_cookie(response, credential, settings)
    return _session_body(credential)


# =============================================================================
# OTP
# =============================================================================

@router.post(
    "/auth/otp/resend",
    tags=["OTP"],
    summary="Send a fresh one-time code",
    response_model=OtpResendResponse,
    response_model_by_alias=True,
    responses={429: {"description": "Too many OTP requests"}},
)
async def resend_otp(
    body: OtpResendBody,
    otp_service: Annotated[OtpService, Depends(get_otp_service)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> OtpResendResponse:
    expires_at = await otp_service.resend(body.identifier, client=client)
    return OtpResendResponse(expires_at=expires_at)


@router.post(
    "/auth/otp/verify",
    tags=["OTP"],
    summary="Log in with a one-time code",
    response_model=SessionBody | OtpNewUserResponse,
    response_model_by_alias=True,
    responses={400: {"description": "Invalid, expired or exhausted code"}},
)
async def verify_otp(
    body: OtpVerifyBody,
    response: Response,
    otp_service: Annotated[OtpService, Depends(get_otp_service)],
    settings: Annotated[Settings, Depends(get_settings_dep)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> SessionBody | OtpNewUserResponse:
    outcome = await otp_service.verify(body.identifier, body.otp, client=client)

    if outcome.session is None:
        return OtpNewUserResponse()

    _set_session_cookie(response, outcome.session, settings)
    return _session_body(outcome.session)

