import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from onestep.app.api.routes import router as auth_router
from onestep.app.config import Settings, get_settings
from onestep.app.coordinator.avv_coordinator import AVVCoordinator
from onestep.app.errors import OneStepError, WeakSecretError
from onestep.app.events import AuditSink, LoggingAuditSink
from onestep.app.services.otp import LoggingOtpDelivery, OtpDelivery, OtpService
from onestep.app.services.passcodes import PasscodeLifecycleManager
from onestep.app.services.rate_limit import FixedWindowRateLimiter
from onestep.app.services.sessions import SessionIssuer
from onestep.app.services.signing import JwtTokenSigner
from onestep.app.services.user_directory import InMemoryUserDirectory, UserDirectory
from onestep.app.utils.hashing import BcryptSecretHasher

logger = logging.getLogger("onestep.main")


def get_app_version() -> str:
    try:
        return version("onestep-auth")
    except PackageNotFoundError:
        return "0.1.0"


# =============================================================================
# Background maintenance
# =============================================================================

async def _sweep_forever(app: FastAPI, interval_seconds: float) -> None:
    """
    Periodically drop expired OTP records and rate-limit windows.

    Runs for the lifetime of the application and is cancelled on shutdown.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed_codes = app.state.otp_service.sweep()
            removed_windows = app.state.rate_limiter.sweep()
        except Exception:
            logger.exception("maintenance_sweep_failed")
            continue

        if removed_codes or removed_windows:
            logger.info(
                "maintenance_sweep_completed",
                extra={
                    "removed_codes": removed_codes,
                    "removed_windows": removed_windows,
                },
            )


# =============================================================================
# Application factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    *,
    user_directory: Optional[UserDirectory] = None,
    audit_sink: Optional[AuditSink] = None,
    otp_delivery: Optional[OtpDelivery] = None,
) -> FastAPI:
    """
    Application factory for the OneStep authentication service.

    Collaborators default to process-local implementations; deployments
    and tests inject their own.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Guarantees:
        - Fail-fast startup if configuration is invalid
        - One shared instance of every collaborator
        - The maintenance task never outlives the application
        """
        logger.info(
            "onestep_startup_begin",
            extra={"service": "onestep", "version": get_app_version()},
        )

        # ------------------------------------------------------------------
        # Load and validate configuration (FAIL FAST)
        # ------------------------------------------------------------------
        try:
            resolved = settings or get_settings()
        except Exception:
            logger.exception("invalid_onestep_configuration")
            raise

        app.state.settings = resolved

        # ------------------------------------------------------------------
        # Collaborators
        # ------------------------------------------------------------------
        sink = audit_sink or LoggingAuditSink()
        directory = user_directory or InMemoryUserDirectory()

        signer = JwtTokenSigner(
            secret=resolved.jwt_secret,
            algorithm=resolved.jwt_algorithm,
            issuer=resolved.jwt_issuer,
            audience=resolved.jwt_audience,
        )
        issuer = SessionIssuer(signer=signer, audit_sink=sink)
        coordinator = AVVCoordinator(
            environment=resolved.environment,
            audit_sink=sink,
        )
        rate_limiter = FixedWindowRateLimiter(
            resolved.otp_resend_limit,
            resolved.otp_resend_window_minutes * 60,
        )

        app.state.user_directory = directory
        app.state.session_issuer = issuer
        app.state.avv_coordinator = coordinator
        app.state.rate_limiter = rate_limiter
        app.state.passcode_manager = PasscodeLifecycleManager(
            coordinator=coordinator,
            directory=directory,
            hasher=BcryptSecretHasher(rounds=resolved.bcrypt_rounds),
            issuer=issuer,
            audit_sink=sink,
        )
        app.state.otp_service = OtpService(
            directory=directory,
            issuer=issuer,
            delivery=otp_delivery or LoggingOtpDelivery(),
            rate_limiter=rate_limiter,
            audit_sink=sink,
            ttl=timedelta(minutes=resolved.otp_ttl_minutes),
            max_attempts=resolved.otp_max_attempts,
        )

        sweeper = asyncio.create_task(
            _sweep_forever(app, resolved.otp_sweep_interval_seconds)
        )

        logger.info(
            "onestep_startup_complete",
            extra={"environment": resolved.environment},
        )

        try:
            yield
        finally:
            logger.info("onestep_shutdown_begin")
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    app = FastAPI(
        title="OneStep Authentication",
        description=(
            "Adaptive passcode verification, passcode lifecycle "
            "and session issuance."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------

    @app.exception_handler(OneStepError)
    async def onestep_error_handler(
        request: Request,
        exc: OneStepError,
    ) -> JSONResponse:
        content = {"error": exc.client_message}
        if isinstance(exc, WeakSecretError):
            content["feedback"] = exc.feedback

        if exc.status_code >= 500:
            logger.error(
                "request_failed",
                extra={
                    "path": request.url.path,
                    "error_type": type(exc).__name__,
                    "cause_type": type(exc.__cause__).__name__
                    if exc.__cause__
                    else None,
                },
            )

        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        # Field locations only; submitted values may be secrets.
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ())[1:]),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request data", "details": details},
        )

    app.include_router(auth_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT touch the user directory
        - Does NOT sign anything
        """
        return {
            "status": "ok",
            "service": "onestep",
            "version": app.version,
            "runtime": f"python {sys.version.split()[0]}",
        }

    return app


app = create_app()
