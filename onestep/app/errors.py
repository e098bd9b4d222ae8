"""
Error taxonomy of the authentication core.

Every error carries a client-safe message and the HTTP status it maps to.
Detailed reasons belong in the audit log, never in client_message.

Enumeration resistance:
AccountNotFoundError and SecretMismatchError share one client message so
that a caller cannot distinguish an unknown identifier from a wrong secret.
"""

from __future__ import annotations

from typing import List, Optional


GENERIC_LOGIN_FAILURE = "Invalid identifier or passcode"


class OneStepError(Exception):
    """Base class for all errors surfaced at the API boundary."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, client_message: Optional[str] = None) -> None:
        self.client_message = client_message or self.default_message
        super().__init__(self.client_message)


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------


class InvalidRequestError(OneStepError):
    """Malformed request shape. Raised before any check runs."""

    default_message = "Invalid request"


class PasscodeFormatError(InvalidRequestError):
    """The secret is not exactly six ASCII digits."""

    default_message = "Passcode must be exactly 6 digits"


# ---------------------------------------------------------------------------
# Passcode creation rejections (recoverable: resubmit another secret)
# ---------------------------------------------------------------------------


class WeakSecretError(OneStepError):
    """The strength check failed."""

    default_message = "Passcode does not meet security requirements"

    def __init__(self, feedback: List[str]) -> None:
        super().__init__()
        self.feedback = list(feedback)


class PersonalDataCorrelationError(OneStepError):
    """The secret is derivable from the account's date of birth."""

    default_message = "Passcode cannot be related to your date of birth"


# ---------------------------------------------------------------------------
# Login rejections (uniform 401 shape)
# ---------------------------------------------------------------------------


class AccountNotFoundError(OneStepError):
    status_code = 401
    default_message = GENERIC_LOGIN_FAILURE


class SecretMismatchError(OneStepError):
    status_code = 401
    default_message = GENERIC_LOGIN_FAILURE


class NoSecretConfiguredError(OneStepError):
    status_code = 401
    default_message = (
        "Passcode not set up for this account. "
        "Please complete account setup first."
    )


class UnverifiedAccountError(OneStepError):
    status_code = 401
    default_message = (
        "Account not verified. Please complete verification first."
    )


class InvalidSessionError(OneStepError):
    """Missing, expired or tampered session token."""

    status_code = 401
    default_message = "Invalid session. Please log in again."


# ---------------------------------------------------------------------------
# OTP
# ---------------------------------------------------------------------------


class OtpVerificationError(OneStepError):
    default_message = "Invalid or expired OTP"


class RateLimitExceededError(OneStepError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


# ---------------------------------------------------------------------------
# Collaborator failures
# ---------------------------------------------------------------------------


class CollaboratorFailure(OneStepError):
    """
    Persistence, hashing or signing failure.

    The only error class that produces a 5xx response. The wrapped
    exception is kept as __cause__ and never rendered to the caller.
    """

    status_code = 500
    default_message = "Request could not be completed. Please try again."
