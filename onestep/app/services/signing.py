"""
Session token signing collaborator.

The core hands a claim set and an expiry to a TokenSigner and receives an
opaque token. Algorithm and key management are the signer's concern.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Protocol

import jwt
from pydantic import SecretStr

from onestep.app.errors import InvalidSessionError


class TokenSigner(Protocol):
    def sign(self, claims: Dict[str, Any], expires_at: datetime) -> str:
        ...

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of a valid token or raise InvalidSessionError."""
        ...


class JwtTokenSigner:
    """
    HMAC-signed JWT implementation of TokenSigner (PyJWT).

    Every token carries the configured issuer and audience; verification
    rejects tokens minted for any other audience.
    """

    def __init__(
        self,
        *,
        secret: SecretStr,
        algorithm: str = "HS256",
        issuer: str = "onestep-auth",
        audience: str = "onestep-users",
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience

    def sign(self, claims: Dict[str, Any], expires_at: datetime) -> str:
        payload = {
            **claims,
            "exp": expires_at,
            "iss": self._issuer,
            "aud": self._audience,
        }
        return jwt.encode(
            payload,
            self._secret.get_secret_value(),
            algorithm=self._algorithm,
        )

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret.get_secret_value(),
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidSessionError(
                "Session has expired. Please log in again."
            ) from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidSessionError() from exc
