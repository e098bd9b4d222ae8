"""
Secret hashing primitives.

Provides the one-way hashing collaborator used to store passcodes.

A six-digit passcode has only 10^6 possible values, so a fast digest
(e.g. bare SHA-256) is brute-forceable offline in well under a second.
Passcodes MUST therefore be hashed with a deliberately slow, salted
function. bcrypt is used here; the salt and cost are embedded in the
returned digest.

IMPORTANT DESIGN RULE:
- This module hashes secrets, and secrets only.
- Neither the secret nor the digest may be logged by callers.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt


class SecretHasher(Protocol):
    def hash(self, secret: str) -> str:
        ...

    def verify(self, secret: str, digest: str) -> bool:
        ...


class BcryptSecretHasher:
    """
    bcrypt-backed SecretHasher.

    Both operations are CPU-bound by design; async callers should run
    them in a worker thread.
    """

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError(f"bcrypt rounds out of range: {rounds}")
        self._rounds = rounds

    def hash(self, secret: str) -> str:
        if not isinstance(secret, str):
            raise TypeError(
                "BcryptSecretHasher.hash expects str, "
                f"got {type(secret).__name__}"
            )
        salt = bcrypt.gensalt(rounds=self._rounds)
        return bcrypt.hashpw(secret.encode("utf-8"), salt).decode("utf-8")

    def verify(self, secret: str, digest: str) -> bool:
        """
        Constant-time comparison of secret against a stored digest.

        Raises ValueError if the stored digest is not a bcrypt hash; a
        corrupt record is a storage fault, not a mismatch.
        """
        return bcrypt.checkpw(secret.encode("utf-8"), digest.encode("utf-8"))
