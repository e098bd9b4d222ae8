"""
User directory collaborator.

The persistence layer is external to the core. This module defines the
interface the core consumes and a process-local implementation used by
the development server and tests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from onestep.app.schemas.users import UserRecord


# ----------------------------------------------------------------------
# Directory Interface
# ----------------------------------------------------------------------

class UserDirectory(Protocol):
    async def find_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        """Exact-match lookup. Returns None when nothing matches."""
        ...

    async def update_last_login(self, user_id: str) -> None:
        ...

    async def set_passcode_hash(self, user_id: str, passcode_hash: str) -> None:
        """Create or overwrite the user's passcode record."""
        ...


# ----------------------------------------------------------------------
# In-memory implementation
# ----------------------------------------------------------------------

class InMemoryUserDirectory:
    """
    Dict-backed UserDirectory.

    Records are frozen models; updates replace the stored record, which
    gives per-record atomic read-modify-write within one event loop.
    """

    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}

    def add(self, user: UserRecord) -> None:
        self._users[user.user_id] = user

    def get(self, user_id: str) -> Optional[UserRecord]:
        return self._users.get(user_id)

    async def find_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        direct = self._users.get(identifier)
        if direct is not None:
            return direct

        for user in self._users.values():
            if user.matches(identifier):
                return user
        return None

    async def update_last_login(self, user_id: str) -> None:
        user = self._require(user_id)
        self._users[user_id] = user.model_copy(
            update={"last_login_at": datetime.now(timezone.utc)}
        )

    async def set_passcode_hash(self, user_id: str, passcode_hash: str) -> None:
        user = self._require(user_id)
        self._users[user_id] = user.model_copy(
            update={"passcode_hash": passcode_hash}
        )

    def _require(self, user_id: str) -> UserRecord:
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"Unknown user_id: {user_id}")
        return user
