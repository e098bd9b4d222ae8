from __future__ import annotations

import logging
from typing import Protocol

from onestep.app.events.models import AuditLogEntry


class AuditSink(Protocol):
    """
    Interface for appending security audit entries.

    Implementations must be:
    - append-only
    - non-blocking (or minimally blocking)
    - observational only: callers never branch on the outcome
    """

    async def append(self, entry: AuditLogEntry) -> None:
        ...


class NullAuditSink:
    """
    A safe no-op sink.

    Used when:
    - audit persistence is wired elsewhere
    - tests that do not care about audit entries
    """

    async def append(self, entry: AuditLogEntry) -> None:
        return


class LoggingAuditSink:
    """
    Audit sink that forwards entries to the standard logging tree.

    Default sink of the HTTP service; the retention store is an external
    concern and is expected to consume the "onestep.audit" logger.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("onestep.audit")

    async def append(self, entry: AuditLogEntry) -> None:
        self._logger.info(
            "audit_entry",
            extra={"audit": entry.model_dump(mode="json")},
        )


async def append_best_effort(
    sink: AuditSink,
    entry: AuditLogEntry,
    logger: logging.Logger,
) -> None:
    """
    Append an entry without letting sink failures reach the caller.

    Failures are captured locally and logged; the primary verdict path
    is never affected.
    """
    try:
        await sink.append(entry)
    except Exception as exc:
        logger.warning(
            "audit_append_failed",
            extra={
                "event_type": entry.event_type.value,
                "error_type": type(exc).__name__,
            },
        )
