from __future__ import annotations

from typing import List

from onestep.app.events.models import AuditEventType, AuditLogEntry
from onestep.app.events.emitter import AuditSink


class InMemoryAuditSink(AuditSink):
    """
    In-process, append-only audit sink.

    Properties:
    - deterministic ordering
    - entries are immutable models; the list is only ever appended to
    - suitable for development servers and tests
    """

    def __init__(self) -> None:
        self._entries: List[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> List[AuditLogEntry]:
        """Snapshot of all entries in append order."""
        return list(self._entries)

    def of_type(self, event_type: AuditEventType) -> List[AuditLogEntry]:
        return [e for e in self._entries if e.event_type == event_type]
