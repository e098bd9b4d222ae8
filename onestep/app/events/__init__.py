from .models import (
    REDACTION_MARKER,
    AuditEventType,
    AuditLogEntry,
    ClientInfo,
    RiskLevel,
)
from .emitter import AuditSink, LoggingAuditSink, NullAuditSink, append_best_effort
from .memory_sink import InMemoryAuditSink

__all__ = [
    "REDACTION_MARKER",
    "AuditEventType",
    "AuditLogEntry",
    "ClientInfo",
    "RiskLevel",
    "AuditSink",
    "LoggingAuditSink",
    "NullAuditSink",
    "append_best_effort",
    "InMemoryAuditSink",
]
