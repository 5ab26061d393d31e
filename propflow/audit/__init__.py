"""Audit trail for propflow workflows."""

from __future__ import annotations

from typing import Optional

from ..config import PropflowConfig, resolve_database_url
from .inmemory import InMemoryAuditRecorder
from .recorder import AuditQuery, AuditRecorder, create_audit_event, diff_objects
from .sqlite import SQLiteAuditRecorder

_recorder_instance: AuditRecorder | None = None


def get_audit_recorder(
    database_url: Optional[str] = None, config: Optional[PropflowConfig] = None
) -> AuditRecorder:
    """Factory function to obtain the audit recorder.

    The backend is selected from ``database_url``, then ``config``. Without
    an explicit config the loaded one is used, where the
    ``PROPFLOW_DATABASE_URL``/``DATABASE_URL`` environment variables win.
    Without a database an in-memory recorder is used.
    """

    global _recorder_instance
    if _recorder_instance is not None and database_url is None and config is None:
        return _recorder_instance

    database_url = resolve_database_url(database_url, config)

    if not database_url:
        _recorder_instance = InMemoryAuditRecorder()
    elif database_url.startswith("sqlite://"):
        _recorder_instance = SQLiteAuditRecorder(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresAuditRecorder

        _recorder_instance = PostgresAuditRecorder(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _recorder_instance


__all__ = [
    "AuditQuery",
    "AuditRecorder",
    "InMemoryAuditRecorder",
    "SQLiteAuditRecorder",
    "create_audit_event",
    "diff_objects",
    "get_audit_recorder",
]
