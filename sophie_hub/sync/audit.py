"""
Audit trail writes for sync runs and mapping rule changes.

Audit logging never blocks the operation it describes: database failures are
logged as warnings and swallowed.
"""

from __future__ import annotations

from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sophie_hub.models import AuditLog, db

SYNC_RUN_ACTION = "sync.run"
RULE_CHANGE_ACTION = "mapping.rule_change"


def _warn(message: str, **extra: Any) -> None:
    if has_app_context():
        current_app.logger.warning(message, extra=extra)


def _write(session: Session, *, commit: bool = True, **fields: Any) -> AuditLog | None:
    """Add an audit row; with ``commit=False`` it joins the caller's transaction."""
    if not commit:
        entry = AuditLog(**fields)
        session.add(entry)
        return entry
    try:
        entry = AuditLog(**fields)
        session.add(entry)
        session.commit()
        return entry
    except SQLAlchemyError as exc:
        session.rollback()
        _warn(
            "Audit log write failed",
            audit_action=fields.get("action"),
            resource_id=fields.get("resource_id"),
            error=str(exc),
        )
        return None


def log_sync_run(
    sync_run_id: int,
    *,
    tab_mapping_id: int | None,
    status: str,
    stats: Mapping[str, Any] | None = None,
    actor: str | None = None,
    session: Session | None = None,
) -> AuditLog | None:
    return _write(
        session or db.session,
        action=SYNC_RUN_ACTION,
        resource_type="sync_run",
        resource_id=str(sync_run_id),
        actor=actor,
        details={"tab_mapping_id": tab_mapping_id, "status": status, "stats": dict(stats or {})},
    )


def log_rule_change(
    resource_type: str,
    resource_id: int | str,
    *,
    change: str,
    before: Mapping[str, Any] | None = None,
    after: Mapping[str, Any] | None = None,
    actor: str | None = None,
    session: Session | None = None,
    commit: bool = True,
) -> AuditLog | None:
    """Record a create/update/delete of a tab, column mapping or pattern."""
    return _write(
        session or db.session,
        action=RULE_CHANGE_ACTION,
        resource_type=resource_type,
        resource_id=str(resource_id),
        actor=actor,
        commit=commit,
        details={"change": change, "before": dict(before or {}), "after": dict(after or {})},
    )
