"""
Sync Celery tasks.

Every task runs inside the Flask app context (see ``celery_app``). Failures
roll the session back and re-raise so Celery records the task as failed; the
engine has already marked the sync run failed by then.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from sophie_hub.models import db
from sophie_hub.partners.reconciliation import DEFAULT_SCAN_LIMIT, reconcile_partner_types
from sophie_hub.settings import resolve_sheet_credential

from . import metrics
from .engine import SyncEngine, SyncOptions
from .errors import SyncInProgressError
from .run_service import SyncRunService

DEFAULT_STALE_RUN_MINUTES = 30


def reap_stale_sync_runs(max_age_minutes: int | None = None) -> list[int]:
    """Fail runs whose heartbeat is older than the configured threshold."""
    minutes = max_age_minutes or int(current_app.config.get("SYNC_STALE_RUN_MINUTES") or DEFAULT_STALE_RUN_MINUTES)
    reaped = SyncRunService().reap_stale_runs(timedelta(minutes=minutes))
    metrics.record_stale_runs_reaped(len(reaped))
    if reaped:
        current_app.logger.warning(
            "Reaped stale sync runs",
            extra={"sync_run_ids": reaped, "sync_stale_after_minutes": minutes},
        )
    return reaped


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by the worker health endpoint."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="sync.tab", bind=True)
def sync_tab_task(
    self,
    *,
    tab_mapping_id: int,
    dry_run: bool = False,
    force_overwrite: bool = False,
    row_limit: int | None = None,
    triggered_by: str | None = None,
) -> dict[str, Any]:
    options = SyncOptions(
        dry_run=dry_run,
        force_overwrite=force_overwrite,
        row_limit=row_limit,
        triggered_by=triggered_by or f"celery:{self.request.id}",
    )
    try:
        result = SyncEngine().sync_tab(tab_mapping_id, resolve_sheet_credential(), options)
    except SyncInProgressError as exc:
        db.session.rollback()
        current_app.logger.info(
            "Sync task skipped; tab already syncing",
            extra={"tab_mapping_id": tab_mapping_id, "active_sync_run_id": exc.active_run_id},
        )
        return {"status": "skipped", "tab_mapping_id": tab_mapping_id, "active_sync_run_id": exc.active_run_id}
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Sync task failed", extra={"tab_mapping_id": tab_mapping_id})
        raise
    return result.to_dict(include_changes=False)


@shared_task(name="sync.data_source", bind=True)
def sync_data_source_task(
    self,
    *,
    data_source_id: int,
    dry_run: bool = False,
    force_overwrite: bool = False,
    triggered_by: str | None = None,
) -> dict[str, Any]:
    options = SyncOptions(
        dry_run=dry_run,
        force_overwrite=force_overwrite,
        triggered_by=triggered_by or f"celery:{self.request.id}",
    )
    try:
        outcome = SyncEngine().sync_data_source(data_source_id, resolve_sheet_credential(), options)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Data source sync task failed", extra={"data_source_id": data_source_id})
        raise
    return outcome.to_dict()


@shared_task(name="sync.reconcile_partner_types", bind=True)
def reconcile_partner_types_task(self, *, dry_run: bool = False, limit: int = DEFAULT_SCAN_LIMIT) -> dict[str, Any]:
    try:
        result = reconcile_partner_types(dry_run=dry_run, limit=limit)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Partner-type reconciliation task failed")
        raise
    return result.to_dict()


@shared_task(name="sync.reap_stale_runs", bind=True)
def reap_stale_runs_task(self, *, max_age_minutes: int | None = None) -> dict[str, Any]:
    try:
        reaped = reap_stale_sync_runs(max_age_minutes)
    except Exception:
        db.session.rollback()
        raise
    return {"reaped": reaped, "count": len(reaped)}
