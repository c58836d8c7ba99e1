"""
Sync blueprint: tab and data-source sync triggers, run history, field
lineage, partner-type reconciliation and worker health.

Every response uses the envelope from ``sophie_hub.api.response``.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, request
from flask_login import current_user
from sqlalchemy.exc import NoResultFound

from sophie_hub.api.response import (
    ErrorCodes,
    api_error,
    api_success,
    conflict,
    internal_error,
    not_found,
    validation_error,
)
from sophie_hub.models import ENTITY_MODELS, db
from sophie_hub.partners.reconciliation import (
    DEFAULT_SCAN_LIMIT,
    list_partner_type_projections,
    reconcile_partner_types,
)
from sophie_hub.settings import resolve_sheet_credential
from sophie_hub.utils.permissions import admin_required_api, cron_secret_required

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .engine import SyncEngine, SyncOptions
from .errors import SyncError, SyncInProgressError
from .lineage import get_lineage
from .run_service import RunFilters, SyncRunService

sync_blueprint = Blueprint("sync", __name__, url_prefix="/api")

ACCESS_TOKEN_HEADER = "X-Google-Access-Token"
ENTITY_ALIASES = {"partner": "partners", "staff": "staff", "asin": "asins"}
WORKER_HEALTH_TIMEOUT = 5.0
MAX_WORKER_HEALTH_TIMEOUT = 60.0


def _sync_error_response(exc: SyncError):
    if isinstance(exc, SyncInProgressError):
        return conflict(str(exc), {"active_sync_run_id": exc.active_run_id})
    return api_error(exc.code, str(exc), exc.http_status)


def _parse_sync_options(payload) -> SyncOptions:
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    dry_run = payload.get("dry_run", False)
    force_overwrite = payload.get("force_overwrite", False)
    row_limit = payload.get("row_limit")
    if not isinstance(dry_run, bool) or not isinstance(force_overwrite, bool):
        raise ValueError("dry_run and force_overwrite must be booleans.")
    if row_limit is not None and (isinstance(row_limit, bool) or not isinstance(row_limit, int) or row_limit < 1):
        raise ValueError("row_limit must be a positive integer.")
    return SyncOptions(
        dry_run=dry_run,
        force_overwrite=force_overwrite,
        row_limit=row_limit,
        triggered_by=str(current_user.get_id()),
    )


def _request_options():
    try:
        return _parse_sync_options(request.get_json(silent=True) or {}), None
    except ValueError as exc:
        return None, validation_error(str(exc))


def _credential():
    return resolve_sheet_credential(request.headers.get(ACCESS_TOKEN_HEADER))


@sync_blueprint.post("/sync/tab/<int:tab_mapping_id>")
@admin_required_api
def sync_tab(tab_mapping_id: int):
    options, error_response = _request_options()
    if error_response:
        return error_response

    try:
        result = SyncEngine().sync_tab(tab_mapping_id, _credential(), options)
    except SyncError as exc:
        db.session.rollback()
        return _sync_error_response(exc)

    return api_success(result.to_dict())


@sync_blueprint.post("/sync/data-source/<int:data_source_id>")
@admin_required_api
def sync_data_source(data_source_id: int):
    options, error_response = _request_options()
    if error_response:
        return error_response

    try:
        outcome = SyncEngine().sync_data_source(data_source_id, _credential(), options)
    except SyncError as exc:
        db.session.rollback()
        return _sync_error_response(exc)
    return api_success(outcome.to_dict(include_changes=options.dry_run))


def _split_csv(value: str | None):
    if not value:
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@sync_blueprint.get("/sync/runs")
@admin_required_api
def list_sync_runs():
    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            tab_mapping_id=raw.get("tab_mapping_id"),
            data_source_id=raw.get("data_source_id"),
            include_dry_runs=raw.get("include_dry_runs"),
        )
    except ValueError as exc:
        return validation_error(str(exc))

    start_time = time.perf_counter()
    result = SyncRunService().list_runs(filters)
    current_app.logger.info(
        "Sync runs list retrieved",
        extra={
            "sync_run_count": len(result.items),
            "sync_total_runs": result.total,
            "sync_response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
            "user_id": current_user.get_id(),
        },
    )
    return api_success(
        {
            "runs": [item.to_dict() for item in result.items],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
            "total_pages": result.total_pages,
        }
    )


@sync_blueprint.get("/sync/runs/<int:run_id>")
@admin_required_api
def get_sync_run(run_id: int):
    service = SyncRunService()
    try:
        run = service.get_run(run_id)
    except NoResultFound:
        return not_found("Sync run")
    payload = service.summarize(run).to_dict()
    payload["errors"] = list(run.errors or [])
    return api_success(payload)


@sync_blueprint.get("/lineage/<entity_type>/<int:entity_id>")
@admin_required_api
def field_lineage(entity_type: str, entity_id: int):
    entity = ENTITY_ALIASES.get(entity_type, entity_type)
    if entity not in ENTITY_MODELS:
        return validation_error(f"Unknown entity type '{entity_type}'.")
    if db.session.get(ENTITY_MODELS[entity], entity_id) is None:
        return not_found(f"{entity} record")

    lineage = get_lineage(entity, entity_id)
    return api_success(
        {
            "entity_type": entity,
            "entity_id": entity_id,
            "lineage": {name: info.to_dict() for name, info in sorted(lineage.items())},
        }
    )


@sync_blueprint.get("/partners/partner-types")
@admin_required_api
def partner_type_projections():
    args = request.args
    try:
        limit = min(max(int(args.get("limit", 50)), 1), 200)
        offset = max(int(args.get("offset", 0)), 0)
    except ValueError:
        return validation_error("limit and offset must be integers.")
    result = list_partner_type_projections(
        limit=limit,
        offset=offset,
        search=args.get("search") or None,
        mismatch_only=args.get("mismatch_only", "").lower() in {"1", "true", "yes"},
        drift_only=args.get("drift_only", "").lower() in {"1", "true", "yes"},
    )
    return api_success(
        {"partners": result.rows, "total": result.total, "has_more": result.has_more, "summary": result.summary}
    )


@sync_blueprint.post("/cron/partner-type-reconciliation")
@cron_secret_required
def cron_partner_type_reconciliation():
    start_time = time.perf_counter()
    current_app.logger.info("Partner type reconciliation cron starting")
    try:
        result = reconcile_partner_types(dry_run=False, limit=DEFAULT_SCAN_LIMIT)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("Partner type reconciliation cron failed")
        return api_error(
            ErrorCodes.INTERNAL_ERROR,
            f"Partner type reconciliation cron failed: {exc}",
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    payload = result.to_dict()
    payload["duration_ms"] = int((time.perf_counter() - start_time) * 1000)
    return api_success(payload)


@sync_blueprint.get("/sync/worker-health")
@admin_required_api
def sync_worker_health():
    state = current_app.extensions.get("sync", {})
    timeout_seconds = request.args.get("timeout", WORKER_HEALTH_TIMEOUT, type=float)
    if not 0 < timeout_seconds <= MAX_WORKER_HEALTH_TIMEOUT:
        timeout_seconds = WORKER_HEALTH_TIMEOUT
    payload = {
        "enabled": state.get("enabled", False),
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        return api_success(payload)

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("sync.healthcheck") if celery_app is not None else None
    if task is None:
        return internal_error()

    try:
        payload["heartbeat"] = task.apply_async().get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        return api_error(ErrorCodes.EXTERNAL_API_ERROR, "Sync worker did not respond in time", HTTPStatus.GATEWAY_TIMEOUT)
    payload["status"] = "ok"
    return api_success(payload)
