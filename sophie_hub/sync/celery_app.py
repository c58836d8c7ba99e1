"""
Celery wiring for the sync worker.

The worker is optional: nothing is built until sync is enabled. Without
``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the broker and result backend
fall back to a SQLite file in the instance folder so local development needs
no Redis.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from celery import Celery, Task
from celery.schedules import crontab
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "sync"
WORKER_DB_FILENAME = "sync-worker.sqlite"
RECONCILE_SCHEDULE_NAME = "nightly-partner-type-reconciliation"
REAP_SCHEDULE_NAME = "reap-stale-sync-runs"

_LOG_PREFIX = "[%(asctime)s: %(levelname)s/%(processName)s]"


def _transport_urls(app: Flask) -> tuple[str, str]:
    """``(broker, backend)`` from config, filling gaps with the instance SQLite file."""
    broker = app.config.get("CELERY_BROKER_URL")
    backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker and backend:
        return broker, backend

    location = Path(app.config.get("CELERY_SQLITE_PATH") or WORKER_DB_FILENAME)
    if not location.is_absolute():
        location = Path(app.instance_path) / location
    location.parent.mkdir(parents=True, exist_ok=True)
    # SQLAlchemy URLs need forward slashes on every platform.
    posix = location.as_posix()
    return broker or f"sqla+sqlite:///{posix}", backend or f"db+sqlite:///{posix}"


def _config_overrides(app: Flask) -> dict[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        app.logger.warning("Ignoring CELERY_CONFIG: expected a JSON object.", exc_info=True)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _crontab(expression: str) -> crontab:
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected a five-field cron expression, got {expression!r}.")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule(app: Flask) -> dict[str, dict[str, Any]]:
    schedule: dict[str, dict[str, Any]] = {}
    expression = app.config.get("SYNC_RECONCILE_CRON")
    if expression:
        schedule[RECONCILE_SCHEDULE_NAME] = {
            "task": "sync.reconcile_partner_types",
            "schedule": _crontab(expression),
            "kwargs": {"dry_run": False},
        }
    reap_minutes = int(app.config.get("SYNC_STALE_RUN_MINUTES") or 0)
    if reap_minutes > 0:
        schedule[REAP_SCHEDULE_NAME] = {"task": "sync.reap_stale_runs", "schedule": reap_minutes * 60.0}
    return schedule


def _worker_settings(app: Flask) -> dict[str, Any]:
    queue = Queue(DEFAULT_QUEUE_NAME, routing_key=DEFAULT_QUEUE_NAME)
    return {
        # One sync per worker slot; runs hold a tab lock for their whole duration.
        "worker_prefetch_multiplier": 1,
        "task_acks_late": True,
        "task_track_started": True,
        "task_queues": (queue,),
        "task_default_queue": queue.name,
        "task_default_exchange": queue.name,
        "task_default_routing_key": queue.routing_key,
        "task_time_limit": app.config.get("SYNC_TASK_TIME_LIMIT", 15 * 60),
        "task_soft_time_limit": app.config.get("SYNC_TASK_SOFT_TIME_LIMIT", 12 * 60),
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "beat_schedule": build_beat_schedule(app),
        "timezone": "UTC",
        "worker_hijack_root_logger": False,
        "worker_log_format": f"{_LOG_PREFIX} %(message)s",
        "worker_task_log_format": f"{_LOG_PREFIX}[%(task_name)s(%(task_id)s)] %(message)s",
    }


def create_celery_app(app: Flask) -> Celery:
    """Create a Celery instance bound to ``app``; tasks run inside its app context."""
    broker, backend = _transport_urls(app)
    overrides = _config_overrides(app)

    class AppContextTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    worker = Celery(
        app.import_name,
        broker=broker,
        backend=backend,
        include=("sophie_hub.sync.tasks",),
        task_cls=AppContextTask,
    )
    worker.conf.update(_worker_settings(app), **overrides)

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.info(
        "Sync worker configured",
        extra={
            "sync_celery_broker_url": broker,
            "sync_celery_result_backend": backend,
            "sync_celery_overrides": sorted(overrides),
            "sync_beat_schedules": sorted(worker.conf.beat_schedule),
        },
    )
    worker.loader.import_default_modules()
    return worker


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance from the sync extension state, built on first use when sync is enabled."""
    state = app.extensions.get("sync")
    if not state:
        return None
    if state.get("celery_app") is None and not state.get("enabled"):
        return None
    return ensure_celery_app(app, state)
