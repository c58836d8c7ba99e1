"""
Sync run lifecycle: locking, heartbeat, completion and history queries.

A run holds the per-tab lock through its ``active_lock`` column, which is
unique and set to the tab id while the run is ``running``. Inserting a second
running row for the same tab violates the constraint, so lock acquisition is a
single atomic insert. Terminal transitions clear the column, releasing the lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.orm import Session

from sophie_hub.models import SyncRun, SyncRunStatus, db

from .errors import SyncInProgressError

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_ERROR_LIMIT = 50

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "completed_at": SyncRun.completed_at,
}
DEFAULT_SORT = "-started_at"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class RunFilters:
    """Filter options for sync run history queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    tab_mapping_id: int | None = None
    data_source_id: int | None = None
    include_dry_runs: bool = True

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        tab_mapping_id: int | str | None = None,
        data_source_id: int | str | None = None,
        include_dry_runs: str | bool | None = None,
    ) -> "RunFilters":
        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value)
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            sort=resolved_sort,
            statuses=resolved_statuses,
            tab_mapping_id=_coerce_optional_int(tab_mapping_id, "tab_mapping_id"),
            data_source_id=_coerce_optional_int(data_source_id, "data_source_id"),
            include_dry_runs=_coerce_bool(include_dry_runs, default=True),
        )


@dataclass(slots=True)
class RunSummary:
    id: int
    data_source_id: int | None
    tab_mapping_id: int | None
    status: str
    dry_run: bool
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    rows_processed: int
    rows_created: int
    rows_updated: int
    rows_skipped: int
    error_count: int
    error_summary: str | None
    triggered_by: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "data_source_id": self.data_source_id,
            "tab_mapping_id": self.tab_mapping_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "rows_processed": self.rows_processed,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "rows_skipped": self.rows_skipped,
            "error_count": self.error_count,
            "error_summary": self.error_summary,
            "triggered_by": self.triggered_by,
        }


@dataclass(slots=True)
class RunListResult:
    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


class SyncRunService:
    """Owns every state transition of ``SyncRun`` rows."""

    def __init__(self, session: Session | None = None, *, error_limit: int = DEFAULT_ERROR_LIMIT) -> None:
        self.session: Session = session or db.session
        self.error_limit = error_limit

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def acquire(
        self,
        tab_mapping_id: int,
        *,
        data_source_id: int | None = None,
        dry_run: bool = False,
        triggered_by: str | None = None,
    ) -> SyncRun:
        """
        Insert a ``running`` row holding the tab lock.

        Raises ``SyncInProgressError`` when another run already holds it.
        """
        now = _utcnow()
        run = SyncRun(
            data_source_id=data_source_id,
            tab_mapping_id=tab_mapping_id,
            status=SyncRunStatus.RUNNING,
            dry_run=dry_run,
            started_at=now,
            heartbeat_at=now,
            triggered_by=triggered_by,
            active_lock=tab_mapping_id,
        )
        self.session.add(run)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise SyncInProgressError(tab_mapping_id, self.active_run_id(tab_mapping_id)) from None
        return run

    def active_run_id(self, tab_mapping_id: int) -> int | None:
        return (
            self.session.query(SyncRun.id)
            .filter(SyncRun.active_lock == tab_mapping_id)
            .scalar()
        )

    def heartbeat(self, run: SyncRun, *, rows_processed: int | None = None) -> None:
        run.heartbeat_at = _utcnow()
        if rows_processed is not None:
            run.rows_processed = rows_processed
        self.session.commit()

    def complete(
        self,
        run: SyncRun,
        *,
        rows_processed: int,
        rows_created: int,
        rows_updated: int,
        rows_skipped: int,
        errors: Sequence[Mapping[str, Any]] = (),
        status: SyncRunStatus = SyncRunStatus.COMPLETED,
    ) -> SyncRun:
        run.rows_processed = rows_processed
        run.rows_created = rows_created
        run.rows_updated = rows_updated
        run.rows_skipped = rows_skipped
        self._finish(run, status, errors)
        return run

    def fail(self, run: SyncRun, message: str, *, errors: Sequence[Mapping[str, Any]] = ()) -> SyncRun:
        entries = list(errors) or [{"row": 0, "message": message, "severity": "error"}]
        self._finish(run, SyncRunStatus.FAILED, entries, summary=message)
        return run

    def _finish(
        self,
        run: SyncRun,
        status: SyncRunStatus,
        errors: Sequence[Mapping[str, Any]],
        *,
        summary: str | None = None,
    ) -> None:
        capped = [dict(entry) for entry in list(errors)[: self.error_limit]]
        run.status = status
        run.completed_at = _utcnow()
        run.heartbeat_at = run.completed_at
        run.errors = capped or None
        run.error_summary = summary or _summarize_errors(errors)
        run.active_lock = None
        self.session.commit()

    def reap_stale_runs(self, max_age: timedelta) -> list[int]:
        """
        Fail ``running`` rows whose heartbeat is older than ``max_age``.

        Returns the ids of the reaped runs, releasing their tab locks.
        """
        cutoff = _utcnow() - max_age
        stale = (
            self.session.query(SyncRun)
            .filter(
                SyncRun.status == SyncRunStatus.RUNNING,
                func.coalesce(SyncRun.heartbeat_at, SyncRun.started_at) < cutoff,
            )
            .order_by(SyncRun.id)
            .all()
        )
        message = f"Sync run abandoned: no heartbeat for over {int(max_age.total_seconds() // 60)} minutes."
        reaped: list[int] = []
        for run in stale:
            run.status = SyncRunStatus.FAILED
            run.completed_at = _utcnow()
            run.errors = [{"row": 0, "message": message, "severity": "error"}]
            run.error_summary = message
            run.active_lock = None
            reaped.append(run.id)
        if reaped:
            self.session.commit()
        return reaped

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self.session.query(SyncRun), filters)
        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        rows = (
            query.order_by(_resolve_sort_expression(filters.sort), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in rows],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def summarize(self, run: SyncRun) -> RunSummary:
        started = _as_utc(run.started_at)
        completed = _as_utc(run.completed_at)
        duration = None
        if started:
            duration = ((completed or _utcnow()) - started).total_seconds()
        return RunSummary(
            id=run.id,
            data_source_id=run.data_source_id,
            tab_mapping_id=run.tab_mapping_id,
            status=run.status.value if isinstance(run.status, SyncRunStatus) else str(run.status),
            dry_run=bool(run.dry_run),
            started_at=started,
            completed_at=completed,
            duration_seconds=duration,
            rows_processed=run.rows_processed or 0,
            rows_created=run.rows_created or 0,
            rows_updated=run.rows_updated or 0,
            rows_skipped=run.rows_skipped or 0,
            error_count=len(run.errors or []),
            error_summary=run.error_summary,
            triggered_by=run.triggered_by,
        )

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(SyncRun.status.in_(filters.statuses))
        if filters.tab_mapping_id is not None:
            predicates.append(SyncRun.tab_mapping_id == filters.tab_mapping_id)
        if filters.data_source_id is not None:
            predicates.append(SyncRun.data_source_id == filters.data_source_id)
        if not filters.include_dry_runs:
            predicates.append(SyncRun.dry_run.is_(False))
        if predicates:
            query = query.filter(and_(*predicates))
        return query


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _summarize_errors(errors: Sequence[Mapping[str, Any]]) -> str | None:
    errors = list(errors)
    if not errors:
        return None
    first = errors[0].get("message") or "Unknown error"
    if len(errors) == 1:
        return str(first)
    return f"{first} (+{len(errors) - 1} more)"


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_optional_int(candidate: int | str | None, name: str) -> int | None:
    if candidate in (None, ""):
        return None
    try:
        return int(candidate)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, received '{candidate}'.") from None


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    try:
        return SyncRunStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_bool(candidate: str | bool | None, *, default: bool) -> bool:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()
