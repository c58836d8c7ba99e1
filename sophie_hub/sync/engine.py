"""
The data-enrichment sync engine.

``SyncEngine.sync_tab`` runs one tab mapping end to end:

1. acquire the per-tab lock (a ``running`` ``SyncRun`` row);
2. load the mapping configuration;
3. fetch the tab through its connector;
4. turn each row into a create, update or skip, applying transforms and field
   authority, collecting weekly status cells and recomputing derived fields;
5. preview (dry run) or apply the changes, writing lineage for every
   column-sourced field that changed;
6. finalize the run, which releases the lock.

Row-level problems never abort a run; they are recorded on the run as errors or
warnings. Configuration and fetch failures mark the run failed and propagate.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from sophie_hub.google_workspace import resolve_google_account_type
from sophie_hub.models import DataSource, SyncRunStatus, TabMapping, db
from sophie_hub.normalizers import normalize_marketplace_code, normalize_staff_status
from sophie_hub.partners.partner_type import PERSISTED_FIELDS, build_partner_type_persistence_fields
from sophie_hub.settings import get_settings

from . import audit, metrics
from .authority import resolve_authorized_fields
from .config_store import ColumnRule, SyncConfig, load_data_source_configs, load_mapping_config
from .connectors import SheetData, SourceConnector, get_connector
from .errors import (
    FetchError,
    SyncConfigError,
    SyncError,
    SyncInProgressError,
    TabMappingNotFoundError,
    TransformError,
)
from .lineage import LineageEntry, LineageTracker, build_source_ref, json_safe
from .patterns import WeeklyColumn, WeeklyValue, build_weekly_column_set, parse_weekly_header
from .run_service import SyncRunService
from .source_data import connector_key, merge_source_row
from .storage import (
    EntitySnapshot,
    EntityStore,
    SqlAlchemyEntityStore,
    StaleEntityError,
    coerce_entity_value,
    entity_fields,
    normalize_key,
)
from .transforms import apply_transform

DEFAULT_CREATE_BATCH_SIZE = 50
DEFAULT_ERROR_LIMIT = 50
HEARTBEAT_EVERY_ROWS = 500
LINEAGE_SOURCE_TYPE = "google_sheet"
# partner_type_computed_at moves on every computation and is not a change by itself.
PARTNER_TYPE_COMPARED = tuple(name for name in PERSISTED_FIELDS if name != "partner_type_computed_at")

ChangeAction = Literal["create", "update", "skip"]

_HEADER_NOISE = re.compile(r"[\W_]+")


@dataclass(frozen=True)
class SyncOptions:
    dry_run: bool = False
    force_overwrite: bool = False
    row_limit: int | None = None
    triggered_by: str | None = None


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    previous_value: Any
    new_value: Any
    source_column: str | None = None


@dataclass
class EntityChange:
    """What the engine decided for one source row."""

    row_number: int
    key: str | None
    action: ChangeAction
    entity_id: int | None = None
    values: dict[str, Any] = field(default_factory=dict)
    field_changes: list[FieldChange] = field(default_factory=list)
    weekly: list[WeeklyValue] = field(default_factory=list)
    skip_reason: str | None = None
    expected_version: int | None = None
    source_row: "_RowInput | None" = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "row": self.row_number,
            "key": self.key,
            "action": self.action,
            "entity_id": self.entity_id,
            "skip_reason": self.skip_reason,
            "fields": {
                change.field_name: {
                    "old": json_safe(change.previous_value),
                    "new": json_safe(change.new_value),
                    "column": change.source_column,
                }
                for change in self.field_changes
            },
            "weekly_statuses": [
                {"week_start_date": value.column.week_start_date.isoformat(), "status": value.status}
                for value in self.weekly
            ],
        }


@dataclass
class SyncStats:
    rows_processed: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    weekly_statuses_upserted: int = 0
    lineage_written: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_changes(cls, changes: Sequence[EntityChange], errors: Sequence[dict[str, Any]]) -> "SyncStats":
        return cls(
            rows_processed=len(changes),
            rows_created=sum(1 for c in changes if c.action == "create"),
            rows_updated=sum(1 for c in changes if c.action == "update"),
            rows_skipped=sum(1 for c in changes if c.action == "skip"),
            errors=list(errors),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_processed": self.rows_processed,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "rows_skipped": self.rows_skipped,
            "weekly_statuses_upserted": self.weekly_statuses_upserted,
            "lineage_written": self.lineage_written,
            "errors": list(self.errors),
        }


@dataclass
class SyncResult:
    sync_run_id: int | None
    tab_mapping_id: int
    status: str
    dry_run: bool
    stats: SyncStats
    changes: list[EntityChange]
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.status == SyncRunStatus.COMPLETED.value

    def to_dict(self, *, include_changes: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sync_run_id": self.sync_run_id,
            "tab_mapping_id": self.tab_mapping_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "stats": self.stats.to_dict(),
            "duration_ms": self.duration_ms,
        }
        if include_changes:
            payload["changes"] = [change.to_dict() for change in self.changes if change.action != "skip"]
        return payload


@dataclass
class DataSourceSyncResult:
    data_source_id: int
    results: list[SyncResult] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self, *, include_changes: bool = False) -> dict[str, Any]:
        return {
            "data_source_id": self.data_source_id,
            "tabs": [result.to_dict(include_changes=include_changes) for result in self.results],
            "failures": list(self.failures),
        }


@dataclass(frozen=True)
class _RowInput:
    row_number: int
    key: str
    incoming: dict[str, Any]
    sources: dict[str, str]
    row_dict: dict[str, str]
    weekly: list[WeeklyValue]


def _row_error(row_number: int, message: str, *, column: str | None = None, severity: str = "error") -> dict[str, Any]:
    entry: dict[str, Any] = {"row": row_number, "message": message, "severity": severity}
    if column:
        entry["column"] = column
    return entry


def _differs(previous: Any, new: Any) -> bool:
    def _norm(value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.replace(tzinfo=None)
        return value

    return _norm(previous) != _norm(new)


def _header_key(header: str) -> str:
    return " ".join(_HEADER_NOISE.sub(" ", header.lower()).split())


def _column_positions(headers: Sequence[str], columns: Iterable[ColumnRule]) -> dict[int, int]:
    """
    Map column rule id to header position.

    Headers match on normalized text, first occurrence wins. The stored index
    is only used for non-key columns whose header cell at that index is blank;
    a renamed header never hands its slot to a different mapping.
    """
    lookup: dict[str, int] = {}
    for index, header in enumerate(headers):
        key = _header_key(header)
        if key:
            lookup.setdefault(key, index)
    positions: dict[int, int] = {}
    for rule in columns:
        index = lookup.get(_header_key(rule.source_column))
        stored = rule.source_column_index
        if index is None and not rule.is_key and stored is not None and stored < len(headers):
            if not headers[stored].strip():
                index = stored
        if index is not None:
            positions[rule.id] = index
    return positions


def _check_target_fields(config: SyncConfig) -> None:
    writable = entity_fields(config.entity)
    unknown = sorted({rule.target_field for rule in config.field_columns} - writable)
    if config.key_column.target_field not in writable:
        unknown.insert(0, config.key_column.target_field)
    if unknown:
        raise SyncConfigError(
            f"Tab '{config.tab.tab_name}' maps to unknown {config.entity} fields: " + ", ".join(unknown)
        )


class SyncEngine:
    """Runs tab syncs against a store, a run service and a lineage tracker."""

    def __init__(
        self,
        connector_factory: Callable[[str], SourceConnector] | None = None,
        store: EntityStore | None = None,
        run_service: SyncRunService | None = None,
        lineage: LineageTracker | None = None,
        *,
        session: Session | None = None,
        create_batch_size: int | None = None,
        error_limit: int | None = None,
    ) -> None:
        config = current_app.config if has_app_context() else {}
        self.session: Session = session or db.session
        self.connector_factory = connector_factory or self._default_connector_factory
        self.store: EntityStore = store or SqlAlchemyEntityStore(self.session)
        self.error_limit = error_limit or int(config.get("SYNC_ROW_ERROR_LIMIT", DEFAULT_ERROR_LIMIT))
        self.run_service = run_service or SyncRunService(self.session, error_limit=self.error_limit)
        self.lineage = lineage or LineageTracker(self.session)
        self.create_batch_size = create_batch_size or int(
            config.get("SYNC_CREATE_BATCH_SIZE", DEFAULT_CREATE_BATCH_SIZE)
        )

    def _default_connector_factory(self, source_type: str) -> SourceConnector:
        service_account_file = None
        if has_app_context():
            service_account_file = get_settings(self.session).get("google_service_account_file")
        return get_connector(source_type, service_account_file=service_account_file)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sync_tab(
        self,
        tab_mapping_id: int,
        credential: Any = None,
        options: SyncOptions | None = None,
    ) -> SyncResult:
        return self._run(tab_mapping_id, credential, options or SyncOptions())

    def sync_data_source(
        self,
        data_source_id: int,
        credential: Any = None,
        options: SyncOptions | None = None,
    ) -> DataSourceSyncResult:
        """
        Sync every active tab of a data source.

        Tabs whose configuration is invalid or whose run fails are reported in
        ``failures``; the remaining tabs still run.
        """
        options = options or SyncOptions()
        loaded = load_data_source_configs(data_source_id, session=self.session)
        outcome = DataSourceSyncResult(data_source_id=data_source_id)

        for tab_id, error in sorted(loaded.errors.items()):
            outcome.failures.append({"tab_mapping_id": tab_id, "code": error.code, "message": str(error)})

        for tab_id, config in sorted(loaded.configs.items()):
            try:
                outcome.results.append(self._run(tab_id, credential, options, config=config))
            except SyncError as exc:
                outcome.failures.append({"tab_mapping_id": tab_id, "code": exc.code, "message": str(exc)})
        return outcome

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _run(
        self,
        tab_mapping_id: int,
        credential: Any,
        options: SyncOptions,
        *,
        config: SyncConfig | None = None,
    ) -> SyncResult:
        started = time.perf_counter()
        tab = self.session.get(TabMapping, tab_mapping_id)
        if tab is None:
            raise TabMappingNotFoundError(tab_mapping_id)

        try:
            run = self.run_service.acquire(
                tab_mapping_id,
                data_source_id=tab.data_source_id,
                dry_run=options.dry_run,
                triggered_by=options.triggered_by,
            )
        except SyncInProgressError:
            metrics.record_lock_conflict()
            raise

        try:
            config = config or load_mapping_config(tab_mapping_id, session=self.session)
            _check_target_fields(config)
            connector = self.connector_factory(config.data_source.type)
            sheet = connector.fetch_rows(
                credential,
                config.data_source.spreadsheet_id,
                config.tab.tab_name,
                config.tab.header_row,
                options.row_limit,
                connection_config=config.data_source.connection_config,
            )
        except (SyncConfigError, FetchError) as exc:
            self.session.rollback()
            self.run_service.fail(run, str(exc))
            self._finish_observability(run, options, started, entity=None)
            raise

        try:
            changes, errors = self._plan(
                config,
                sheet,
                options,
                heartbeat=lambda processed: self.run_service.heartbeat(run, rows_processed=processed),
            )
            stats = SyncStats.from_changes(changes, errors)
            if not options.dry_run:
                self._apply(config, changes, stats, options, run.id)
                self._touch_sync_timestamps(config, len(sheet.rows))
        except Exception as exc:
            self.session.rollback()
            self.run_service.fail(run, f"Sync aborted: {exc}")
            if has_app_context():
                current_app.logger.exception(
                    "Sync run aborted", extra={"sync_run_id": run.id, "tab_mapping_id": tab_mapping_id}
                )
            self._finish_observability(run, options, started, entity=config.entity)
            raise

        status = SyncRunStatus.COMPLETED
        if not sheet.rows and stats.errors:
            status = SyncRunStatus.FAILED
        self.run_service.complete(
            run,
            rows_processed=stats.rows_processed,
            rows_created=stats.rows_created,
            rows_updated=stats.rows_updated,
            rows_skipped=stats.rows_skipped,
            errors=stats.errors,
            status=status,
        )
        stats.errors = stats.errors[: self.error_limit]
        duration_ms = self._finish_observability(run, options, started, entity=config.entity, stats=stats)

        return SyncResult(
            sync_run_id=run.id,
            tab_mapping_id=tab_mapping_id,
            status=status.value,
            dry_run=options.dry_run,
            stats=stats,
            changes=changes,
            duration_ms=duration_ms,
        )

    def _finish_observability(
        self,
        run,
        options: SyncOptions,
        started: float,
        *,
        entity: str | None,
        stats: SyncStats | None = None,
    ) -> int:
        elapsed = time.perf_counter() - started
        status = run.status.value if isinstance(run.status, SyncRunStatus) else str(run.status)
        metrics.record_sync_run(status=status, dry_run=options.dry_run, duration_seconds=elapsed)
        if stats is not None and entity and not options.dry_run:
            metrics.record_sync_rows(
                entity, created=stats.rows_created, updated=stats.rows_updated, skipped=stats.rows_skipped
            )
            metrics.record_lineage_writes(entity, stats.lineage_written)

        audit.log_sync_run(
            run.id,
            tab_mapping_id=run.tab_mapping_id,
            status=status,
            stats=stats.to_dict() if stats else {"error": run.error_summary},
            actor=options.triggered_by,
            session=self.session,
        )
        if has_app_context():
            current_app.logger.info(
                "Sync run %s finished with status %s",
                run.id,
                status,
                extra={
                    "sync_run_id": run.id,
                    "tab_mapping_id": run.tab_mapping_id,
                    "dry_run": options.dry_run,
                    "rows_processed": stats.rows_processed if stats else 0,
                    "rows_created": stats.rows_created if stats else 0,
                    "rows_updated": stats.rows_updated if stats else 0,
                    "rows_skipped": stats.rows_skipped if stats else 0,
                    "duration_seconds": round(elapsed, 3),
                },
            )
        return int(elapsed * 1000)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(
        self,
        config: SyncConfig,
        sheet: SheetData,
        options: SyncOptions,
        heartbeat: Callable[[int], None] | None = None,
    ) -> tuple[list[EntityChange], list[dict[str, Any]]]:
        errors: list[dict[str, Any]] = []
        headers = sheet.headers
        positions = _column_positions(headers, config.columns)
        key_rule = config.key_column
        if headers and key_rule.id not in positions:
            raise SyncConfigError(
                f"Key column '{key_rule.source_column}' is not present in tab '{config.tab.tab_name}'."
            )

        weekly_columns = self._weekly_columns(config, headers)
        rows: list[_RowInput | EntityChange] = []
        for index, row in enumerate(sheet.rows):
            rows.append(self._read_row(config, headers, row, index + 2, positions, weekly_columns, errors))
            if heartbeat is not None and index and index % HEARTBEAT_EVERY_ROWS == 0:
                heartbeat(index)

        keys = [item.key for item in rows if isinstance(item, _RowInput)]
        existing = self.store.find_by_keys(config.entity, key_rule.target_field, keys) if keys else {}

        changes: list[EntityChange] = []
        seen: set[str] = set()
        for item in rows:
            if isinstance(item, EntityChange):
                changes.append(item)
                continue
            normalized = normalize_key(item.key)
            if normalized in seen:
                errors.append(_row_error(item.row_number, f"Duplicate key '{item.key}' in tab", severity="warning"))
                changes.append(
                    EntityChange(item.row_number, item.key, "skip", skip_reason="duplicate key")
                )
                continue
            seen.add(normalized)
            changes.append(self._decide(config, item, existing.get(normalized), options))
        return changes, errors

    def _weekly_columns(self, config: SyncConfig, headers: Sequence[str]) -> list[WeeklyColumn]:
        if config.entity != "partners" or not config.patterns:
            return []
        matcher = config.pattern_matcher()
        columns: list[WeeklyColumn] = []
        for index, header in enumerate(headers):
            rule = matcher.match(header, headers)
            if rule is None or rule.category != "weekly":
                continue
            column = parse_weekly_header(header, index)
            if column is not None:
                columns.append(column)
        return columns

    def _read_row(
        self,
        config: SyncConfig,
        headers: Sequence[str],
        row: Sequence[str],
        row_number: int,
        positions: Mapping[int, int],
        weekly_columns: Sequence[WeeklyColumn],
        errors: list[dict[str, Any]],
    ) -> _RowInput | EntityChange:
        key_rule = config.key_column
        raw_key = row[positions[key_rule.id]].strip()
        if raw_key:
            try:
                key_value = self._transform_cell(key_rule, raw_key)
            except TransformError as exc:
                errors.append(_row_error(row_number, str(exc), column=exc.column))
                key_value = None
            raw_key = str(key_value).strip() if key_value is not None else ""
        if not raw_key:
            return EntityChange(row_number, None, "skip", skip_reason="missing key")

        incoming: dict[str, Any] = {}
        sources: dict[str, str] = {}
        for rule in config.field_columns:
            position = positions.get(rule.id)
            if position is None:
                continue
            cell = row[position]
            if not cell.strip():
                continue
            try:
                value = self._transform_cell(rule, cell)
            except TransformError as exc:
                errors.append(_row_error(row_number, str(exc), column=exc.column, severity="warning"))
                continue
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            try:
                value = coerce_entity_value(config.entity, rule.target_field, value)
            except (TypeError, ValueError) as exc:
                errors.append(_row_error(row_number, str(exc), column=rule.source_column, severity="warning"))
                continue
            incoming[rule.target_field] = value
            sources[rule.target_field] = rule.source_column

        self._normalize_entity_values(config.entity, incoming, row_number, errors)

        row_dict = {header: cell for header, cell in zip(headers, row) if header}
        weekly = list(build_weekly_column_set(headers, row, columns=weekly_columns)) if weekly_columns else []
        return _RowInput(
            row_number=row_number,
            key=raw_key,
            incoming=incoming,
            sources=sources,
            row_dict=row_dict,
            weekly=weekly,
        )

    @staticmethod
    def _transform_cell(rule: ColumnRule, cell: str) -> Any:
        result = apply_transform(cell, rule.transform_type, rule.transform_config)
        if result.warning and result.value is None:
            raise TransformError(rule.source_column, f"{rule.source_column}: {result.warning}")
        return result.value

    @staticmethod
    def _normalize_entity_values(
        entity: str, values: dict[str, Any], row_number: int, errors: list[dict[str, Any]]
    ) -> None:
        if entity == "staff" and isinstance(values.get("status"), str):
            status = normalize_staff_status(values["status"])
            if status is None:
                errors.append(
                    _row_error(row_number, f"Unrecognized staff status '{values['status']}'", severity="warning")
                )
                values.pop("status")
            else:
                values["status"] = status
        if entity == "asins" and isinstance(values.get("marketplace"), str):
            code = normalize_marketplace_code(values["marketplace"])
            if code is None:
                errors.append(
                    _row_error(row_number, f"Unknown marketplace '{values['marketplace']}'", severity="warning")
                )
                values.pop("marketplace")
            else:
                values["marketplace"] = code

    def _decide(
        self,
        config: SyncConfig,
        item: _RowInput,
        existing: EntitySnapshot | None,
        options: SyncOptions,
    ) -> EntityChange:
        rules = {rule.target_field: rule for rule in config.field_columns}
        current = dict(existing.values) if existing else None
        resolution = resolve_authorized_fields(
            item.incoming, rules, current, force_overwrite=options.force_overwrite
        )

        values: dict[str, Any] = {}
        field_changes: list[FieldChange] = []
        for name, decision in resolution.changed_fields.items():
            if existing is not None and not _differs(decision.previous_value, decision.new_value):
                continue
            values[name] = decision.new_value
            field_changes.append(FieldChange(name, decision.previous_value, decision.new_value, item.sources.get(name)))

        if existing is None:
            values[config.key_column.target_field] = item.key
            field_changes.insert(
                0, FieldChange(config.key_column.target_field, None, item.key, config.key_column.source_column)
            )

        effective = dict(current or {})
        effective.update(values)

        source_data = merge_source_row(
            effective.get("source_data"),
            connector=connector_key(config.data_source.type),
            tab_name=config.tab.tab_name,
            row=item.row_dict,
        )
        if existing is None or source_data != (current or {}).get("source_data"):
            values["source_data"] = source_data
            effective["source_data"] = source_data

        values.update(self._derived_values(config.entity, effective, current))

        if existing is None:
            return EntityChange(
                item.row_number,
                item.key,
                "create",
                values=values,
                field_changes=field_changes,
                weekly=item.weekly,
                source_row=item,
            )
        if not values:
            # Weekly cells still go through the idempotent upsert: a pattern added since
            # the last sync can expose weeks that source_data already holds.
            return EntityChange(
                item.row_number,
                item.key,
                "skip",
                entity_id=existing.id,
                weekly=item.weekly,
                skip_reason="no changes",
            )
        return EntityChange(
            item.row_number,
            item.key,
            "update",
            entity_id=existing.id,
            values=values,
            field_changes=field_changes,
            weekly=item.weekly,
            expected_version=existing.version,
            source_row=item,
        )

    @staticmethod
    def _derived_values(entity: str, effective: Mapping[str, Any], current: Mapping[str, Any] | None) -> dict[str, Any]:
        derived: dict[str, Any] = {}
        if entity == "partners":
            fields = build_partner_type_persistence_fields(
                effective.get("source_data"),
                pod_leader_name=effective.get("pod_leader_name"),
                brand_manager_name=effective.get("brand_manager_name"),
            )
            if current is None or any(_differs(current.get(name), fields[name]) for name in PARTNER_TYPE_COMPARED):
                derived.update(fields)
        elif entity == "staff" and effective.get("email"):
            resolution = resolve_google_account_type(
                str(effective["email"]),
                existing_type=effective.get("account_type_override"),
                directory_context={"full_name": effective.get("full_name"), "title": effective.get("title")},
            )
            if current is None or current.get("account_type") != resolution.type:
                derived["account_type"] = resolution.type
        return derived

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def _apply(
        self,
        config: SyncConfig,
        changes: list[EntityChange],
        stats: SyncStats,
        options: SyncOptions,
        sync_run_id: int,
    ) -> None:
        creates = [change for change in changes if change.action == "create"]
        for start in range(0, len(creates), self.create_batch_size):
            batch = creates[start : start + self.create_batch_size]
            ids = self.store.insert_many(config.entity, [change.values for change in batch])
            for change, entity_id in zip(batch, ids):
                change.entity_id = entity_id

        for change in changes:
            if change.action != "update":
                continue
            try:
                self.store.update(
                    config.entity, change.entity_id, change.values, expected_version=change.expected_version
                )
            except StaleEntityError:
                self._retry_update(config, change, options, stats)

        lineage_entries: list[LineageEntry] = []
        for change in changes:
            if change.entity_id is None:
                continue
            if config.entity == "partners":
                for value in change.weekly:
                    if self.store.upsert_weekly_status(change.entity_id, value.column, value.status):
                        stats.weekly_statuses_upserted += 1
            if change.action == "skip":
                continue
            for field_change in change.field_changes:
                lineage_entries.append(
                    LineageEntry(
                        entity_type=config.entity,
                        entity_id=change.entity_id,
                        field_name=field_change.field_name,
                        source_type=LINEAGE_SOURCE_TYPE,
                        source_id=config.data_source.spreadsheet_id or str(config.data_source.id),
                        source_ref=build_source_ref(
                            config.data_source.name, config.tab.tab_name, field_change.source_column or ""
                        ),
                        previous_value=field_change.previous_value,
                        new_value=field_change.new_value,
                        sync_run_id=sync_run_id,
                        changed_by=options.triggered_by,
                    )
                )
        stats.lineage_written = self.lineage.record_lineage(lineage_entries)
        self.store.commit()

    def _retry_update(
        self, config: SyncConfig, change: EntityChange, options: SyncOptions, stats: SyncStats
    ) -> None:
        """Re-read a concurrently modified entity, re-resolve authority and try once more."""
        fresh = self.store.get(config.entity, change.entity_id)
        if fresh is None:
            self._demote(change, stats, "entity disappeared during sync")
            return
        replanned = self._decide(config, change.source_row, fresh, options)
        if replanned.action == "skip":
            self._demote(change, stats, "no changes")
            return
        try:
            self.store.update(config.entity, fresh.id, replanned.values, expected_version=fresh.version)
        except StaleEntityError:
            self._demote(change, stats, "concurrent modification")
            stats.errors.append(
                _row_error(change.row_number, f"Row skipped after concurrent modification of {config.entity} {fresh.id}")
            )
            return
        change.values = replanned.values
        change.field_changes = replanned.field_changes

    @staticmethod
    def _demote(change: EntityChange, stats: SyncStats, reason: str) -> None:
        change.action = "skip"
        change.skip_reason = reason
        change.field_changes = []
        change.weekly = []
        stats.rows_updated -= 1
        stats.rows_skipped += 1

    def _touch_sync_timestamps(self, config: SyncConfig, row_count: int) -> None:
        now = datetime.now(timezone.utc)
        tab = self.session.get(TabMapping, config.tab.id)
        if tab is not None:
            tab.last_synced_at = now
            tab.last_sync_row_count = row_count
        source = self.session.get(DataSource, config.data_source.id)
        if source is not None:
            source.last_synced_at = now
            source.sync_error = None
        self.session.commit()
