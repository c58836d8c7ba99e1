"""
YAML mapping documents.

A mapping document describes one data source, its tabs, and each tab's column
mappings and column patterns. ``load_mapping_document`` parses and validates a
file; ``apply_mapping_document`` upserts it into the configuration tables and
writes an audit entry for every rule it creates, changes or removes. The
document checksum is kept on the data source so re-applying an unchanged file
is a no-op.

Example::

    version: 1
    data_source:
      name: Master Client Sheet
      type: google_sheet
      spreadsheet_id: 1AbC...
    tabs:
      - tab_name: Master List
        primary_entity: partners
        header_row: 0
        columns:
          - {source: Brand Name, target: brand_name, category: partner, key: true}
          - {source: Tier, target: tier, category: partner, authority: reference}
        patterns:
          - {name: Weekly status, category: weekly, priority: 10, match: {matches_date: true}}
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from sophie_hub.models import (
    Authority,
    ColumnCategory,
    ColumnMapping,
    ColumnPattern,
    DataSource,
    DataSourceType,
    PrimaryEntity,
    TabMapping,
    TabStatus,
    TransformType,
    db,
)
from sophie_hub.models.enrichment import PATTERN_ONLY_CATEGORIES

from .audit import log_rule_change
from .errors import PatternPriorityConflictError
from .patterns import WEEKLY_TARGET_TABLE, PatternRule, validate_unique_priorities

CHECKSUM_KEY = "mapping_checksum"


class MappingLoadError(RuntimeError):
    """Raised when a mapping document cannot be loaded or validated."""


@dataclass(frozen=True)
class ColumnSpec:
    source: str
    category: ColumnCategory
    target: str | None = None
    authority: Authority | None = Authority.SOURCE_OF_TRUTH
    is_key: bool = False
    transform: TransformType = TransformType.NONE
    transform_config: Mapping[str, Any] | None = None
    index: int | None = None

    def as_row(self) -> dict[str, Any]:
        return {
            "source_column": self.source,
            "source_column_index": self.index,
            "category": self.category,
            "target_field": self.target,
            "authority": self.authority,
            "is_key": self.is_key,
            "transform_type": self.transform,
            "transform_config": dict(self.transform_config) if self.transform_config else None,
        }


@dataclass(frozen=True)
class PatternSpec:
    name: str
    category: ColumnCategory
    priority: int
    match: Mapping[str, Any]
    target_table: str | None = None
    target_field: str | None = None
    is_active: bool = True

    def as_row(self) -> dict[str, Any]:
        return {
            "pattern_name": self.name,
            "category": self.category,
            "priority": self.priority,
            "match_config": dict(self.match),
            "target_table": self.target_table,
            "target_field": self.target_field,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class TabSpec:
    tab_name: str
    primary_entity: PrimaryEntity
    header_row: int = 0
    status: TabStatus = TabStatus.ACTIVE
    notes: str | None = None
    columns: Sequence[ColumnSpec] = ()
    patterns: Sequence[PatternSpec] = ()


@dataclass(frozen=True)
class MappingDocument:
    version: int
    source_name: str
    source_type: DataSourceType
    spreadsheet_id: str | None
    spreadsheet_url: str | None
    connection_config: Mapping[str, Any] | None
    tabs: Sequence[TabSpec]
    checksum: str
    path: Path | None = None


@dataclass(slots=True)
class ApplyResult:
    data_source_id: int
    unchanged: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    def bump(self, key: str) -> None:
        self.counts[key] = self.counts.get(key, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {"data_source_id": self.data_source_id, "unchanged": self.unchanged, "counts": dict(self.counts)}


def _compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _enum(enum_cls, value: Any, label: str):
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise MappingLoadError(f"Invalid {label} '{value}'; expected one of: {allowed}.") from None


def _parse_column(entry: Any, tab_name: str) -> ColumnSpec:
    if not isinstance(entry, Mapping):
        raise MappingLoadError(f"Column definition in tab '{tab_name}' must be a mapping, got {entry!r}")
    source = str(entry.get("source") or "").strip()
    if not source:
        raise MappingLoadError(f"Column entry in tab '{tab_name}' missing 'source': {entry!r}")
    category = _enum(ColumnCategory, entry.get("category", "skip"), "category")
    if category in PATTERN_ONLY_CATEGORIES:
        raise MappingLoadError(
            f"Column '{source}' uses category '{category.value}'; declare it under 'patterns' instead."
        )
    target = entry.get("target")
    authority = entry.get("authority")
    is_key = bool(entry.get("key", False))
    if is_key and not target:
        raise MappingLoadError(f"Key column '{source}' in tab '{tab_name}' must declare a target.")
    index = entry.get("index")
    return ColumnSpec(
        source=source,
        category=category,
        target=str(target).strip() if target else None,
        authority=_enum(Authority, authority, "authority") if authority else Authority.SOURCE_OF_TRUTH,
        is_key=is_key,
        transform=_enum(TransformType, entry.get("transform") or "none", "transform"),
        transform_config=entry.get("transform_config") or None,
        index=int(index) if index is not None else None,
    )


def _parse_pattern(entry: Any, tab_name: str) -> PatternSpec:
    if not isinstance(entry, Mapping):
        raise MappingLoadError(f"Pattern definition in tab '{tab_name}' must be a mapping, got {entry!r}")
    name = str(entry.get("name") or "").strip()
    if not name:
        raise MappingLoadError(f"Pattern entry in tab '{tab_name}' missing 'name': {entry!r}")
    match = entry.get("match") or {}
    if not isinstance(match, Mapping):
        raise MappingLoadError(f"Pattern '{name}' match must be a mapping.")
    try:
        priority = int(entry.get("priority", 0))
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Pattern '{name}' has an invalid priority: {exc}") from exc
    category = _enum(ColumnCategory, entry.get("category", "weekly"), "category")
    target_table = entry.get("target_table")
    if category == ColumnCategory.WEEKLY and target_table not in (None, "", WEEKLY_TARGET_TABLE):
        raise MappingLoadError(
            f"Weekly pattern '{name}' cannot target '{target_table}'; use '{WEEKLY_TARGET_TABLE}' or omit it."
        )
    return PatternSpec(
        name=name,
        category=category,
        priority=priority,
        match=dict(match),
        target_table=target_table,
        target_field=entry.get("target_field"),
        is_active=bool(entry.get("active", True)),
    )


def _parse_tab(entry: Any) -> TabSpec:
    if not isinstance(entry, Mapping):
        raise MappingLoadError(f"Tab definition must be a mapping, got {entry!r}")
    tab_name = str(entry.get("tab_name") or "").strip()
    if not tab_name:
        raise MappingLoadError(f"Tab entry missing 'tab_name': {entry!r}")

    columns = [_parse_column(item, tab_name) for item in entry.get("columns") or ()]
    seen: set[str] = set()
    for column in columns:
        lowered = column.source.lower()
        if lowered in seen:
            raise MappingLoadError(f"Duplicate source column '{column.source}' in tab '{tab_name}'.")
        seen.add(lowered)
    key_count = sum(1 for column in columns if column.is_key)
    if key_count > 1:
        raise MappingLoadError(f"Tab '{tab_name}' declares {key_count} key columns; at most one is allowed.")

    patterns = [_parse_pattern(item, tab_name) for item in entry.get("patterns") or ()]
    try:
        validate_unique_priorities(
            PatternRule(
                id=None,
                pattern_name=p.name,
                category=p.category.value,
                match_config=p.match,
                target_table=p.target_table,
                target_field=p.target_field,
                priority=p.priority,
            )
            for p in patterns
            if p.is_active
        )
    except PatternPriorityConflictError as exc:
        raise MappingLoadError(f"Tab '{tab_name}': {exc}") from exc

    try:
        header_row = int(entry.get("header_row", 0))
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Tab '{tab_name}' has an invalid header_row: {exc}") from exc

    return TabSpec(
        tab_name=tab_name,
        primary_entity=_enum(PrimaryEntity, entry.get("primary_entity"), "primary_entity"),
        header_row=header_row,
        status=_enum(TabStatus, entry.get("status") or "active", "status"),
        notes=entry.get("notes"),
        columns=tuple(columns),
        patterns=tuple(patterns),
    )


def parse_mapping_document(raw: Mapping[str, Any], *, path: Path | None = None) -> MappingDocument:
    if not isinstance(raw, Mapping):
        raise MappingLoadError("Mapping document must be a mapping at the top level.")
    try:
        version = int(raw["version"])
        source = raw["data_source"]
        tabs_payload = raw["tabs"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not isinstance(source, Mapping) or not str(source.get("name") or "").strip():
        raise MappingLoadError("data_source must be a mapping with a non-empty 'name'.")
    source_type = _enum(DataSourceType, source.get("type") or "google_sheet", "data source type")
    if source_type is DataSourceType.GOOGLE_SHEET and not source.get("spreadsheet_id"):
        raise MappingLoadError("google_sheet data sources require 'spreadsheet_id'.")

    tabs = [_parse_tab(item) for item in tabs_payload or ()]
    names = [tab.tab_name for tab in tabs]
    if len(names) != len(set(names)):
        raise MappingLoadError("Tab names must be unique within a data source.")

    return MappingDocument(
        version=version,
        source_name=str(source["name"]).strip(),
        source_type=source_type,
        spreadsheet_id=source.get("spreadsheet_id"),
        spreadsheet_url=source.get("spreadsheet_url"),
        connection_config=source.get("connection_config") or None,
        tabs=tuple(tabs),
        checksum=_compute_checksum(raw),
        path=path,
    )


def load_mapping_document(path: str | Path) -> MappingDocument:
    """Load and validate a YAML mapping document."""
    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc
    return parse_mapping_document(raw, path=path)


# Apply ------------------------------------------------------------------------


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


def _snapshot(instance, fields: Sequence[str]) -> dict[str, Any]:
    return {name: _plain(getattr(instance, name)) for name in fields}


def _rule_fields(instance) -> list[str]:
    return [c.key for c in instance.__table__.columns if c.key not in {"id", "created_at", "updated_at"}]


def _audit(session: Session, resource_type: str, resource_id: int, change: str, actor: str | None, **states) -> None:
    log_rule_change(resource_type, resource_id, change=change, actor=actor, session=session, commit=False, **states)


def _assign(instance, values: Mapping[str, Any]) -> bool:
    changed = False
    for name, value in values.items():
        if _plain(getattr(instance, name)) != _plain(value):
            setattr(instance, name, value)
            changed = True
    return changed


def _find_source(session: Session, document: MappingDocument) -> DataSource | None:
    query = session.query(DataSource)
    if document.spreadsheet_id:
        found = query.filter(DataSource.spreadsheet_id == document.spreadsheet_id).order_by(DataSource.id).first()
        if found is not None:
            return found
    return query.filter(DataSource.name == document.source_name).order_by(DataSource.id).first()


def _sync_children(
    session: Session,
    result: ApplyResult,
    *,
    resource_type: str,
    existing: Mapping[str, Any],
    desired: Mapping[str, Mapping[str, Any]],
    factory,
    actor: str | None,
) -> None:
    for name, values in desired.items():
        instance = existing.get(name)
        if instance is None:
            instance = factory(**values)
            session.add(instance)
            session.flush()
            result.bump(f"{resource_type}_created")
            _audit(session, resource_type, instance.id, "create", actor, after=_snapshot(instance, list(values)))
            continue
        before = _snapshot(instance, list(values))
        if _assign(instance, values):
            session.flush()
            result.bump(f"{resource_type}_updated")
            _audit(
                session, resource_type, instance.id, "update", actor,
                before=before, after=_snapshot(instance, list(values)),
            )
    for name, instance in existing.items():
        if name in desired:
            continue
        before = _snapshot(instance, _rule_fields(instance))
        resource_id = instance.id
        session.delete(instance)
        session.flush()
        result.bump(f"{resource_type}_removed")
        _audit(session, resource_type, resource_id, "delete", actor, before=before)


def apply_mapping_document(
    document: MappingDocument,
    *,
    actor: str | None = None,
    force: bool = False,
    session: Session | None = None,
) -> ApplyResult:
    """
    Upsert the document's source, tabs, columns and patterns.

    Tabs absent from the document are left in place; within a listed tab,
    column mappings and patterns absent from the document are removed.
    """
    session = session or db.session
    source = _find_source(session, document)
    stored_checksum = (source.connection_config or {}).get(CHECKSUM_KEY) if source is not None else None
    if source is not None and stored_checksum == document.checksum and not force:
        return ApplyResult(data_source_id=source.id, unchanged=True)

    connection_config = dict(document.connection_config or {})
    connection_config[CHECKSUM_KEY] = document.checksum
    source_values = {
        "name": document.source_name,
        "type": document.source_type,
        "spreadsheet_id": document.spreadsheet_id,
        "spreadsheet_url": document.spreadsheet_url,
        "connection_config": connection_config,
    }
    if source is None:
        source = DataSource(**source_values)
        session.add(source)
        session.flush()
        result = ApplyResult(data_source_id=source.id)
        result.bump("data_source_created")
    else:
        result = ApplyResult(data_source_id=source.id)
        if _assign(source, source_values):
            result.bump("data_source_updated")

    tabs_by_name = {tab.tab_name: tab for tab in source.tabs}
    for spec in document.tabs:
        tab_values = {
            "tab_name": spec.tab_name,
            "primary_entity": spec.primary_entity,
            "header_row": spec.header_row,
            "status": spec.status,
            "notes": spec.notes,
        }
        tab = tabs_by_name.get(spec.tab_name)
        if tab is None:
            tab = TabMapping(data_source_id=source.id, **tab_values)
            session.add(tab)
            session.flush()
            result.bump("tab_mapping_created")
            _audit(session, "tab_mapping", tab.id, "create", actor, after=_snapshot(tab, list(tab_values)))
        else:
            before = _snapshot(tab, list(tab_values))
            if _assign(tab, tab_values):
                session.flush()
                result.bump("tab_mapping_updated")
                _audit(
                    session, "tab_mapping", tab.id, "update", actor,
                    before=before, after=_snapshot(tab, list(tab_values)),
                )

        _sync_children(
            session,
            result,
            resource_type="column_mapping",
            existing={column.source_column: column for column in tab.column_mappings},
            desired={c.source: {"tab_mapping_id": tab.id, **c.as_row()} for c in spec.columns},
            factory=ColumnMapping,
            actor=actor,
        )
        _sync_children(
            session,
            result,
            resource_type="column_pattern",
            existing={pattern.pattern_name: pattern for pattern in tab.column_patterns},
            desired={p.name: {"tab_mapping_id": tab.id, **p.as_row()} for p in spec.patterns},
            factory=ColumnPattern,
            actor=actor,
        )

    session.commit()
    if has_app_context():
        current_app.logger.info(
            "Mapping document applied",
            extra={
                "data_source_id": result.data_source_id,
                "mapping_checksum": document.checksum,
                "mapping_changes": result.counts,
            },
        )
    return result
