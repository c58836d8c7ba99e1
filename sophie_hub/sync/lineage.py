"""
Field lineage: which source, tab, column and run last wrote each field.

Lineage rows are append-only. Reading lineage for an entity collapses the
history to the latest write per field.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy.orm import Session

from sophie_hub.models import FieldLineage, db

SOURCE_REF_SEPARATOR = " → "


def build_source_ref(source_name: str, tab_name: str, column: str) -> str:
    return SOURCE_REF_SEPARATOR.join((source_name, tab_name, column))


@dataclass(frozen=True)
class SourceRef:
    sheet: str | None
    tab: str | None
    column: str | None


def parse_source_ref(ref: str | None) -> SourceRef:
    """Split ``"<sheet> → <tab> → <column>"``; missing parts come back as ``None``."""
    if not ref:
        return SourceRef(None, None, None)
    parts = [part.strip() or None for part in ref.split(SOURCE_REF_SEPARATOR)]
    if len(parts) > 3:
        # Column headers may themselves contain the separator.
        parts = parts[:2] + [SOURCE_REF_SEPARATOR.join(p or "" for p in parts[2:])]
    parts += [None] * (3 - len(parts))
    return SourceRef(*parts)


def json_safe(value: Any) -> Any:
    """Convert transformed values into something the JSON column accepts."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


@dataclass(frozen=True)
class LineageEntry:
    entity_type: str
    entity_id: int
    field_name: str
    source_type: str
    source_id: str | None
    source_ref: str | None
    previous_value: Any
    new_value: Any
    sync_run_id: int | None = None
    changed_by: str | None = None


@dataclass(frozen=True)
class LineageInfo:
    field_name: str
    source_type: str
    source_id: str | None
    source_ref: str | None
    sheet: str | None
    tab: str | None
    column: str | None
    previous_value: Any
    new_value: Any
    sync_run_id: int | None
    changed_by: str | None
    changed_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field_name": self.field_name,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "source_ref": self.source_ref,
            "sheet": self.sheet,
            "tab": self.tab,
            "column": self.column,
            "previous_value": self.previous_value,
            "new_value": self.new_value,
            "sync_run_id": self.sync_run_id,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }


class LineageTracker:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def record_lineage(self, entries: Sequence[LineageEntry]) -> int:
        """Stage one row per entry in a single batch; the caller commits."""
        if not entries:
            return 0
        self.session.add_all(
            [
                FieldLineage(
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    field_name=entry.field_name,
                    source_type=entry.source_type,
                    source_id=entry.source_id,
                    source_ref=entry.source_ref,
                    previous_value=json_safe(entry.previous_value),
                    new_value=json_safe(entry.new_value),
                    sync_run_id=entry.sync_run_id,
                    changed_by=entry.changed_by,
                )
                for entry in entries
            ]
        )
        return len(entries)

    def get_lineage(self, entity_type: str, entity_id: int) -> dict[str, LineageInfo]:
        rows: Iterable[FieldLineage] = (
            self.session.query(FieldLineage)
            .filter(FieldLineage.entity_type == entity_type, FieldLineage.entity_id == entity_id)
            .order_by(FieldLineage.changed_at.desc(), FieldLineage.id.desc())
        )
        latest: dict[str, LineageInfo] = {}
        for row in rows:
            if row.field_name in latest:
                continue
            ref = parse_source_ref(row.source_ref)
            latest[row.field_name] = LineageInfo(
                field_name=row.field_name,
                source_type=row.source_type,
                source_id=row.source_id,
                source_ref=row.source_ref,
                sheet=ref.sheet,
                tab=ref.tab,
                column=ref.column,
                previous_value=row.previous_value,
                new_value=row.new_value,
                sync_run_id=row.sync_run_id,
                changed_by=row.changed_by,
                changed_at=row.changed_at,
            )
        return latest


def record_lineage(entries: Sequence[LineageEntry], *, session: Session | None = None) -> int:
    return LineageTracker(session).record_lineage(entries)


def get_lineage(entity_type: str, entity_id: int, *, session: Session | None = None) -> dict[str, LineageInfo]:
    return LineageTracker(session).get_lineage(entity_type, entity_id)
