"""
Entity persistence used by the sync engine.

``EntityStore`` is the narrow interface the engine needs; the SQLAlchemy
implementation below resolves entity tables through ``ENTITY_MODELS`` and
coerces transformed values into each column's Python type before assignment.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Protocol, Sequence

from sqlalchemy import JSON, Boolean, Date, DateTime, Integer, Numeric, func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from sophie_hub.models import ENTITY_MODELS, WeeklyStatus, db

from .errors import SyncConfigError
from .patterns import WeeklyColumn

KEY_LOOKUP_CHUNK = 500
SYSTEM_COLUMNS = frozenset({"id", "created_at", "updated_at", "version_id"})


class StaleEntityError(RuntimeError):
    """The entity changed between read and write."""

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(f"{entity} {entity_id} was modified concurrently.")
        self.entity = entity
        self.entity_id = entity_id


@dataclass(frozen=True)
class EntitySnapshot:
    id: int
    version: int
    values: Mapping[str, Any]


def normalize_key(value: Any) -> str:
    return str(value or "").strip().lower()


class EntityStore(Protocol):
    def find_by_keys(self, entity: str, key_field: str, keys: Iterable[Any]) -> dict[str, EntitySnapshot]: ...

    def get(self, entity: str, entity_id: int) -> EntitySnapshot | None: ...

    def insert_many(self, entity: str, records: Sequence[Mapping[str, Any]]) -> list[int]: ...

    def update(
        self, entity: str, entity_id: int, values: Mapping[str, Any], *, expected_version: int | None = None
    ) -> EntitySnapshot: ...

    def upsert_weekly_status(self, partner_id: int, column: WeeklyColumn, status: str) -> bool: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def resolve_model(entity: str):
    try:
        return ENTITY_MODELS[entity]
    except KeyError:
        raise SyncConfigError(f"Unknown entity '{entity}'.") from None


def entity_fields(entity: str) -> frozenset[str]:
    model = resolve_model(entity)
    return frozenset(column.key for column in model.__table__.columns) - SYSTEM_COLUMNS


def _to_date(value: Any) -> date | None:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    text = str(value).strip()
    if not text:
        return None
    return date.fromisoformat(text[:10])


def coerce_value(column, value: Any) -> Any:
    """Coerce ``value`` into the Python type expected by ``column``."""
    if value is None:
        return None
    column_type = column.type
    if isinstance(column_type, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if isinstance(column_type, Date):
        return _to_date(value)
    if isinstance(column_type, Numeric):
        try:
            return value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"'{value}' is not a valid number for {column.key}.") from exc
    if isinstance(column_type, Boolean):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "y"}
    if isinstance(column_type, Integer):
        return int(value)
    if isinstance(column_type, JSON):
        return value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def coerce_entity_value(entity: str, field_name: str, value: Any) -> Any:
    columns = resolve_model(entity).__table__.columns
    if field_name not in columns:
        raise SyncConfigError(f"{entity} has no field '{field_name}'.")
    return coerce_value(columns[field_name], value)


class SqlAlchemyEntityStore:
    """``EntityStore`` backed by the Flask-SQLAlchemy session."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def _snapshot(self, instance) -> EntitySnapshot:
        fields = entity_fields(instance.__table__.name)
        return EntitySnapshot(
            id=instance.id,
            version=instance.version_id,
            values={name: getattr(instance, name) for name in fields},
        )

    def _coerced(self, model, values: Mapping[str, Any]) -> dict[str, Any]:
        columns = model.__table__.columns
        coerced: dict[str, Any] = {}
        for name, value in values.items():
            if name in SYSTEM_COLUMNS or name not in columns:
                raise SyncConfigError(f"{model.__tablename__} has no writable field '{name}'.")
            coerced[name] = coerce_value(columns[name], value)
        return coerced

    def find_by_keys(self, entity: str, key_field: str, keys: Iterable[Any]) -> dict[str, EntitySnapshot]:
        model = resolve_model(entity)
        if key_field not in model.__table__.columns:
            raise SyncConfigError(f"{entity} has no key field '{key_field}'.")
        column = getattr(model, key_field)
        wanted = sorted({normalize_key(key) for key in keys if normalize_key(key)})

        found: dict[str, EntitySnapshot] = {}
        for start in range(0, len(wanted), KEY_LOOKUP_CHUNK):
            chunk = wanted[start : start + KEY_LOOKUP_CHUNK]
            rows = (
                self.session.query(model)
                .filter(func.lower(func.trim(column)).in_(chunk))
                .order_by(model.id)
                .all()
            )
            for row in rows:
                # Oldest row wins when duplicates share a key.
                found.setdefault(normalize_key(getattr(row, key_field)), self._snapshot(row))
        return found

    def get(self, entity: str, entity_id: int) -> EntitySnapshot | None:
        model = resolve_model(entity)
        instance = self.session.get(model, entity_id, populate_existing=True)
        return self._snapshot(instance) if instance is not None else None

    def insert_many(self, entity: str, records: Sequence[Mapping[str, Any]]) -> list[int]:
        model = resolve_model(entity)
        instances = [model(**self._coerced(model, record)) for record in records]
        self.session.add_all(instances)
        self.session.flush()
        return [instance.id for instance in instances]

    def update(
        self, entity: str, entity_id: int, values: Mapping[str, Any], *, expected_version: int | None = None
    ) -> EntitySnapshot:
        model = resolve_model(entity)
        instance = self.session.get(model, entity_id)
        if instance is None:
            raise StaleEntityError(entity, entity_id)
        if expected_version is not None and instance.version_id != expected_version:
            raise StaleEntityError(entity, entity_id)
        for name, value in self._coerced(model, values).items():
            setattr(instance, name, value)
        try:
            self.session.flush()
        except StaleDataError as exc:
            self.session.expire(instance)
            raise StaleEntityError(entity, entity_id) from exc
        return self._snapshot(instance)

    def upsert_weekly_status(self, partner_id: int, column: WeeklyColumn, status: str) -> bool:
        """Insert or update the partner's status for the week; returns ``True`` when something changed."""
        existing = (
            self.session.query(WeeklyStatus)
            .filter(
                WeeklyStatus.partner_id == partner_id,
                WeeklyStatus.week_start_date == column.week_start_date,
            )
            .one_or_none()
        )
        if existing is None:
            self.session.add(
                WeeklyStatus(
                    partner_id=partner_id,
                    week_start_date=column.week_start_date,
                    week_number=column.week_number,
                    year=column.year,
                    status=status,
                )
            )
            return True
        if existing.status == status and existing.week_number == column.week_number:
            return False
        existing.status = status
        existing.week_number = column.week_number
        existing.year = column.year
        return True

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
