"""
SQLAlchemy models for the data-enrichment configuration and sync audit trail.

A ``DataSource`` owns one or more ``TabMapping`` rows; each tab binds its
columns to entity fields through ``ColumnMapping`` rows and to column families
(weekly status columns, computed candidates) through ``ColumnPattern`` rows.
Every execution of the sync engine is recorded as a ``SyncRun`` and every field
it writes leaves a ``FieldLineage`` entry behind.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, db


class DataSourceType(str, enum.Enum):
    GOOGLE_SHEET = "google_sheet"
    STATIC = "static"


class DataSourceStatus(str, enum.Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class PrimaryEntity(str, enum.Enum):
    """Entity tables a tab can create or update."""

    PARTNERS = "partners"
    STAFF = "staff"
    ASINS = "asins"


class TabStatus(str, enum.Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    REFERENCE = "reference"
    FLAGGED = "flagged"


class ColumnCategory(str, enum.Enum):
    PARTNER = "partner"
    STAFF = "staff"
    ASIN = "asin"
    WEEKLY = "weekly"
    COMPUTED = "computed"
    SKIP = "skip"


PATTERN_ONLY_CATEGORIES = frozenset({ColumnCategory.WEEKLY, ColumnCategory.COMPUTED})


class Authority(str, enum.Enum):
    """Which source is allowed to overwrite an existing entity value."""

    SOURCE_OF_TRUTH = "source_of_truth"
    REFERENCE = "reference"
    DERIVED = "derived"


class TransformType(str, enum.Enum):
    NONE = "none"
    TRIM = "trim"
    LOWERCASE = "lowercase"
    UPPERCASE = "uppercase"
    DATE = "date"
    CURRENCY = "currency"
    BOOLEAN = "boolean"
    NUMBER = "number"
    JSON = "json"
    VALUE_MAPPING = "value_mapping"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DataSource(BaseModel):
    """One external system connection, e.g. a single spreadsheet."""

    __tablename__ = "data_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    type: Mapped[DataSourceType] = mapped_column(
        Enum(DataSourceType, name="data_source_type_enum"),
        nullable=False,
        default=DataSourceType.GOOGLE_SHEET,
    )
    spreadsheet_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    spreadsheet_url: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    connection_config: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Opaque per-type connection blob (e.g. static rows, credential hints).",
    )
    status: Mapped[DataSourceStatus] = mapped_column(
        Enum(DataSourceStatus, name="data_source_status_enum"),
        nullable=False,
        default=DataSourceStatus.ACTIVE,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    sync_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    tabs = relationship(
        "TabMapping",
        back_populates="data_source",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TabMapping.id",
    )

    def __repr__(self) -> str:
        return f"<DataSource id={self.id} name={self.name!r} type={self.type}>"


class TabMapping(BaseModel):
    """A single tab within a data source, scoped to exactly one primary entity."""

    __tablename__ = "tab_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    data_source_id: Mapped[int] = mapped_column(
        ForeignKey("data_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tab_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    header_row: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    primary_entity: Mapped[PrimaryEntity] = mapped_column(
        Enum(PrimaryEntity, name="primary_entity_enum"),
        nullable=False,
    )
    status: Mapped[TabStatus] = mapped_column(
        Enum(TabStatus, name="tab_status_enum"),
        nullable=False,
        default=TabStatus.ACTIVE,
    )
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_sync_row_count: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    data_source = relationship("DataSource", back_populates="tabs")
    column_mappings = relationship(
        "ColumnMapping",
        back_populates="tab_mapping",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ColumnMapping.source_column_index",
    )
    column_patterns = relationship(
        "ColumnPattern",
        back_populates="tab_mapping",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (UniqueConstraint("data_source_id", "tab_name", name="uq_tab_mappings_source_tab"),)

    def __init__(self, **kwargs):
        # is_active is derived from status and never accepted directly.
        kwargs.pop("is_active", None)
        kwargs.setdefault("status", TabStatus.ACTIVE)
        super().__init__(**kwargs)

    @validates("status")
    def _sync_is_active(self, _key, value):
        status = TabStatus(value)
        # Read by the is_active validator before the new status is stored.
        self._incoming_status = status
        self.is_active = status == TabStatus.ACTIVE
        return status

    @validates("is_active")
    def _guard_is_active(self, _key, value):
        status = self.__dict__.pop("_incoming_status", None) or self.status
        expected = status == TabStatus.ACTIVE
        if bool(value) != expected:
            raise ValueError(f"is_active follows status; set status instead of is_active={value!r}.")
        return expected

    def __repr__(self) -> str:
        return f"<TabMapping id={self.id} tab={self.tab_name!r} entity={self.primary_entity}>"


class ColumnMapping(BaseModel):
    """One spreadsheet column bound to one entity field."""

    __tablename__ = "column_mappings"

    id: Mapped[int] = mapped_column(primary_key=True)
    tab_mapping_id: Mapped[int] = mapped_column(
        ForeignKey("tab_mappings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_column: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source_column_index: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    category: Mapped[ColumnCategory] = mapped_column(
        Enum(ColumnCategory, name="column_category_enum"),
        nullable=False,
    )
    target_field: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    authority: Mapped[Authority | None] = mapped_column(
        Enum(Authority, name="column_authority_enum"),
        nullable=True,
        default=Authority.SOURCE_OF_TRUTH,
    )
    is_key: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    transform_type: Mapped[TransformType] = mapped_column(
        Enum(TransformType, name="column_transform_enum"),
        nullable=False,
        default=TransformType.NONE,
    )
    transform_config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    tab_mapping = relationship("TabMapping", back_populates="column_mappings")

    __table_args__ = (
        UniqueConstraint("tab_mapping_id", "source_column", name="uq_column_mappings_tab_column"),
        Index("ix_column_mappings_tab_key", "tab_mapping_id", "is_key"),
    )

    @validates("category")
    def _reject_pattern_categories(self, _key, value):
        category = ColumnCategory(value)
        if category in PATTERN_ONLY_CATEGORIES:
            raise ValueError(
                f"Category '{category.value}' columns are matched by ColumnPattern rows, "
                "not stored as individual column mappings."
            )
        return category

    def __repr__(self) -> str:
        return f"<ColumnMapping id={self.id} column={self.source_column!r} target={self.target_field!r}>"


class ColumnPattern(BaseModel):
    """Rule matching a family of columns (e.g. weekly status headers) by structure."""

    __tablename__ = "column_patterns"

    id: Mapped[int] = mapped_column(primary_key=True)
    tab_mapping_id: Mapped[int] = mapped_column(
        ForeignKey("tab_mappings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    pattern_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    category: Mapped[ColumnCategory] = mapped_column(
        Enum(ColumnCategory, name="pattern_category_enum"),
        nullable=False,
        default=ColumnCategory.WEEKLY,
    )
    match_config: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    target_table: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    target_field: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    priority: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    tab_mapping = relationship("TabMapping", back_populates="column_patterns")

    def __repr__(self) -> str:
        return f"<ColumnPattern id={self.id} name={self.pattern_name!r} priority={self.priority}>"


class SyncRun(BaseModel):
    """One execution of the sync engine against one tab mapping."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    data_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("data_sources.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    tab_mapping_id: Mapped[int | None] = mapped_column(
        ForeignKey("tab_mappings.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.RUNNING,
        index=True,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    started_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    rows_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    rows_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    errors: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    active_lock: Mapped[int | None] = mapped_column(
        db.Integer,
        nullable=True,
        unique=True,
        comment="Holds the tab mapping id while running; NULL once terminal. Unique so only one run holds it.",
    )

    data_source = relationship("DataSource")
    tab_mapping = relationship("TabMapping")

    __table_args__ = (Index("ix_sync_runs_tab_started", "tab_mapping_id", "started_at"),)

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncRunStatus.COMPLETED, SyncRunStatus.FAILED)

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} tab={self.tab_mapping_id} status={self.status}>"


class FieldLineage(BaseModel):
    """Append-only record of which source/column/run wrote an entity field."""

    __tablename__ = "field_lineage"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    field_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    source_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source_ref: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    previous_value: Mapped[object | None] = mapped_column(db.JSON, nullable=True)
    new_value: Mapped[object | None] = mapped_column(db.JSON, nullable=True)
    sync_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    changed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    sync_run = relationship("SyncRun")

    __table_args__ = (
        Index("ix_field_lineage_entity", "entity_type", "entity_id"),
        Index("ix_field_lineage_entity_field", "entity_type", "entity_id", "field_name", "changed_at"),
    )

    def __repr__(self) -> str:
        return f"<FieldLineage {self.entity_type}:{self.entity_id}.{self.field_name} run={self.sync_run_id}>"
