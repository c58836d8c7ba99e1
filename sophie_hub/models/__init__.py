# sophie_hub/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .enrichment import (
    Authority,
    ColumnCategory,
    ColumnMapping,
    ColumnPattern,
    DataSource,
    DataSourceStatus,
    DataSourceType,
    FieldLineage,
    PrimaryEntity,
    SyncRun,
    SyncRunStatus,
    TabMapping,
    TabStatus,
    TransformType,
)
from .entities import ENTITY_MODELS, Asin, Partner, Staff, WeeklyStatus
from .system import AuditLog, SystemSetting, User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "AuditLog",
    "SystemSetting",
    # Data-enrichment configuration
    "DataSource",
    "DataSourceType",
    "DataSourceStatus",
    "TabMapping",
    "TabStatus",
    "PrimaryEntity",
    "ColumnMapping",
    "ColumnCategory",
    "ColumnPattern",
    "Authority",
    "TransformType",
    # Sync audit trail
    "SyncRun",
    "SyncRunStatus",
    "FieldLineage",
    # Entities
    "Partner",
    "Staff",
    "Asin",
    "WeeklyStatus",
    "ENTITY_MODELS",
]
