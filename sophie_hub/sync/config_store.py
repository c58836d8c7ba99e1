"""
Loading tab mapping configuration for the sync engine.

Configuration is read once per run into detached, frozen dataclasses so that
row processing never lazily loads relationships or observes admin edits made
mid-run. Every precondition that makes a tab unsyncable (missing tab, no or
ambiguous key column, pattern priority ties) is raised here, before the
source is fetched.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from config.authority import DEFAULT_PROFILE, AuthorityProfile
from sophie_hub.models import ColumnMapping, ColumnPattern, DataSource, TabMapping, db
from sophie_hub.models.enrichment import ColumnCategory

from .errors import NoKeyColumnError, SyncConfigError, TabMappingNotFoundError
from .patterns import WEEKLY_TARGET_TABLE, PatternMatcher, PatternRule

SKIPPED_CATEGORIES = frozenset(
    {ColumnCategory.SKIP.value, ColumnCategory.WEEKLY.value, ColumnCategory.COMPUTED.value}
)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


@dataclass(frozen=True)
class DataSourceSnapshot:
    id: int
    name: str
    type: str
    spreadsheet_id: str | None
    connection_config: Mapping[str, Any]


@dataclass(frozen=True)
class TabSnapshot:
    id: int
    tab_name: str
    header_row: int
    primary_entity: str


@dataclass(frozen=True)
class ColumnRule:
    """A column mapping with its effective authority resolved."""

    id: int
    source_column: str
    source_column_index: int | None
    category: str
    target_field: str | None
    authority: str
    is_key: bool
    transform_type: str
    transform_config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def writes_entity_field(self) -> bool:
        return bool(self.target_field) and self.category not in SKIPPED_CATEGORIES and self.authority != "derived"


@dataclass(frozen=True)
class SyncConfig:
    data_source: DataSourceSnapshot
    tab: TabSnapshot
    columns: tuple[ColumnRule, ...]
    patterns: tuple[PatternRule, ...]
    key_column: ColumnRule

    @property
    def entity(self) -> str:
        return self.tab.primary_entity

    @property
    def field_columns(self) -> tuple[ColumnRule, ...]:
        return tuple(rule for rule in self.columns if rule.writes_entity_field and not rule.is_key)

    def column_for_field(self, field_name: str) -> ColumnRule | None:
        for rule in self.columns:
            if rule.target_field == field_name:
                return rule
        return None

    def pattern_matcher(self) -> PatternMatcher:
        return PatternMatcher(self.patterns)


def _active_profile() -> AuthorityProfile:
    if has_app_context():
        profile = current_app.extensions.get("sync", {}).get("authority_profile")
        if profile is not None:
            return profile
    return DEFAULT_PROFILE


def _snapshot_source(source: DataSource) -> DataSourceSnapshot:
    return DataSourceSnapshot(
        id=source.id,
        name=source.name,
        type=_enum_value(source.type),
        spreadsheet_id=source.spreadsheet_id,
        connection_config=dict(source.connection_config or {}),
    )


def _snapshot_tab(tab: TabMapping) -> TabSnapshot:
    return TabSnapshot(
        id=tab.id,
        tab_name=tab.tab_name,
        header_row=int(tab.header_row or 0),
        primary_entity=_enum_value(tab.primary_entity),
    )


def _column_rule(mapping: ColumnMapping, entity: str, profile: AuthorityProfile) -> ColumnRule:
    declared = _enum_value(mapping.authority) if mapping.authority is not None else None
    target_field = mapping.target_field.strip() if mapping.target_field else None
    return ColumnRule(
        id=mapping.id,
        source_column=mapping.source_column,
        source_column_index=mapping.source_column_index,
        category=_enum_value(mapping.category),
        target_field=target_field,
        authority=profile.resolve(entity, target_field or "", declared),
        is_key=bool(mapping.is_key),
        transform_type=_enum_value(mapping.transform_type) or "none",
        transform_config=dict(mapping.transform_config or {}),
    )


def _build_config(
    source: DataSource,
    tab: TabMapping,
    mappings: Sequence[ColumnMapping],
    patterns: Sequence[ColumnPattern],
    profile: AuthorityProfile,
) -> SyncConfig:
    entity = _enum_value(tab.primary_entity)
    columns = tuple(_column_rule(mapping, entity, profile) for mapping in mappings)
    keys = [rule for rule in columns if rule.is_key]
    if len(keys) != 1:
        raise NoKeyColumnError(tab.id, len(keys))
    if not keys[0].target_field:
        raise SyncConfigError(f"Key column '{keys[0].source_column}' on tab mapping {tab.id} has no target field.")

    rules = tuple(PatternRule.from_model(pattern) for pattern in patterns)
    for rule in rules:
        if rule.category == ColumnCategory.WEEKLY.value and rule.target_table not in (None, "", WEEKLY_TARGET_TABLE):
            raise SyncConfigError(
                f"Weekly pattern '{rule.pattern_name}' targets '{rule.target_table}'; "
                f"weekly statuses can only be stored in '{WEEKLY_TARGET_TABLE}'."
            )
    # Constructing the matcher validates priority uniqueness.
    PatternMatcher(rules)

    return SyncConfig(
        data_source=_snapshot_source(source),
        tab=_snapshot_tab(tab),
        columns=columns,
        patterns=rules,
        key_column=keys[0],
    )


def load_mapping_config(
    tab_mapping_id: int,
    *,
    session: Session | None = None,
    profile: AuthorityProfile | None = None,
) -> SyncConfig:
    """Load the full sync configuration for one tab mapping."""
    session = session or db.session
    profile = profile or _active_profile()

    tab = session.get(TabMapping, tab_mapping_id)
    if tab is None:
        raise TabMappingNotFoundError(tab_mapping_id)
    source = session.get(DataSource, tab.data_source_id)
    if source is None:
        raise TabMappingNotFoundError(tab_mapping_id)

    mappings = (
        session.query(ColumnMapping)
        .filter(ColumnMapping.tab_mapping_id == tab.id)
        .order_by(ColumnMapping.source_column_index, ColumnMapping.id)
        .all()
    )
    patterns = (
        session.query(ColumnPattern)
        .filter(ColumnPattern.tab_mapping_id == tab.id, ColumnPattern.is_active.is_(True))
        .order_by(ColumnPattern.priority.desc(), ColumnPattern.id)
        .all()
    )
    return _build_config(source, tab, mappings, patterns, profile)


@dataclass(slots=True)
class DataSourceConfigs:
    """Per-tab configs for a data source; tabs that fail validation land in ``errors``."""

    data_source_id: int
    configs: dict[int, SyncConfig]
    errors: dict[int, SyncConfigError]


def load_data_source_configs(
    data_source_id: int,
    *,
    session: Session | None = None,
    profile: AuthorityProfile | None = None,
) -> DataSourceConfigs:
    """
    Load configs for every active tab of a data source.

    Column mappings and patterns are fetched with one ``IN`` query each rather
    than per tab.
    """
    session = session or db.session
    profile = profile or _active_profile()

    source = session.get(DataSource, data_source_id)
    if source is None:
        raise SyncConfigError(f"Data source {data_source_id} not found.")

    tabs = (
        session.query(TabMapping)
        .filter(TabMapping.data_source_id == data_source_id, TabMapping.is_active.is_(True))
        .order_by(TabMapping.id)
        .all()
    )
    tab_ids = [tab.id for tab in tabs]
    if not tab_ids:
        return DataSourceConfigs(data_source_id=data_source_id, configs={}, errors={})

    mappings_by_tab: dict[int, list[ColumnMapping]] = defaultdict(list)
    for mapping in (
        session.query(ColumnMapping)
        .filter(ColumnMapping.tab_mapping_id.in_(tab_ids))
        .order_by(ColumnMapping.source_column_index, ColumnMapping.id)
    ):
        mappings_by_tab[mapping.tab_mapping_id].append(mapping)

    patterns_by_tab: dict[int, list[ColumnPattern]] = defaultdict(list)
    for pattern in (
        session.query(ColumnPattern)
        .filter(ColumnPattern.tab_mapping_id.in_(tab_ids), ColumnPattern.is_active.is_(True))
        .order_by(ColumnPattern.priority.desc(), ColumnPattern.id)
    ):
        patterns_by_tab[pattern.tab_mapping_id].append(pattern)

    configs: dict[int, SyncConfig] = {}
    errors: dict[int, SyncConfigError] = {}
    for tab in tabs:
        try:
            configs[tab.id] = _build_config(
                source, tab, mappings_by_tab.get(tab.id, []), patterns_by_tab.get(tab.id, []), profile
            )
        except SyncConfigError as exc:
            errors[tab.id] = exc
    return DataSourceConfigs(data_source_id=data_source_id, configs=configs, errors=errors)
