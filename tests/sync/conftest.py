from __future__ import annotations

import copy

import pytest
from sheet_fixtures import PARTNER_COLUMNS, PARTNER_HEADERS, PARTNER_ROWS, WEEKLY_PATTERN

from sophie_hub.models import (
    ColumnCategory,
    ColumnMapping,
    ColumnPattern,
    DataSource,
    DataSourceType,
    PrimaryEntity,
    TabMapping,
    db,
)


def _create_static_tab(
    *,
    name: str,
    tab_name: str,
    entity: PrimaryEntity,
    grid: list[list[str]],
    columns,
    patterns=(),
    source: DataSource | None = None,
) -> tuple[DataSource, TabMapping]:
    if source is None:
        source = DataSource(
            name=name,
            type=DataSourceType.STATIC,
            connection_config={"tabs": {tab_name: copy.deepcopy(grid)}},
        )
        db.session.add(source)
        db.session.flush()
    else:
        tabs = dict((source.connection_config or {}).get("tabs") or {})
        tabs[tab_name] = copy.deepcopy(grid)
        source.connection_config = {**(source.connection_config or {}), "tabs": tabs}

    tab = TabMapping(data_source_id=source.id, tab_name=tab_name, primary_entity=entity)
    db.session.add(tab)
    db.session.flush()

    for index, (column, target, category, authority, is_key, transform) in enumerate(columns):
        db.session.add(
            ColumnMapping(
                tab_mapping_id=tab.id,
                source_column=column,
                source_column_index=index,
                category=category,
                target_field=target,
                authority=authority,
                is_key=is_key,
                transform_type=transform,
            )
        )
    for pattern in patterns:
        db.session.add(ColumnPattern(tab_mapping_id=tab.id, category=ColumnCategory.WEEKLY, **pattern))
    db.session.commit()
    return source, tab


@pytest.fixture
def static_tab_factory(app):
    """Build a static data source tab with column mappings and patterns."""
    return _create_static_tab


@pytest.fixture
def partner_tab_factory(app):
    def _factory(rows=None, *, columns=None, patterns=(WEEKLY_PATTERN,), tab_name="Master", source=None):
        grid = [PARTNER_HEADERS] + [list(row) for row in (PARTNER_ROWS if rows is None else rows)]
        return _create_static_tab(
            name="Master Client Sheet",
            tab_name=tab_name,
            entity=PrimaryEntity.PARTNERS,
            grid=grid,
            columns=PARTNER_COLUMNS if columns is None else columns,
            patterns=patterns,
            source=source,
        )

    return _factory


@pytest.fixture
def partner_tab(partner_tab_factory):
    return partner_tab_factory()


@pytest.fixture
def replace_grid(app):
    """Swap the rows served for one tab of a static data source."""

    def _replace(source: DataSource, tab_name: str, rows, headers=PARTNER_HEADERS):
        tabs = dict((source.connection_config or {}).get("tabs") or {})
        tabs[tab_name] = [list(headers)] + [list(row) for row in rows]
        source.connection_config = {**(source.connection_config or {}), "tabs": tabs}
        db.session.commit()

    return _replace
