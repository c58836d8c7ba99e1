from __future__ import annotations

import copy

import pytest
import yaml
from sheet_fixtures import PARTNER_HEADERS, PARTNER_ROWS

from sophie_hub.models import (
    AuditLog,
    Authority,
    ColumnMapping,
    ColumnPattern,
    DataSource,
    Partner,
    TabMapping,
    TransformType,
    db,
)
from sophie_hub.sync.audit import RULE_CHANGE_ACTION
from sophie_hub.sync.engine import SyncEngine
from sophie_hub.sync.mapping import (
    CHECKSUM_KEY,
    MappingLoadError,
    apply_mapping_document,
    load_mapping_document,
    parse_mapping_document,
)


def _document(**overrides):
    raw = {
        "version": 1,
        "data_source": {
            "name": "Master Client Sheet",
            "type": "static",
            "connection_config": {"tabs": {"Master": [PARTNER_HEADERS] + PARTNER_ROWS}},
        },
        "tabs": [
            {
                "tab_name": "Master",
                "primary_entity": "partners",
                "columns": [
                    {"source": "Brand Name", "target": "brand_name", "category": "partner", "key": True, "transform": "trim"},
                    {"source": "Client Name", "target": "client_name", "category": "partner"},
                    {"source": "Tier", "target": "tier", "category": "partner"},
                    {"source": "Base Fee", "target": "base_fee", "category": "partner", "transform": "currency"},
                    {"source": "Notes", "target": "notes", "category": "partner", "authority": "reference"},
                    {"source": "POD Leader", "target": "pod_leader_name", "category": "partner"},
                    {"source": "Brand Manager", "target": "brand_manager_name", "category": "partner"},
                    {"source": "Conversion Strategist", "category": "skip"},
                ],
                "patterns": [
                    {"name": "Weekly status", "category": "weekly", "priority": 10, "match": {"matches_date": True}},
                ],
            }
        ],
    }
    raw.update(overrides)
    return raw


def _columns(tab):
    return {column.source_column: column for column in tab.column_mappings}


def test_parse_mapping_document():
    document = parse_mapping_document(_document())

    assert document.source_name == "Master Client Sheet"
    assert document.source_type.value == "static"
    tab = document.tabs[0]
    assert tab.primary_entity.value == "partners"
    assert [column.source for column in tab.columns if column.is_key] == ["Brand Name"]
    notes = next(column for column in tab.columns if column.source == "Notes")
    assert notes.authority is Authority.REFERENCE
    assert tab.patterns[0].priority == 10
    assert len(document.checksum) == 64


def test_checksum_changes_with_content():
    changed = _document()
    changed["tabs"][0]["columns"][2]["authority"] = "reference"
    assert parse_mapping_document(_document()).checksum != parse_mapping_document(changed).checksum


def test_load_mapping_document_from_yaml(tmp_path):
    path = tmp_path / "master.yaml"
    path.write_text(yaml.safe_dump(_document()), encoding="utf-8")

    document = load_mapping_document(path)

    assert document.path == path
    assert document.tabs[0].tab_name == "Master"


def test_load_mapping_document_errors(tmp_path):
    with pytest.raises(MappingLoadError, match="not found"):
        load_mapping_document(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.yaml"
    broken.write_text("tabs: [unclosed", encoding="utf-8")
    with pytest.raises(MappingLoadError, match="Failed to parse mapping YAML"):
        load_mapping_document(broken)


def _with_tab_change(mutate):
    raw = _document()
    mutate(raw["tabs"][0])
    return raw


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"version": 1, "tabs": []}, "Missing required mapping attribute"),
        (_document(data_source={"name": "Sheet", "type": "google_sheet"}), "require 'spreadsheet_id'"),
        (_document(data_source={"name": "Sheet", "type": "excel"}), "Invalid data source type 'excel'"),
        (
            _with_tab_change(lambda tab: tab["columns"].append({"source": "brand name", "category": "skip"})),
            "Duplicate source column",
        ),
        (
            _with_tab_change(lambda tab: tab["columns"][1].update({"key": True})),
            "declares 2 key columns",
        ),
        (
            _with_tab_change(lambda tab: tab["columns"].append({"source": "1/6/26", "category": "weekly"})),
            "declare it under 'patterns'",
        ),
        (
            _with_tab_change(
                lambda tab: tab["patterns"].append({"name": "Other", "priority": 10, "match": {"contains": "Week"}})
            ),
            "share priority 10",
        ),
        (
            _with_tab_change(lambda tab: tab["columns"][2].update({"authority": "sometimes"})),
            "Invalid authority 'sometimes'",
        ),
        (
            _with_tab_change(lambda tab: tab["columns"][2].update({"transform": "rot13"})),
            "Invalid transform 'rot13'",
        ),
        (
            _with_tab_change(lambda tab: tab["columns"][0].pop("target")),
            "must declare a target",
        ),
        (
            _with_tab_change(lambda tab: tab["patterns"][0].update({"target_table": "partners"})),
            "cannot target 'partners'",
        ),
    ],
)
def test_invalid_documents_are_rejected(raw, message):
    with pytest.raises(MappingLoadError, match=message):
        parse_mapping_document(raw)


def test_duplicate_tab_names_are_rejected():
    raw = _document()
    raw["tabs"].append(copy.deepcopy(raw["tabs"][0]))
    with pytest.raises(MappingLoadError, match="Tab names must be unique"):
        parse_mapping_document(raw)


def test_inactive_patterns_may_share_a_priority():
    raw = _with_tab_change(
        lambda tab: tab["patterns"].append(
            {"name": "Retired", "priority": 10, "active": False, "match": {"contains": "Week"}}
        )
    )
    assert len(parse_mapping_document(raw).tabs[0].patterns) == 2


def test_apply_creates_configuration_and_audit_rows(app):
    result = apply_mapping_document(parse_mapping_document(_document()), actor="admin@example.com")

    assert result.unchanged is False
    assert result.counts == {
        "data_source_created": 1,
        "tab_mapping_created": 1,
        "column_mapping_created": 8,
        "column_pattern_created": 1,
    }

    source = db.session.get(DataSource, result.data_source_id)
    assert source.connection_config[CHECKSUM_KEY] == parse_mapping_document(_document()).checksum
    tab = TabMapping.query.filter_by(data_source_id=source.id).one()
    columns = _columns(tab)
    assert columns["Brand Name"].is_key is True
    assert columns["Base Fee"].transform_type == TransformType.CURRENCY
    assert columns["Notes"].authority == Authority.REFERENCE

    audits = AuditLog.query.filter_by(action=RULE_CHANGE_ACTION).all()
    assert len(audits) == 10
    assert {entry.actor for entry in audits} == {"admin@example.com"}
    assert {entry.details["change"] for entry in audits} == {"create"}


def test_reapplying_unchanged_document_is_a_no_op(app):
    document = parse_mapping_document(_document())
    apply_mapping_document(document)
    audit_count = AuditLog.query.count()

    again = apply_mapping_document(document)

    assert again.unchanged is True
    assert again.counts == {}
    assert AuditLog.query.count() == audit_count


def test_force_reapply_with_same_content_changes_nothing(app):
    document = parse_mapping_document(_document())
    apply_mapping_document(document)

    forced = apply_mapping_document(document, force=True)

    assert forced.unchanged is False
    assert forced.counts == {}


def test_apply_updates_and_removes_rules(app):
    first = apply_mapping_document(parse_mapping_document(_document()))

    def mutate(tab):
        tab["columns"] = [column for column in tab["columns"] if column["source"] != "Conversion Strategist"]
        tab["columns"][2]["authority"] = "reference"
        tab["patterns"] = []

    second = apply_mapping_document(parse_mapping_document(_with_tab_change(mutate)), actor="ops")

    assert second.data_source_id == first.data_source_id
    assert second.counts == {
        "data_source_updated": 1,
        "column_mapping_updated": 1,
        "column_mapping_removed": 1,
        "column_pattern_removed": 1,
    }
    tab = TabMapping.query.one()
    assert "Conversion Strategist" not in _columns(tab)
    assert _columns(tab)["Tier"].authority == Authority.REFERENCE
    assert ColumnPattern.query.count() == 0

    update = AuditLog.query.filter_by(resource_type="column_mapping", actor="ops").filter(
        AuditLog.resource_id == str(_columns(tab)["Tier"].id)
    ).one()
    assert update.details["before"]["authority"] == "source_of_truth"
    assert update.details["after"]["authority"] == "reference"

    removed = [entry for entry in AuditLog.query.filter_by(actor="ops") if entry.details["change"] == "delete"]
    assert {entry.resource_type for entry in removed} == {"column_mapping", "column_pattern"}
    assert any(entry.details["before"].get("source_column") == "Conversion Strategist" for entry in removed)


def test_tabs_missing_from_document_are_kept(app):
    raw = _document()
    raw["tabs"].append({"tab_name": "Archive", "primary_entity": "partners", "status": "reference"})
    apply_mapping_document(parse_mapping_document(raw))

    apply_mapping_document(parse_mapping_document(_document()))

    assert {tab.tab_name for tab in TabMapping.query.all()} == {"Master", "Archive"}


def test_applied_mapping_drives_a_sync(app):
    result = apply_mapping_document(parse_mapping_document(_document()))
    tab = TabMapping.query.filter_by(data_source_id=result.data_source_id).one()

    outcome = SyncEngine().sync_tab(tab.id)

    assert outcome.success
    assert outcome.stats.rows_created == 2
    assert Partner.query.filter_by(brand_name="Acme").one().tier == "Gold"
    assert ColumnMapping.query.count() == 8


def test_weekly_pattern_may_name_the_weekly_table():
    raw = _with_tab_change(lambda tab: tab["patterns"][0].update({"target_table": "weekly_statuses"}))
    assert parse_mapping_document(raw).tabs[0].patterns[0].target_table == "weekly_statuses"
