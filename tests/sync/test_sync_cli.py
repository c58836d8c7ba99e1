from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import yaml
from sheet_fixtures import PARTNER_HEADERS, PARTNER_ROWS

from sophie_hub.models import Partner, SyncRun, SyncRunStatus, db

MAPPING = {
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
                {"source": "Brand Name", "target": "brand_name", "category": "partner", "key": True},
                {"source": "Tier", "target": "tier", "category": "partner"},
            ],
        }
    ],
}


def test_sync_group_lists_tab_mappings(runner, partner_tab):
    _, tab = partner_tab

    result = runner.invoke(args=["sync"])

    assert result.exit_code == 0, result.output
    assert f"[{tab.id}] Master -> partners (active)" in result.output


def test_sync_group_without_tabs(runner):
    result = runner.invoke(args=["sync"])
    assert result.exit_code == 0
    assert "No tab mappings configured." in result.output


def test_sync_tab_runs_inline(runner, partner_tab):
    _, tab = partner_tab

    result = runner.invoke(args=["sync", "tab", str(tab.id)])

    assert result.exit_code == 0, result.output
    assert f"for tab {tab.id}: completed" in result.output
    assert "created:   2" in result.output
    assert "skipped:   1" in result.output
    assert Partner.query.count() == 2
    assert SyncRun.query.one().triggered_by == "cli"


def test_sync_tab_dry_run_json(runner, partner_tab):
    _, tab = partner_tab

    result = runner.invoke(args=["sync", "tab", str(tab.id), "--dry-run", "--summary-json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["dry_run"] is True
    assert {change["key"] for change in payload["changes"]} == {"Acme", "Beta Co"}
    assert Partner.query.count() == 0


def test_sync_tab_row_limit(runner, partner_tab):
    _, tab = partner_tab
    result = runner.invoke(args=["sync", "tab", str(tab.id), "--row-limit", "1"])
    assert result.exit_code == 0, result.output
    assert "processed: 1" in result.output


def test_sync_tab_unknown_id_fails(runner):
    result = runner.invoke(args=["sync", "tab", "999"])
    assert result.exit_code == 1
    assert "[NOT_FOUND] Tab mapping 999 not found." in result.output


def test_sync_data_source(runner, partner_tab):
    source, _ = partner_tab

    result = runner.invoke(args=["sync", "data-source", str(source.id)])

    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert Partner.query.count() == 2


def test_load_mapping_is_idempotent(runner, tmp_path):
    path = tmp_path / "master.yaml"
    path.write_text(yaml.safe_dump(MAPPING), encoding="utf-8")

    first = runner.invoke(args=["sync", "load-mapping", str(path), "--actor", "ops"])
    assert first.exit_code == 0, first.output
    assert "Applied mapping" in first.output
    assert "column_mapping_created: 2" in first.output

    second = runner.invoke(args=["sync", "load-mapping", str(path)])
    assert second.exit_code == 0
    assert "Mapping unchanged" in second.output


def test_load_mapping_reports_invalid_documents(runner, tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(yaml.safe_dump({"version": 1, "tabs": []}), encoding="utf-8")

    result = runner.invoke(args=["sync", "load-mapping", str(path)])

    assert result.exit_code == 1
    assert "Missing required mapping attribute" in result.output


def test_reap_stale(runner, partner_tab):
    source, tab = partner_tab
    assert "No stale sync runs found." in runner.invoke(args=["sync", "reap-stale"]).output

    long_ago = datetime.now(timezone.utc) - timedelta(hours=3)
    run = SyncRun(
        data_source_id=source.id,
        tab_mapping_id=tab.id,
        status=SyncRunStatus.RUNNING,
        started_at=long_ago,
        heartbeat_at=long_ago,
        active_lock=tab.id,
    )
    db.session.add(run)
    db.session.commit()

    result = runner.invoke(args=["sync", "reap-stale", "--max-age-minutes", "60"])

    assert result.exit_code == 0, result.output
    assert f"Reaped 1 stale sync run(s): {run.id}" in result.output


def test_runs_listing(runner, partner_tab):
    _, tab = partner_tab
    assert "No sync runs recorded." in runner.invoke(args=["sync", "runs"]).output

    runner.invoke(args=["sync", "tab", str(tab.id)])
    listing = runner.invoke(args=["sync", "runs", "--tab", str(tab.id)])
    assert "completed" in listing.output
    assert "+2 ~0 =1" in listing.output

    as_json = runner.invoke(args=["sync", "runs", "--json"])
    assert json.loads(as_json.stdout)[0]["rows_created"] == 2

    bad = runner.invoke(args=["sync", "runs", "--status", "bogus"])
    assert bad.exit_code == 2


def test_reconcile_is_dry_run_unless_applied(runner):
    db.session.add(Partner(brand_name="Acme"))
    db.session.commit()

    preview = runner.invoke(args=["sync", "reconcile-partner-types"])
    assert preview.exit_code == 0, preview.output
    payload = json.loads(preview.stdout)
    assert payload["dry_run"] is True
    assert payload["candidates"] == 1
    assert payload["updated"] == 0

    applied = json.loads(runner.invoke(args=["sync", "reconcile-partner-types", "--apply"]).stdout)
    assert applied["updated"] == 1
    assert Partner.query.one().computed_partner_type_source == "unknown"
