from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from sophie_hub.models import (
    Asin,
    Authority,
    ColumnCategory,
    ColumnPattern,
    FieldLineage,
    Partner,
    PrimaryEntity,
    Staff,
    SyncRun,
    SyncRunStatus,
    TransformType,
    WeeklyStatus,
    db,
)
from sophie_hub.sync.config_store import load_mapping_config
from sophie_hub.sync.engine import SyncEngine, SyncOptions
from sophie_hub.sync.errors import (
    FetchError,
    NoKeyColumnError,
    SyncConfigError,
    SyncInProgressError,
    TabMappingNotFoundError,
)
from sophie_hub.sync.lineage import get_lineage
from sophie_hub.sync.storage import SqlAlchemyEntityStore, StaleEntityError

from sheet_fixtures import PARTNER_COLUMNS, PARTNER_HEADERS, PARTNER_ROWS, WEEKLY_PATTERN, partner_row


def _partner(brand_name):
    return Partner.query.filter_by(brand_name=brand_name).one()


def test_sync_creates_partners_from_static_tab(partner_tab):
    source, tab = partner_tab

    result = SyncEngine().sync_tab(tab.id, options=SyncOptions(triggered_by="tester"))

    assert result.success
    assert result.stats.rows_processed == 3
    assert result.stats.rows_created == 2
    assert result.stats.rows_skipped == 1
    assert Partner.query.count() == 2

    acme = _partner("Acme")
    assert acme.client_name == "Jane Smith"
    assert acme.tier == "Gold"
    assert acme.base_fee == Decimal("1500.00")
    assert acme.notes == "VIP client"
    assert acme.source_data["static"]["Master"]["Brand Name"] == "Acme"
    assert acme.source_data["static"]["Master"]["Conversion Strategist"] == "Riley Fox"

    run = db.session.get(SyncRun, result.sync_run_id)
    assert run.status == SyncRunStatus.COMPLETED
    assert run.active_lock is None
    assert run.rows_created == 2
    assert run.triggered_by == "tester"

    skipped = [change for change in result.changes if change.action == "skip"]
    assert [change.skip_reason for change in skipped] == ["missing key"]
    assert skipped[0].row_number == 4


def test_sync_computes_partner_type_on_create(partner_tab):
    _, tab = partner_tab
    SyncEngine().sync_tab(tab.id)

    acme = _partner("Acme")
    assert acme.computed_partner_type == "sophie_ppc"
    assert acme.computed_partner_type_source == "staffing"
    assert acme.legacy_partner_type == "sophie_ppc"
    assert acme.partner_type_matches is True

    beta = _partner("Beta Co")
    assert beta.computed_partner_type == "fam"
    assert beta.legacy_partner_type == "ppc_basic"
    assert beta.partner_type_matches is False
    assert beta.partner_type_computed_at is not None


def test_second_run_with_unchanged_sheet_is_a_no_op(partner_tab):
    _, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)
    lineage_before = FieldLineage.query.count()
    weekly_before = WeeklyStatus.query.count()

    result = engine.sync_tab(tab.id)

    assert result.success
    assert result.stats.rows_created == 0
    assert result.stats.rows_updated == 0
    assert result.stats.rows_skipped == 3
    assert {c.skip_reason for c in result.changes} == {"no changes", "missing key"}
    assert FieldLineage.query.count() == lineage_before
    assert WeeklyStatus.query.count() == weekly_before
    assert Partner.query.count() == 2


def test_source_of_truth_column_overwrites_existing_value(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"}), PARTNER_ROWS[1]])
    result = engine.sync_tab(tab.id)

    assert result.stats.rows_updated == 1
    assert result.stats.rows_skipped == 1
    acme = _partner("Acme")
    assert acme.tier == "Platinum"
    assert acme.source_data["static"]["Master"]["Tier"] == "Platinum"

    lineage = get_lineage("partners", acme.id)
    assert lineage["tier"].previous_value == "Gold"
    assert lineage["tier"].new_value == "Platinum"
    assert lineage["tier"].sync_run_id == result.sync_run_id


def test_reference_column_keeps_existing_value(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    acme = _partner("Acme")
    acme.notes = "Edited by hand"
    db.session.commit()

    replace_grid(
        source,
        "Master",
        [partner_row({"Notes": "Sheet note"}), partner_row({"Notes": "Filled from sheet"}, base=1)],
    )
    result = engine.sync_tab(tab.id)

    assert result.success
    assert _partner("Acme").notes == "Edited by hand"
    # Empty stored values are filled.
    assert _partner("Beta Co").notes == "Filled from sheet"
    assert "notes" not in {
        change.field_name
        for item in result.changes
        if item.key == "Acme"
        for change in item.field_changes
    }


def test_force_overwrite_lets_reference_columns_through(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    acme = _partner("Acme")
    acme.notes = "Edited by hand"
    db.session.commit()

    replace_grid(source, "Master", [partner_row({"Notes": "Sheet note"})])
    engine.sync_tab(tab.id, options=SyncOptions(force_overwrite=True))

    assert _partner("Acme").notes == "Sheet note"


def test_dry_run_previews_without_writing(partner_tab):
    _, tab = partner_tab

    result = SyncEngine().sync_tab(tab.id, options=SyncOptions(dry_run=True))

    assert result.dry_run is True
    assert result.stats.rows_created == 2
    assert Partner.query.count() == 0
    assert FieldLineage.query.count() == 0
    assert WeeklyStatus.query.count() == 0

    payload = result.to_dict()
    creates = [change for change in payload["changes"] if change["action"] == "create"]
    assert {change["key"] for change in creates} == {"Acme", "Beta Co"}
    acme = next(change for change in creates if change["key"] == "Acme")
    assert acme["fields"]["tier"] == {"old": None, "new": "Gold", "column": "Tier"}

    run = db.session.get(SyncRun, result.sync_run_id)
    assert run.dry_run is True
    assert run.status == SyncRunStatus.COMPLETED


def test_concurrent_sync_of_same_tab_is_rejected(partner_tab):
    source, tab = partner_tab
    running = SyncRun(
        data_source_id=source.id,
        tab_mapping_id=tab.id,
        status=SyncRunStatus.RUNNING,
        active_lock=tab.id,
        started_at=datetime.now(timezone.utc),
    )
    db.session.add(running)
    db.session.commit()

    with pytest.raises(SyncInProgressError) as excinfo:
        SyncEngine().sync_tab(tab.id)

    assert excinfo.value.active_run_id == running.id
    assert Partner.query.count() == 0
    assert SyncRun.query.count() == 1


def test_lock_is_released_after_a_run(partner_tab):
    _, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)
    engine.sync_tab(tab.id)

    assert SyncRun.query.filter(SyncRun.active_lock.isnot(None)).count() == 0
    assert SyncRun.query.count() == 2


def test_missing_tab_mapping_raises_before_taking_lock(app):
    with pytest.raises(TabMappingNotFoundError):
        SyncEngine().sync_tab(999)
    assert SyncRun.query.count() == 0


def test_tab_without_key_column_fails_run(partner_tab_factory):
    columns = [(c[0], c[1], c[2], c[3], False, c[5]) for c in PARTNER_COLUMNS]
    _, tab = partner_tab_factory(columns=columns)

    with pytest.raises(NoKeyColumnError):
        SyncEngine().sync_tab(tab.id)

    run = SyncRun.query.one()
    assert run.status == SyncRunStatus.FAILED
    assert run.active_lock is None
    assert "no key column" in run.error_summary
    assert Partner.query.count() == 0


def test_key_column_absent_from_sheet_fails_run(static_tab_factory):
    _, tab = static_tab_factory(
        name="Sheet",
        tab_name="Master",
        entity=PrimaryEntity.PARTNERS,
        grid=[["Client Name"], ["Jane"]],
        columns=[("Brand Name", "brand_name", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, True, TransformType.NONE)],
    )

    with pytest.raises(SyncConfigError, match="Key column 'Brand Name'"):
        SyncEngine().sync_tab(tab.id)
    assert SyncRun.query.one().status == SyncRunStatus.FAILED


def test_fetch_error_marks_run_failed(partner_tab):
    source, tab = partner_tab
    source.connection_config = {"tabs": {}}
    db.session.commit()

    with pytest.raises(FetchError):
        SyncEngine().sync_tab(tab.id)

    run = SyncRun.query.one()
    assert run.status == SyncRunStatus.FAILED
    assert "not found" in run.error_summary


def test_duplicate_keys_keep_first_row(partner_tab_factory):
    _, tab = partner_tab_factory(
        rows=[partner_row(), partner_row({"Brand Name": "ACME ", "Tier": "Bronze"})]
    )

    result = SyncEngine().sync_tab(tab.id)

    assert result.stats.rows_created == 1
    assert result.stats.rows_skipped == 1
    assert _partner("Acme").tier == "Gold"
    warnings = [error for error in result.stats.errors if error["severity"] == "warning"]
    assert warnings[0]["row"] == 3
    assert "Duplicate key" in warnings[0]["message"]


def test_weekly_status_columns_are_upserted(partner_tab):
    _, tab = partner_tab

    result = SyncEngine().sync_tab(tab.id)

    assert result.stats.weekly_statuses_upserted == 3
    acme = _partner("Acme")
    weeks = WeeklyStatus.query.filter_by(partner_id=acme.id).order_by(WeeklyStatus.week_start_date).all()
    assert [(w.week_start_date, w.week_number, w.status) for w in weeks] == [
        (date(2025, 12, 29), 1, "At risk"),
        (date(2026, 1, 5), 2, "On track"),
    ]


def test_weekly_status_update_replaces_cell(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    replace_grid(source, "Master", [partner_row({"1/6/26\nWeek 2": "Churned"})])
    result = engine.sync_tab(tab.id)

    assert result.stats.weekly_statuses_upserted == 1
    acme = _partner("Acme")
    latest = WeeklyStatus.query.filter_by(partner_id=acme.id, week_start_date=date(2026, 1, 5)).one()
    assert latest.status == "Churned"
    assert WeeklyStatus.query.filter_by(partner_id=acme.id).count() == 2


def test_lineage_records_source_tab_and_column(partner_tab):
    source, tab = partner_tab
    result = SyncEngine().sync_tab(tab.id, options=SyncOptions(triggered_by="7"))

    acme = _partner("Acme")
    lineage = get_lineage("partners", acme.id)

    assert {"brand_name", "client_name", "tier", "base_fee", "notes", "pod_leader_name"} <= set(lineage)
    tier = lineage["tier"]
    assert tier.source_type == "google_sheet"
    assert tier.source_id == str(source.id)
    assert tier.sheet == "Master Client Sheet"
    assert tier.tab == "Master"
    assert tier.column == "Tier"
    assert tier.previous_value is None
    assert tier.new_value == "Gold"
    assert tier.changed_by == "7"
    assert lineage["base_fee"].new_value == "1500.00"
    # Derived partner-type fields are not column-sourced.
    assert "computed_partner_type" not in lineage
    assert result.stats.lineage_written == FieldLineage.query.count()


def test_unparseable_cell_is_a_row_warning(static_tab_factory):
    _, tab = static_tab_factory(
        name="Sheet",
        tab_name="Onboarding",
        entity=PrimaryEntity.PARTNERS,
        grid=[["Brand Name", "Onboarded"], ["Acme", "03/04/2026"], ["Beta Co", "2026-02-01"]],
        columns=[
            ("Brand Name", "brand_name", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, True, TransformType.TRIM),
            ("Onboarded", "onboarding_date", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, False, TransformType.DATE),
        ],
    )

    result = SyncEngine().sync_tab(tab.id)

    assert result.success
    assert result.stats.rows_created == 2
    assert _partner("Acme").onboarding_date is None
    assert _partner("Beta Co").onboarding_date == date(2026, 2, 1)
    warning = result.stats.errors[0]
    assert warning["row"] == 2
    assert warning["column"] == "Onboarded"
    assert warning["severity"] == "warning"
    assert "Ambiguous date" in warning["message"]


def test_staff_sync_normalizes_status_and_classifies_accounts(static_tab_factory):
    _, tab = static_tab_factory(
        name="Staff Sheet",
        tab_name="Team",
        entity=PrimaryEntity.STAFF,
        grid=[
            ["Email", "Full Name", "Status", "Title"],
            ["Jane.Doe@Example.com", "Jane Doe", "On Leave", "Analyst"],
            ["support@example.com", "Support Inbox", "Full-time", ""],
            ["pod3@example.com", "Pod Three", "Wizard", ""],
        ],
        columns=[
            ("Email", "email", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, True, TransformType.LOWERCASE),
            ("Full Name", "full_name", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, False, TransformType.TRIM),
            ("Status", "status", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE),
            ("Title", "title", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE),
        ],
    )

    result = SyncEngine().sync_tab(tab.id)

    assert result.stats.rows_created == 3
    jane = Staff.query.filter_by(email="jane.doe@example.com").one()
    assert jane.status == "on_leave"
    assert jane.account_type == "person"

    support = Staff.query.filter_by(email="support@example.com").one()
    assert support.status == "active"
    assert support.account_type == "shared_account"

    pod = Staff.query.filter_by(email="pod3@example.com").one()
    assert pod.status is None
    assert pod.account_type == "shared_account"
    assert any("Unrecognized staff status 'Wizard'" in e["message"] for e in result.stats.errors)


def test_asin_sync_normalizes_marketplace(static_tab_factory):
    _, tab = static_tab_factory(
        name="Catalog",
        tab_name="ASINs",
        entity=PrimaryEntity.ASINS,
        grid=[["ASIN", "Title", "Marketplace"], ["b000123", "Widget", "United Kingdom"], ["B000456", "Gadget", "Atlantis"]],
        columns=[
            ("ASIN", "asin_code", ColumnCategory.ASIN, Authority.SOURCE_OF_TRUTH, True, TransformType.UPPERCASE),
            ("Title", "title", ColumnCategory.ASIN, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE),
            ("Marketplace", "marketplace", ColumnCategory.ASIN, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE),
        ],
    )

    result = SyncEngine().sync_tab(tab.id)

    assert Asin.query.filter_by(asin_code="B000123").one().marketplace == "UK"
    assert Asin.query.filter_by(asin_code="B000456").one().marketplace is None
    assert any("Unknown marketplace 'Atlantis'" in e["message"] for e in result.stats.errors)


def test_row_limit_reads_only_first_rows(partner_tab):
    _, tab = partner_tab

    result = SyncEngine().sync_tab(tab.id, options=SyncOptions(row_limit=1))

    assert result.stats.rows_processed == 1
    assert Partner.query.count() == 1


def test_sync_data_source_reports_broken_tabs_and_runs_the_rest(partner_tab, static_tab_factory):
    source, tab = partner_tab
    _, broken = static_tab_factory(
        name=source.name,
        tab_name="Broken",
        entity=PrimaryEntity.PARTNERS,
        grid=[["Brand Name"], ["Gamma"]],
        columns=[("Brand Name", "brand_name", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE)],
        source=source,
    )

    outcome = SyncEngine().sync_data_source(source.id)

    assert [result.tab_mapping_id for result in outcome.results] == [tab.id]
    assert outcome.failures == [
        {"tab_mapping_id": broken.id, "code": "VALIDATION_ERROR", "message": outcome.failures[0]["message"]}
    ]
    assert "no key column" in outcome.failures[0]["message"]
    assert Partner.query.count() == 2


def test_sync_updates_tab_and_source_timestamps(partner_tab):
    source, tab = partner_tab
    SyncEngine().sync_tab(tab.id)

    db.session.refresh(tab)
    db.session.refresh(source)
    assert tab.last_synced_at is not None
    assert tab.last_sync_row_count == 3
    assert source.last_synced_at is not None



def test_renamed_column_is_not_read_from_its_old_position(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    headers = ["Level" if header == "Tier" else header for header in PARTNER_HEADERS]
    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"})], headers=headers)
    engine.sync_tab(tab.id)

    assert _partner("Acme").tier == "Gold"


def test_blank_header_falls_back_to_stored_position(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    headers = ["" if header == "Tier" else header for header in PARTNER_HEADERS]
    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"})], headers=headers)
    engine.sync_tab(tab.id)

    assert _partner("Acme").tier == "Platinum"


def test_headers_match_ignoring_case_and_punctuation(partner_tab, replace_grid):
    source, tab = partner_tab
    engine = SyncEngine()
    engine.sync_tab(tab.id)

    headers = [header.upper().replace(" ", "_") if "Week" not in header else header for header in PARTNER_HEADERS]
    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"})], headers=headers)
    result = engine.sync_tab(tab.id)

    assert result.stats.rows_created == 0
    assert _partner("Acme").tier == "Platinum"


def test_unknown_target_field_fails_before_fetching(static_tab_factory):
    _, tab = static_tab_factory(
        name="Sheet",
        tab_name="Master",
        entity=PrimaryEntity.PARTNERS,
        grid=[["Brand Name", "Colour"], ["Acme", "Teal"]],
        columns=[
            ("Brand Name", "brand_name", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, True, TransformType.NONE),
            ("Colour", "favourite_colour", ColumnCategory.PARTNER, Authority.SOURCE_OF_TRUTH, False, TransformType.NONE),
        ],
    )
    fetched = []

    with pytest.raises(SyncConfigError, match="unknown partners fields: favourite_colour"):
        SyncEngine(connector_factory=fetched.append).sync_tab(tab.id)

    assert fetched == []
    run = SyncRun.query.one()
    assert run.status == SyncRunStatus.FAILED
    assert run.active_lock is None


def test_weekly_pattern_added_later_backfills_unchanged_rows(partner_tab_factory):
    _, tab = partner_tab_factory(patterns=())
    engine = SyncEngine()
    engine.sync_tab(tab.id)
    assert WeeklyStatus.query.count() == 0

    db.session.add(ColumnPattern(tab_mapping_id=tab.id, category=ColumnCategory.WEEKLY, **WEEKLY_PATTERN))
    db.session.commit()
    result = engine.sync_tab(tab.id)

    assert result.stats.rows_updated == 0
    assert result.stats.weekly_statuses_upserted == 3
    assert WeeklyStatus.query.filter_by(partner_id=_partner("Acme").id).count() == 2

    again = engine.sync_tab(tab.id)
    assert again.stats.weekly_statuses_upserted == 0


def test_weekly_pattern_cannot_redirect_to_another_table(partner_tab):
    _, tab = partner_tab
    db.session.add(
        ColumnPattern(
            tab_mapping_id=tab.id,
            category=ColumnCategory.WEEKLY,
            pattern_name="Misrouted",
            priority=20,
            match_config={"contains": "Week"},
            target_table="partners",
        )
    )
    db.session.commit()

    with pytest.raises(SyncConfigError, match="can only be stored in 'weekly_statuses'"):
        load_mapping_config(tab.id)
    with pytest.raises(SyncConfigError):
        SyncEngine().sync_tab(tab.id)
    assert SyncRun.query.one().status == SyncRunStatus.FAILED


_STAFF_HEADERS = ["Email", "Full Name"]
_STAFF_COLUMNS = [
    ("Email", "email", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, True, TransformType.LOWERCASE),
    ("Full Name", "full_name", ColumnCategory.STAFF, Authority.SOURCE_OF_TRUTH, False, TransformType.TRIM),
]


def test_staff_account_type_follows_name_changes(static_tab_factory, replace_grid):
    source, tab = static_tab_factory(
        name="Staff Sheet",
        tab_name="Team",
        entity=PrimaryEntity.STAFF,
        grid=[_STAFF_HEADERS, ["jdoe@example.com", ""]],
        columns=_STAFF_COLUMNS,
    )
    engine = SyncEngine()
    engine.sync_tab(tab.id)
    staff = Staff.query.filter_by(email="jdoe@example.com").one()
    assert staff.account_type == "shared_account"

    replace_grid(source, "Team", [["jdoe@example.com", "John Doe"]], headers=_STAFF_HEADERS)
    engine.sync_tab(tab.id)

    db.session.refresh(staff)
    assert staff.account_type == "person"
    assert staff.account_type_override is None


def test_manual_account_type_override_wins_until_cleared(static_tab_factory):
    _, tab = static_tab_factory(
        name="Staff Sheet",
        tab_name="Team",
        entity=PrimaryEntity.STAFF,
        grid=[_STAFF_HEADERS, ["jdoe@example.com", "John Doe"]],
        columns=_STAFF_COLUMNS,
    )
    engine = SyncEngine()
    engine.sync_tab(tab.id)
    staff = Staff.query.filter_by(email="jdoe@example.com").one()
    assert staff.account_type == "person"

    staff.account_type_override = "shared_account"
    db.session.commit()
    engine.sync_tab(tab.id)
    db.session.refresh(staff)
    assert staff.account_type == "shared_account"

    staff.account_type_override = None
    db.session.commit()
    engine.sync_tab(tab.id)
    db.session.refresh(staff)
    assert staff.account_type == "person"


class _ConcurrentEditStore(SqlAlchemyEntityStore):
    """Another writer edits the partner's notes just before each of the first ``edits`` updates."""

    def __init__(self, session, edits):
        super().__init__(session)
        self.edits = edits

    def update(self, entity, entity_id, values, *, expected_version=None):
        if self.edits:
            self.edits -= 1
            self.session.get(Partner, entity_id).notes = f"Edited in the app ({self.edits})"
            self.session.flush()
        return super().update(entity, entity_id, values, expected_version=expected_version)


def test_update_retries_after_concurrent_edit(partner_tab, replace_grid):
    source, tab = partner_tab
    SyncEngine().sync_tab(tab.id)
    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"}), PARTNER_ROWS[1]])

    result = SyncEngine(store=_ConcurrentEditStore(db.session, edits=1)).sync_tab(tab.id)

    assert result.stats.rows_updated == 1
    assert not [error for error in result.stats.errors if "concurrent" in error["message"]]
    acme = _partner("Acme")
    assert acme.tier == "Platinum"
    assert acme.notes == "Edited in the app (0)"


def test_update_is_skipped_after_repeated_concurrent_edits(partner_tab, replace_grid):
    source, tab = partner_tab
    SyncEngine().sync_tab(tab.id)
    replace_grid(source, "Master", [partner_row({"Tier": "Platinum"}), PARTNER_ROWS[1]])

    result = SyncEngine(store=_ConcurrentEditStore(db.session, edits=2)).sync_tab(tab.id)

    assert result.stats.rows_updated == 0
    assert result.stats.rows_skipped == 2
    acme_change = next(change for change in result.changes if change.key == "Acme")
    assert acme_change.skip_reason == "concurrent modification"
    assert any("concurrent modification" in error["message"] for error in result.stats.errors)
    assert _partner("Acme").tier == "Gold"
    assert get_lineage("partners", _partner("Acme").id)["tier"].new_value == "Gold"


def test_dry_run_of_ten_rows_with_three_blank_keys(partner_tab_factory):
    rows = [partner_row({"Brand Name": f"Brand {n}"}) for n in range(7)]
    for position in (1, 4, 8):
        rows.insert(position, partner_row({"Brand Name": ""}))
    _, tab = partner_tab_factory(rows=rows)

    result = SyncEngine().sync_tab(tab.id, options=SyncOptions(dry_run=True))

    assert result.stats.rows_processed == 10
    assert result.stats.rows_created == 7
    assert result.stats.rows_skipped == 3
    assert Partner.query.count() == 0
    assert WeeklyStatus.query.count() == 0
    assert FieldLineage.query.count() == 0
