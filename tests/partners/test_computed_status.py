from datetime import date

from sophie_hub.partners.computed_status import (
    compute_partner_status,
    extract_weekly_data_points,
    matches_status_filter,
)

SOURCE_DATA = {
    "static": {
        "Master": {
            "Brand Name": "Acme",
            "12/30/25\nWeek 1": "At risk",
            "1/6/26\nWeek 2": "On track",
        }
    }
}


def test_extract_weekly_data_points_ignores_non_weekly_columns():
    points = extract_weekly_data_points(SOURCE_DATA)

    assert [point.status for point in points] == ["On track", "At risk"]
    assert points[0].date_key == "2026-01-06"


def test_latest_week_sets_computed_status():
    result = compute_partner_status(SOURCE_DATA, "Active", today=date(2026, 1, 10))

    assert result.computed_status == "active"
    assert result.bucket == "healthy"
    assert result.latest_weekly_status == "On track"
    assert result.latest_week_date == date(2026, 1, 6)
    assert result.weeks_without_data == 0
    assert result.matches_sheet_status is True
    assert result.display_label == "Active"
    assert result.is_stale is False


def test_stale_weekly_data_withholds_status():
    result = compute_partner_status(SOURCE_DATA, "Active", today=date(2026, 2, 20))

    assert result.weeks_without_data == 6
    assert result.is_stale is True
    assert result.computed_status is None
    assert result.display_label == "Pending (last: Active)"


def test_no_weekly_data_falls_back_to_sheet_status():
    assert compute_partner_status({}, "Active").display_label == "Pending (last: Active)"
    none = compute_partner_status(None, None)
    assert none.display_label == "No Data"
    assert none.bucket == "no-data"
    assert none.weeks_without_data == -1


def test_unmapped_weekly_text_is_labelled_unknown():
    data = {"static": {"Master": {"1/6/26\nWeek 2": "Purple"}}}

    result = compute_partner_status(data, "Active", today=date(2026, 1, 7))

    assert result.computed_status is None
    assert result.bucket == "unknown"
    assert result.display_label == 'Unknown: "Purple"'
    assert result.matches_sheet_status is False


def test_matches_status_filter_without_weekly_data_uses_sheet_status():
    assert matches_status_filter({}, "Paused", ["paused"]) is True
    assert matches_status_filter({}, "Paused", ["active"]) is False
    assert matches_status_filter({}, None, []) is True
