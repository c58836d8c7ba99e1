"""
Partner status computed from the latest weekly status cell.

The most recent dated week in ``source_data`` is bucketed and mapped to a
partner status. Data more than two weeks old is treated as stale: the status
is withheld and the display label falls back to "Pending".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from sophie_hub.normalizers.statuses import BUCKET_TO_STATUS, bucket_status
from sophie_hub.sync.patterns import WeeklyColumn, parse_weekly_header, week_monday
from sophie_hub.sync.source_data import parse_source_data

STALE_AFTER_WEEKS = 2

STATUS_LABELS: Mapping[str, str] = {
    "active": "Active",
    "onboarding": "Onboarding",
    "paused": "Paused",
    "at_risk": "At Risk",
    "offboarding": "Offboarding",
    "churned": "Churned",
}


@dataclass(frozen=True)
class WeeklyDataPoint:
    column: WeeklyColumn
    status: str

    @property
    def date_key(self) -> str:
        return self.column.column_date.isoformat()


@dataclass(frozen=True)
class ComputedStatus:
    computed_status: str | None
    bucket: str
    latest_weekly_status: str | None
    latest_week_date: date | None
    latest_week_number: int | None
    weeks_without_data: int
    matches_sheet_status: bool
    display_label: str
    weekly_data: Sequence[WeeklyDataPoint]

    @property
    def is_stale(self) -> bool:
        return self.weeks_without_data > STALE_AFTER_WEEKS


def extract_weekly_data_points(source_data: Any) -> list[WeeklyDataPoint]:
    """Every non-blank dated weekly cell across all tabs, most recent first."""
    points: list[WeeklyDataPoint] = []
    for cell in parse_source_data(source_data):
        column = parse_weekly_header(cell.column)
        if column is None or not cell.value.strip():
            continue
        points.append(WeeklyDataPoint(column=column, status=cell.value.strip()))
    points.sort(key=lambda point: point.column.column_date, reverse=True)
    return points


def _pending_label(status: str | None) -> str:
    return f"Pending (last: {STATUS_LABELS[status]})" if status else "No Data"


def compute_partner_status(
    source_data: Any,
    sheet_status: str | None,
    *,
    today: date | None = None,
) -> ComputedStatus:
    today = today or datetime.now(timezone.utc).date()
    weekly = extract_weekly_data_points(source_data)
    sheet_value = BUCKET_TO_STATUS[bucket_status(sheet_status)]

    if not weekly:
        return ComputedStatus(
            computed_status=None,
            bucket="no-data",
            latest_weekly_status=None,
            latest_week_date=None,
            latest_week_number=None,
            weeks_without_data=-1,
            matches_sheet_status=False,
            display_label=_pending_label(sheet_value),
            weekly_data=(),
        )

    latest = weekly[0]
    weeks_without_data = abs((week_monday(today) - latest.column.week_start_date).days) // 7
    bucket = bucket_status(latest.status)
    computed = BUCKET_TO_STATUS[bucket]
    stale = weeks_without_data > STALE_AFTER_WEEKS

    if computed:
        label = f"Pending (last: {STATUS_LABELS[computed]})" if stale else STATUS_LABELS[computed]
    elif bucket == "unknown":
        label = f'Unknown: "{latest.status}"'
    else:
        label = _pending_label(sheet_value)

    return ComputedStatus(
        computed_status=None if stale else computed,
        bucket=bucket,
        latest_weekly_status=latest.status,
        latest_week_date=latest.column.column_date,
        latest_week_number=latest.column.column_date.isocalendar()[1],
        weeks_without_data=weeks_without_data,
        matches_sheet_status=computed == sheet_value,
        display_label=label,
        weekly_data=tuple(weekly),
    )


def matches_status_filter(source_data: Any, sheet_status: str | None, filter_values: Iterable[str]) -> bool:
    wanted = set(filter_values)
    if not wanted:
        return True
    result = compute_partner_status(source_data, sheet_status)
    if result.computed_status:
        return result.computed_status in wanted
    sheet_value = BUCKET_TO_STATUS[bucket_status(sheet_status)]
    return bool(sheet_value) and sheet_value in wanted
