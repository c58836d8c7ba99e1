"""
Column-family matching for weekly status and computed columns.

Weekly status columns are date-stamped headers such as ``"1/6/26\\nWeek 2"``;
each one becomes a row in a week-keyed history table rather than a field on
the entity. ``ColumnPattern`` rows describe which headers belong to such a
family and ``PatternMatcher`` decides, per header, which pattern wins.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Iterable, Mapping, Sequence

from .errors import PatternPriorityConflictError

WEEKLY_HEADER_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})[\s\n]+Week\s*(\d+)", re.IGNORECASE)
# Weekly pattern cells are always stored here; patterns may name it but not redirect it.
WEEKLY_TARGET_TABLE = "weekly_statuses"


@dataclass(frozen=True)
class WeeklyColumn:
    header: str
    column_index: int | None
    column_date: date
    week_start_date: date
    week_number: int

    @property
    def year(self) -> int:
        return self.week_start_date.year


@dataclass(frozen=True)
class WeeklyValue:
    column: WeeklyColumn
    status: str


@dataclass(frozen=True)
class WeeklyColumnSet:
    """Weekly status cells of one row, most recent week first."""

    values: tuple[WeeklyValue, ...]

    @property
    def latest(self) -> WeeklyValue | None:
        return self.values[0] if self.values else None

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)


def _expand_year(year_text: str) -> int:
    year = int(year_text)
    if year < 100:
        year += 1900 if year > 50 else 2000
    return year


def week_monday(value: date) -> date:
    return value - timedelta(days=value.weekday())


def parse_weekly_header(header: str | None, column_index: int | None = None) -> WeeklyColumn | None:
    """Parse a weekly header; returns ``None`` for anything that is not one."""
    if not header:
        return None
    match = WEEKLY_HEADER_PATTERN.match(header.strip())
    if not match:
        return None
    month, day, year_text, week = match.groups()
    try:
        column_date = date(_expand_year(year_text), int(month), int(day))
    except ValueError:
        return None
    return WeeklyColumn(
        header=header,
        column_index=column_index,
        column_date=column_date,
        week_start_date=week_monday(column_date),
        week_number=int(week),
    )


def is_weekly_header(header: str | None) -> bool:
    return parse_weekly_header(header) is not None


def build_weekly_column_set(
    headers: Sequence[str],
    row: Sequence[str] | Mapping[str, Any],
    *,
    columns: Iterable[WeeklyColumn] | None = None,
) -> WeeklyColumnSet:
    """
    Collect the non-blank weekly cells of a row.

    ``row`` may be positional (aligned with ``headers``) or a header-keyed
    mapping, as stored in ``source_data``.
    """
    if columns is None:
        columns = [c for c in (parse_weekly_header(h, i) for i, h in enumerate(headers)) if c is not None]

    values: list[WeeklyValue] = []
    for column in columns:
        if isinstance(row, Mapping):
            raw = row.get(column.header)
        elif column.column_index is not None and column.column_index < len(row):
            raw = row[column.column_index]
        else:
            raw = None
        if not isinstance(raw, str) or not raw.strip():
            continue
        values.append(WeeklyValue(column=column, status=raw.strip()))

    values.sort(key=lambda v: v.column.column_date, reverse=True)
    return WeeklyColumnSet(tuple(values))


@dataclass(frozen=True)
class PatternRule:
    """Detached, validated copy of a ``ColumnPattern`` row."""

    id: int | None
    pattern_name: str
    category: str
    match_config: Mapping[str, Any]
    target_table: str | None
    target_field: str | None
    priority: int

    @property
    def specificity(self) -> int:
        return sum(1 for key in ("matches_date", "matches_regex", "contains", "starts_with", "after_column") if self.match_config.get(key))

    @classmethod
    def from_model(cls, pattern) -> "PatternRule":
        category = getattr(pattern.category, "value", pattern.category)
        return cls(
            id=pattern.id,
            pattern_name=pattern.pattern_name,
            category=category,
            match_config=dict(pattern.match_config or {}),
            target_table=pattern.target_table,
            target_field=pattern.target_field,
            priority=int(pattern.priority or 0),
        )


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _rule_matches(rule: PatternRule, header: str, headers: Sequence[str]) -> bool:
    config = rule.match_config
    lowered = header.lower()

    if config.get("matches_date") and not is_weekly_header(header):
        return False
    regex = config.get("matches_regex")
    if regex and not re.search(regex, header, re.IGNORECASE):
        return False
    contains = _as_list(config.get("contains"))
    if contains and not any(token.lower() in lowered for token in contains):
        return False
    starts_with = _as_list(config.get("starts_with"))
    if starts_with and not any(lowered.startswith(token.lower()) for token in starts_with):
        return False
    after_column = config.get("after_column")
    if after_column:
        try:
            anchor = list(headers).index(after_column)
            position = list(headers).index(header)
        except ValueError:
            return False
        if position <= anchor:
            return False
    # A pattern with no criteria matches nothing.
    return rule.specificity > 0


class PatternMatcher:
    """
    Pick the winning ``ColumnPattern`` for a header.

    Highest priority wins and specificity breaks ordering within the sorted
    list. Active patterns sharing a priority are a configuration error and are
    rejected at construction.
    """

    def __init__(self, patterns: Iterable[Any]) -> None:
        rules = [p if isinstance(p, PatternRule) else PatternRule.from_model(p) for p in patterns]
        validate_unique_priorities(rules)
        self.rules: tuple[PatternRule, ...] = tuple(
            sorted(rules, key=lambda rule: (rule.priority, rule.specificity), reverse=True)
        )

    def match(self, header: str, headers: Sequence[str] = ()) -> PatternRule | None:
        for rule in self.rules:
            if _rule_matches(rule, header, headers or (header,)):
                return rule
        return None

    def classify_headers(self, headers: Sequence[str]) -> dict[str, PatternRule]:
        matched: dict[str, PatternRule] = {}
        for header in headers:
            rule = self.match(header, headers)
            if rule is not None:
                matched[header] = rule
        return matched


def validate_unique_priorities(rules: Iterable[PatternRule]) -> None:
    by_priority: dict[int, list[str]] = defaultdict(list)
    for rule in rules:
        by_priority[rule.priority].append(rule.pattern_name)
    for priority, names in sorted(by_priority.items()):
        if len(names) > 1:
            raise PatternPriorityConflictError(priority, names)
