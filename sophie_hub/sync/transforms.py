"""
Cell value transforms applied to raw spreadsheet strings before diffing.

Every transform returns a ``TransformResult``. A ``None`` value means "nothing
to write": blank cells never clear an existing entity value. Values that cannot
be interpreted unambiguously come back as ``None`` with a warning so the engine
can record it against the row instead of guessing.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping

from sophie_hub.models.enrichment import TransformType

DEFAULT_TRUTHY = frozenset({"true", "yes", "y", "1", "on", "active", "enabled"})
DEFAULT_FALSY = frozenset({"false", "no", "n", "0", "off", "inactive", "disabled"})

_SLASH_DATE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})$")
_NAMED_MONTH_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%B %d %Y", "%d %b %Y", "%d %B %Y")
_CURRENCY_SYMBOLS = re.compile(r"[$£€,\s]")


@dataclass(frozen=True)
class TransformResult:
    value: Any
    warning: str | None = None


TransformFn = Callable[[str, Mapping[str, Any]], TransformResult]


def _blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _transform_none(value: str, config: Mapping[str, Any]) -> TransformResult:
    return TransformResult(value)


def _transform_trim(value: str, config: Mapping[str, Any]) -> TransformResult:
    return TransformResult(value.strip())


def _transform_lowercase(value: str, config: Mapping[str, Any]) -> TransformResult:
    return TransformResult(value.lower())


def _transform_uppercase(value: str, config: Mapping[str, Any]) -> TransformResult:
    return TransformResult(value.upper())


def _expand_year(year: str) -> int:
    return 2000 + int(year) if len(year) == 2 else int(year)


def _format_date(parsed: date, config: Mapping[str, Any]) -> date | datetime:
    if config.get("format") == "date_only" or config.get("date_only"):
        return parsed
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


def _transform_date(value: str, config: Mapping[str, Any]) -> TransformResult:
    text = value.strip()
    if not text:
        return TransformResult(None)

    iso_candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed_dt = datetime.fromisoformat(iso_candidate)
    except ValueError:
        parsed_dt = None
    if parsed_dt is not None:
        if config.get("format") == "date_only" or config.get("date_only"):
            return TransformResult(parsed_dt.date())
        if parsed_dt.tzinfo is None:
            parsed_dt = parsed_dt.replace(tzinfo=timezone.utc)
        return TransformResult(parsed_dt)

    match = _SLASH_DATE.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), _expand_year(match.group(3))
        order = str(config.get("date_order") or "").lower()
        if order not in ("mdy", "dmy"):
            if first > 12 and second <= 12:
                order = "dmy"
            elif second > 12 and first <= 12:
                order = "mdy"
            elif first == second:
                order = "mdy"
            else:
                return TransformResult(
                    None,
                    warning=f"Ambiguous date '{text}': could be month/day or day/month; set date_order to resolve.",
                )
        month, day = (first, second) if order == "mdy" else (second, first)
        try:
            return TransformResult(_format_date(date(year, month, day), config))
        except ValueError:
            return TransformResult(None, warning=f"Invalid date '{text}'.")

    for fmt in _NAMED_MONTH_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt).date()
        except ValueError:
            continue
        return TransformResult(_format_date(parsed, config))

    return TransformResult(None, warning=f"Could not parse date '{text}'.")


def _transform_currency(value: str, config: Mapping[str, Any]) -> TransformResult:
    text = value.strip()
    if not text:
        return TransformResult(None)

    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    cleaned = _CURRENCY_SYMBOLS.sub("", text)
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return TransformResult(None, warning=f"Could not parse currency '{value.strip()}'.")
    if not amount.is_finite():
        return TransformResult(None, warning=f"Currency '{value.strip()}' is not a finite amount.")
    if negative:
        amount = -abs(amount)

    if config.get("as_cents"):
        return TransformResult(int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))
    return TransformResult(amount)


def _transform_boolean(value: str, config: Mapping[str, Any]) -> TransformResult:
    default = config.get("default_value")
    if _blank(value):
        return TransformResult(default)

    truthy = frozenset(str(v).lower() for v in config.get("truthy", ())) or DEFAULT_TRUTHY
    falsy = frozenset(str(v).lower() for v in config.get("falsy", ())) or DEFAULT_FALSY
    lowered = value.strip().lower()
    if lowered in truthy:
        return TransformResult(True)
    if lowered in falsy:
        return TransformResult(False)
    if default is not None:
        return TransformResult(default)
    return TransformResult(None, warning=f"Unrecognized boolean value '{value.strip()}'.")


def _transform_number(value: str, config: Mapping[str, Any]) -> TransformResult:
    text = value.strip().replace(",", "")
    if not text:
        return TransformResult(None)
    try:
        number = Decimal(text)
    except InvalidOperation:
        return TransformResult(None, warning=f"Could not parse number '{value.strip()}'.")
    if not number.is_finite():
        return TransformResult(None, warning=f"Number '{value.strip()}' is not finite.")
    if config.get("integer"):
        if number != number.to_integral_value():
            return TransformResult(None, warning=f"Expected a whole number, got '{value.strip()}'.")
        return TransformResult(int(number))
    return TransformResult(float(number))


def _transform_json(value: str, config: Mapping[str, Any]) -> TransformResult:
    text = value.strip()
    if not text:
        return TransformResult(None)
    try:
        return TransformResult(json.loads(text))
    except json.JSONDecodeError as exc:
        return TransformResult(None, warning=f"Invalid JSON: {exc.msg}.")


def _transform_value_mapping(value: str, config: Mapping[str, Any]) -> TransformResult:
    default = config.get("default")
    text = value.strip() if value else ""
    if not text:
        return TransformResult(default)

    mappings: Mapping[str, Any] = config.get("mappings") or {}
    if text in mappings:
        return TransformResult(mappings[text])
    lowered = text.lower()
    for key, mapped in mappings.items():
        if str(key).lower() == lowered:
            return TransformResult(mapped)
    return TransformResult(default)


_TRANSFORMS: Dict[str, TransformFn] = {
    TransformType.NONE.value: _transform_none,
    TransformType.TRIM.value: _transform_trim,
    TransformType.LOWERCASE.value: _transform_lowercase,
    TransformType.UPPERCASE.value: _transform_uppercase,
    TransformType.DATE.value: _transform_date,
    TransformType.CURRENCY.value: _transform_currency,
    TransformType.BOOLEAN.value: _transform_boolean,
    TransformType.NUMBER.value: _transform_number,
    TransformType.JSON.value: _transform_json,
    TransformType.VALUE_MAPPING.value: _transform_value_mapping,
}


def get_transform(transform_type: TransformType | str | None) -> TransformFn:
    key = transform_type.value if isinstance(transform_type, TransformType) else (transform_type or "none")
    return _TRANSFORMS.get(key, _transform_none)


def apply_transform(
    value: str | None,
    transform_type: TransformType | str | None,
    config: Mapping[str, Any] | None = None,
) -> TransformResult:
    """Apply the named transform to a raw cell value."""
    return get_transform(transform_type)(value if value is not None else "", config or {})


def is_valid_transform(name: str) -> bool:
    return name in _TRANSFORMS
