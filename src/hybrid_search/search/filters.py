"""
Structured metadata filters.

Requests carry filters as a mapping: a scalar means equality, a list means
membership, and ``{operator: value}`` selects an explicit operator. The
textual syntax accepted by the CLI and HTTP layer is parsed into the same
mapping.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, Literal, get_args

from ..errors import ValidationError


FilterOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "contains"]
FilterScalar = str | bool | int | float

_OPERATORS: frozenset[str] = frozenset(get_args(FilterOperator))
_NUMERIC_OPERATORS = frozenset({"gt", "gte", "lt", "lte"})
_SYMBOL_OPERATORS: dict[str, FilterOperator] = {
    "=": "eq",
    ":": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "~": "contains",
}

_FIELD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_SEPARATOR_RE = re.compile(r",|\s+and\s+", re.IGNORECASE)
_MEMBERSHIP_RE = re.compile(r"(?P<field>\w+)\s+in\s+(?P<values>.+)", re.IGNORECASE | re.DOTALL)
_COMPARISON_RE = re.compile(r"(?P<field>\w+)\s*(?P<symbol><=|>=|!=|=|<|>|~|:)\s*(?P<value>.+)", re.DOTALL)


@dataclass(frozen=True)
class MetadataFilter:
    """One normalized condition: ``field <operator> value``."""

    field: str
    operator: FilterOperator
    value: FilterScalar | list[FilterScalar]


class MetadataFilterParseError(ValidationError):
    """Raised when metadata filter syntax is invalid."""

    kind = "invalid_filter"


def supported_filter_syntax() -> str:
    return (
        "Filters: field=value, field!=value, field>=n, field<=n, field>n, field<n, "
        "field~text, field in (a, b); separate conditions with ',' or 'and'."
    )


# ---------------------------------------------------------------------------
# Mapping form
# ---------------------------------------------------------------------------


def filters_from_mapping(mapping: dict[str, Any] | None) -> list[MetadataFilter]:
    """Expand a request filter mapping into normalized conditions."""
    if not mapping:
        return []
    if not isinstance(mapping, dict):
        raise MetadataFilterParseError("Filters must be an object mapping field names to values.")

    parsed: list[MetadataFilter] = []
    for field in sorted(mapping):
        _validate_field(field, allowed_fields=None)
        value = mapping[field]
        if isinstance(value, dict):
            if not value:
                raise MetadataFilterParseError(f"Filter for field {field!r} has no operators.")
            for operator in sorted(value):
                if operator not in _OPERATORS:
                    raise MetadataFilterParseError(
                        f"Unsupported filter operator {operator!r} for field {field!r}."
                    )
                parsed.append(_checked(field, operator, value[operator]))  # type: ignore[arg-type]
        elif isinstance(value, list):
            parsed.append(_checked(field, "in", value))
        else:
            parsed.append(_checked(field, "eq", value))
    return parsed


def filters_to_mapping(filters: list[MetadataFilter]) -> dict[str, Any]:
    """Fold conditions back into the request mapping form."""
    mapping: dict[str, Any] = {}
    for flt in filters:
        existing = mapping.get(flt.field)
        if existing is None:
            mapping[flt.field] = flt.value if flt.operator == "eq" else {flt.operator: flt.value}
        elif isinstance(existing, dict):
            existing[flt.operator] = flt.value
        else:
            mapping[flt.field] = {"eq": existing, flt.operator: flt.value}
    return mapping


def _checked(field: str, operator: FilterOperator, value: Any) -> MetadataFilter:
    if operator == "in":
        if not isinstance(value, list) or not value:
            raise MetadataFilterParseError(f"`in` filter for field {field!r} has no values.")
        for item in value:
            if not isinstance(item, (str, bool, int, float)):
                raise MetadataFilterParseError(
                    f"Unsupported value in `in` filter for field {field!r}: {item!r}"
                )
        return MetadataFilter(field=field, operator=operator, value=list(value))
    if not isinstance(value, (str, bool, int, float)):
        raise MetadataFilterParseError(f"Unsupported filter value for field {field!r}: {value!r}")
    if operator in _NUMERIC_OPERATORS and (
        isinstance(value, bool) or not isinstance(value, (int, float))
    ):
        raise MetadataFilterParseError(
            f"Operator `{operator}` requires a numeric value for field {field!r}."
        )
    return MetadataFilter(field=field, operator=operator, value=value)


def _validate_field(field: str, *, allowed_fields: set[str] | None) -> None:
    if not isinstance(field, str) or not _FIELD_RE.fullmatch(field):
        raise MetadataFilterParseError(f"Invalid field name: {field!r}")
    if allowed_fields is not None and field not in allowed_fields:
        allowed = ", ".join(sorted(allowed_fields)) or "<none>"
        raise MetadataFilterParseError(
            f"Unknown metadata field {field!r}. Allowed fields: {allowed}"
        )


# ---------------------------------------------------------------------------
# Textual form
# ---------------------------------------------------------------------------


def parse_filter_expression(
    raw_filters: str | None,
    *,
    allowed_fields: set[str] | None = None,
) -> dict[str, Any] | None:
    """Parse textual filters straight into the request mapping form."""
    parsed = parse_metadata_filters(raw_filters, allowed_fields=allowed_fields)
    return filters_to_mapping(parsed) if parsed else None


def parse_metadata_filters(
    raw_filters: str | None,
    *,
    allowed_fields: set[str] | None = None,
) -> list[MetadataFilter]:
    """Parse e.g. ``node_type=faq and priority>=2, tags in (a, b)``."""
    if raw_filters is None or not raw_filters.strip():
        return []
    return [
        _parse_condition(condition, allowed_fields=allowed_fields)
        for condition in _split_top_level(raw_filters)
    ]


def _parse_condition(condition: str, *, allowed_fields: set[str] | None) -> MetadataFilter:
    membership = _MEMBERSHIP_RE.fullmatch(condition)
    if membership is not None:
        field = membership["field"]
        _validate_field(field, allowed_fields=allowed_fields)
        return _checked(field, "in", _coerce_list(membership["values"]))

    comparison = _COMPARISON_RE.fullmatch(condition)
    if comparison is None:
        raise MetadataFilterParseError(f"Invalid filter syntax: {condition!r}")
    field = comparison["field"]
    _validate_field(field, allowed_fields=allowed_fields)
    operator = _SYMBOL_OPERATORS[comparison["symbol"]]
    return _checked(field, operator, _coerce(comparison["value"]))


def _separators(raw: str) -> Iterator[tuple[int, int]]:
    """Yield (start, end) of each separator outside quotes and brackets."""
    quote: str | None = None
    depth = 0
    position = 0
    while position < len(raw):
        char = raw[position]
        if quote is not None:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char in "([":
            depth += 1
        elif char in ")]":
            depth = max(depth - 1, 0)
        elif depth == 0:
            separator = _SEPARATOR_RE.match(raw, position)
            if separator is not None:
                yield separator.start(), separator.end()
                position = separator.end()
                continue
        position += 1


def _split_top_level(raw: str) -> list[str]:
    pieces: list[str] = []
    start = 0
    for sep_start, sep_end in _separators(raw):
        pieces.append(raw[start:sep_start])
        start = sep_end
    pieces.append(raw[start:])
    return [piece.strip() for piece in pieces if piece.strip()]


def _coerce_list(raw_values: str) -> list[FilterScalar]:
    text = raw_values.strip()
    if text[:1] + text[-1:] in {"()", "[]"}:
        text = text[1:-1]
    return [_coerce(item) for item in _split_top_level(text)]


def _coerce(raw_value: str) -> FilterScalar:
    text = raw_value.strip()
    if not text:
        raise MetadataFilterParseError("Missing filter value.")
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    boolean = {"true": True, "false": False}.get(text.lower())
    if boolean is not None:
        return boolean
    if _NUMBER_RE.fullmatch(text):
        return float(text) if "." in text else int(text)
    return text
