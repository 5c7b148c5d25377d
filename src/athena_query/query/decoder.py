"""Decoding of Athena result cells into Python values.

Athena returns every cell as a ``VarCharValue`` string. Scalars are parsed
according to the column type. Composite types (map, row, array) arrive in
Athena's own text form, not JSON::

    {ref=17229A, tags=[{k=v}], ids=[10, 20]}

Maps and rows use ``key=value`` pairs between braces, arrays of maps use
brackets, but arrays of scalars nested inside a map value are emitted as JSON.
Both forms are decoded as they appear.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from datetime import date, datetime, time
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from athena_query.query.models import ColumnInfo, DecodeFailure, TypeTag

_KEY_AHEAD = re.compile(r"\s*[^\s=,\[\]{}]+=")
_OPENERS = "[{"
_CLOSERS = "]}"


def decode_value(value: str | None, column: ColumnInfo | TypeTag | str) -> Any:
    """Decode one cell according to its column type.

    Args:
        value: Raw ``VarCharValue``; None when Athena omitted it.
        column: Column metadata, a TypeTag, or a raw Athena type name.

    Returns:
        The decoded value. Empty or absent cells decode to None.

    Raises:
        DecodeFailure: If the cell is malformed for its declared type.
    """
    if not value:
        return None

    if isinstance(column, ColumnInfo):
        tag = column.tag
    elif isinstance(column, TypeTag):
        tag = column
    else:
        tag = TypeTag.from_athena_type(column)

    try:
        return _DECODERS.get(tag, _passthrough)(value)
    except DecodeFailure:
        raise
    except (ValueError, KeyError, IndexError) as e:
        raise DecodeFailure(value, tag.value) from e


def decode_rows(rows: Iterable[dict[str, Any]], columns: list[ColumnInfo]) -> list[list[Any]]:
    """Decode ``ResultSet.Rows`` entries (without the header row)."""
    decoded = []
    for row in rows:
        datums = row.get("Data", [])
        decoded.append(
            [decode_value(datum.get("VarCharValue"), column)
             for datum, column in zip(datums, columns)]
        )
    return decoded


def _passthrough(value: str) -> str:
    return value


def _decode_boolean(value: str) -> bool:
    if value == "true":
        return True
    if value == "false":
        return False
    raise DecodeFailure(value, TypeTag.BOOLEAN.value)


def _parse_time(text: str) -> time:
    """Parse ``HH:MM:SS[.fff...]`` truncating to millisecond precision."""
    clock, _, fraction = text.partition(".")
    parsed = time.fromisoformat(clock)
    if fraction:
        if not fraction.isdigit():
            raise ValueError(f"invalid fractional seconds: {fraction!r}")
        micros = int(fraction[:6].ljust(6, "0"))
        parsed = parsed.replace(microsecond=micros // 1000 * 1000)
    return parsed


def _decode_timestamp(value: str) -> datetime:
    day, _, clock = value.strip().replace("T", " ", 1).partition(" ")
    return datetime.combine(date.fromisoformat(day), _parse_time(clock.strip()))


def _decode_timestamp_tz(value: str) -> datetime:
    parts = value.split()
    if len(parts) != 3:
        raise DecodeFailure(value, TypeTag.TIMESTAMP_TZ.value)
    day, clock, zone = parts
    try:
        tzinfo = ZoneInfo(zone)
    except ZoneInfoNotFoundError as e:
        raise DecodeFailure(value, TypeTag.TIMESTAMP_TZ.value) from e
    return datetime.combine(date.fromisoformat(day), _parse_time(clock), tzinfo=tzinfo)


def _is_balanced(text: str) -> bool:
    depth = 0
    for char in text:
        if char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _split_top_level(
    text: str, is_separator: Callable[[str, int], bool], nested: bool = True
) -> list[str]:
    """Split ``text`` on commas outside any nested ``[]`` or ``{}``.

    ``is_separator`` gets the text and the comma index and decides whether that
    comma separates two top-level items. With ``nested`` off brackets are
    ignored and only ``is_separator`` decides.
    """
    parts = []
    depth = 0
    start = 0
    for i, char in enumerate(text):
        if nested and char in _OPENERS:
            depth += 1
        elif nested and char in _CLOSERS:
            depth = max(depth - 1, 0)
        elif char == "," and depth == 0 and is_separator(text, i):
            parts.append(text[start:i])
            start = i + 1
    parts.append(text[start:])
    return parts


def _any_comma(text: str, index: int) -> bool:  # noqa: ARG001
    return True


def _comma_before_key(text: str, index: int) -> bool:
    return _KEY_AHEAD.match(text, index + 1) is not None


def _strip_pair(value: str, opener: str, closer: str) -> str:
    if not (value.startswith(opener) and value.endswith(closer)):
        raise ValueError(f"expected {opener}...{closer}, got {value!r}")
    return value[1:-1]


def decode_map(value: str) -> dict[str, Any]:
    """Decode a ``{key=value, ...}`` map or row cell."""
    value = value.strip()
    if value == "{}":
        return {}

    body = _strip_pair(value, "{", "}")
    decoded: dict[str, Any] = {}
    # Plain-text values may carry a stray bracket, e.g. "note=see [1".
    pairs = _split_top_level(body, _comma_before_key, nested=_is_balanced(body))
    for pair in pairs:
        key, sep, item = pair.partition("=")
        if not sep:
            raise DecodeFailure(value, TypeTag.MAP.value)
        decoded[key.strip()] = _decode_map_item(item.strip())
    return decoded


def _decode_map_item(item: str) -> Any:
    if item.startswith("[") and item.endswith("]"):
        try:
            return json.loads(item)
        except ValueError:
            return decode_array(item)
    return item


def decode_array(value: str) -> list[Any]:
    """Decode a ``[{...}, {...}]`` array cell."""
    value = value.strip()
    if value == "[]":
        return []

    body = _strip_pair(value, "[", "]")
    elements = []
    for element in _split_top_level(body, _any_comma):
        element = element.strip()
        if element.startswith("{"):
            elements.append(decode_map(element))
        else:
            elements.append(element)
    return elements


_DECODERS: dict[TypeTag, Callable[[str], Any]] = {
    TypeTag.INTEGER: int,
    TypeTag.FLOAT: float,
    TypeTag.BOOLEAN: _decode_boolean,
    TypeTag.DATE: date.fromisoformat,
    TypeTag.TIMESTAMP: _decode_timestamp,
    TypeTag.TIMESTAMP_TZ: _decode_timestamp_tz,
    TypeTag.MAP: decode_map,
    TypeTag.ROW: decode_map,
    TypeTag.ARRAY: decode_array,
}
