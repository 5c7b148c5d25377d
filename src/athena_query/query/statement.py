"""Query model and SQL rendering for each protocol phase.

A parameterized statement travels to Athena twice: first as
``PREPARE <name> FROM <sql>``, then as ``EXECUTE <name> USING <literals>``.
Plain statements are sent verbatim. SELECT statements may be wrapped in an
``UNLOAD`` so that Athena writes the result set to S3 instead of returning it
inline.
"""

from __future__ import annotations

import hashlib
import re
import time
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from athena_query.query.models import ConfigurationError

SELECT_PATTERN = re.compile(r"^\s*select\b", re.IGNORECASE)


class MaterializeFormat(str, Enum):
    """File formats Athena can ``UNLOAD`` into."""

    COLUMNAR = "PARQUET"
    RECORD_JSON = "JSON"


class MaterializeSpec(BaseModel):
    """Attributes of an ``UNLOAD`` wrapping.

    See: https://docs.aws.amazon.com/athena/latest/ug/unload.html
    """

    model_config = ConfigDict(frozen=True)

    destination: str
    output_format: MaterializeFormat = MaterializeFormat.COLUMNAR
    compression: str | None = None
    compression_level: int | None = None
    field_delimiter: str | None = None
    partition_columns: tuple[str, ...] | None = None

    @model_validator(mode="after")
    def _require_destination(self) -> MaterializeSpec:
        if not self.destination:
            raise ConfigurationError("a destination is required to materialize a query")
        return self

    @classmethod
    def for_format(cls, destination: str, output_format: MaterializeFormat) -> MaterializeSpec:
        """Build a spec with Athena's recommended defaults for ``output_format``."""
        compression = "SNAPPY" if output_format == MaterializeFormat.COLUMNAR else None
        return cls(destination=destination, output_format=output_format, compression=compression)

    def properties(self) -> dict[str, Any]:
        """``WITH`` clause properties, keyed by their UNLOAD names."""
        return {
            "compression": self.compression,
            "compression_level": self.compression_level,
            "field_delimiter": self.field_delimiter,
            "format": self.output_format.value,
            "partitioned_by": list(self.partition_columns) if self.partition_columns else None,
        }


class Query(BaseModel):
    """One SQL statement and everything needed to render it."""

    model_config = ConfigDict(frozen=True)

    text: str
    params: tuple[Any, ...] = Field(default_factory=tuple)
    statement_name: str | None = None
    prepared: bool = False
    materialize: MaterializeSpec | None = None

    @model_validator(mode="after")
    def _check_prepared(self) -> Query:
        if self.prepared and (not self.params or not self.statement_name):
            raise ConfigurationError("a prepared query needs params and a statement name")
        return self

    @property
    def is_parameterized(self) -> bool:
        return len(self.params) > 0

    @property
    def is_select(self) -> bool:
        return is_select(self.text)

    @property
    def is_materialized(self) -> bool:
        """True when the rendered text will carry an ``UNLOAD`` wrapping."""
        return self.materialize is not None and self.is_select

    def as_prepared(self) -> Query:
        """Return the EXECUTE-phase copy of this query."""
        return self.model_copy(update={"prepared": True})

    def render(self) -> str:
        return render(self)


def is_select(sql: str) -> bool:
    """Check whether ``sql`` starts with a SELECT token, ignoring case."""
    return SELECT_PATTERN.match(sql) is not None


def requires_prepare(query: Query) -> bool:
    """True when the query has params and still needs its PREPARE phase."""
    return query.is_parameterized and not query.prepared


def render(query: Query) -> str:
    """Build the exact SQL text to send to Athena for this phase of ``query``.

    Raises:
        ConfigurationError: If a parameterized query has no statement name.
    """
    if query.prepared:
        literals = ", ".join(encode_literal(value) for value in query.params)
        return f"EXECUTE {query.statement_name} USING {literals}"

    if query.is_parameterized:
        if not query.statement_name:
            raise ConfigurationError("statement_name is required for a parameterized query")
        return f"PREPARE {query.statement_name} FROM {_maybe_unload(query)}"

    return _maybe_unload(query)


def _maybe_unload(query: Query) -> str:
    # UNLOAD works only with SELECT
    if query.materialize is None or not query.is_select:
        return query.text

    props = query.materialize.properties()
    with_clause = ", ".join(
        f"{key} = {encode_literal(value)}"
        for key, value in sorted(props.items())
        if value is not None
    )
    destination = encode_literal(query.materialize.destination)
    return f"UNLOAD ({query.text})\nTO {destination}\nWITH ({with_clause})"


def encode_literal(value: Any) -> str:
    """Render a Python value as an Athena SQL literal.

    Strings are wrapped in single quotes as-is; embedded quotes are not escaped.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f"'{value}'"
    if isinstance(value, datetime):
        naive = value.replace(tzinfo=None, microsecond=value.microsecond // 1000 * 1000)
        timespec = "milliseconds" if naive.microsecond else "seconds"
        return encode_literal(naive.isoformat(sep=" ", timespec=timespec))
    if isinstance(value, date):
        return encode_literal(value.isoformat())
    if isinstance(value, (list, tuple)):
        return "ARRAY[" + ", ".join(encode_literal(item) for item in value) + "]"
    return str(value)


def statement_hash(sql: str, cache_query: bool = True) -> str:
    """Stable hash of ``sql`` when caching, otherwise a fresh nanosecond stamp."""
    if cache_query:
        return hashlib.md5(sql.encode("utf-8")).hexdigest().upper()
    return str(time.time_ns())


def statement_name_for(sql: str, cache_query: bool = True) -> str:
    return "query_" + statement_hash(sql, cache_query)
