"""Data models for query execution.

Provides:
- Column type classification for Athena result metadata
- Execution handle and result containers
- Error taxonomy raised by the query layer
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from athena_query.config import ResultShape

__all__ = [
    "AthenaQueryError",
    "ColumnInfo",
    "ConfigurationError",
    "DecodeFailure",
    "EngineQueryFailure",
    "ExecutionHandle",
    "FailedExecution",
    "QueryResult",
    "QueryState",
    "ResultShape",
    "TransportFailure",
    "TypeTag",
]

_INTEGER_TYPES = frozenset({"tinyint", "smallint", "integer", "int", "bigint"})
_FLOAT_TYPES = frozenset({"double", "float", "real", "decimal"})
_PARAMETERS = re.compile(r"\([^()]*\)")


class QueryState(str, Enum):
    """Execution states reported by Athena."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_pending(self) -> bool:
        return self in (QueryState.QUEUED, QueryState.RUNNING)

    @classmethod
    def parse(cls, value: str | None) -> QueryState | None:
        """Map a reported state onto a member, or None for states this client does not know."""
        try:
            return cls(value)
        except ValueError:
            return None


class TypeTag(str, Enum):
    """Decoder-relevant classification of an Athena column type."""

    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    TIMESTAMP_TZ = "timestamp with time zone"
    MAP = "map"
    ARRAY = "array"
    ROW = "row"
    STRING = "string"

    @classmethod
    def from_athena_type(cls, type_name: str) -> TypeTag:
        """Classify an Athena type name such as ``bigint`` or ``decimal(10,2)``."""
        name = type_name.strip().lower()
        unparameterized = " ".join(_PARAMETERS.sub("", name).split())
        base = name.split("(", 1)[0].strip()
        if base in _INTEGER_TYPES:
            return cls.INTEGER
        if base in _FLOAT_TYPES:
            return cls.FLOAT
        if unparameterized == "timestamp with time zone":
            return cls.TIMESTAMP_TZ
        if base in ("boolean", "date", "timestamp", "map", "array", "row"):
            return cls(base)
        return cls.STRING


class ColumnInfo(BaseModel):
    """One entry of ``ResultSet.ResultSetMetadata.ColumnInfo``."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = Field(description="Athena type name as reported by the engine")

    @property
    def tag(self) -> TypeTag:
        return TypeTag.from_athena_type(self.type)

    @classmethod
    def from_athena(cls, info: dict[str, Any]) -> ColumnInfo:
        return cls(name=info.get("Name") or info.get("Label") or "", type=info.get("Type", ""))


@dataclass
class ExecutionHandle:
    """State owned by the executor for one physical execution."""

    execution_id: str
    result_location: str | None = None
    column_metadata: list[ColumnInfo] = field(default_factory=list)


@dataclass
class QueryResult:
    """Decoded inline result of a successful query.

    ``metadata`` keeps the raw column info dictionaries as returned by Athena.
    """

    query_execution_id: str | None = None
    output_location: str | None = None
    statement_name: str | None = None
    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)
    metadata: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_failed(self) -> bool:
        return False


@dataclass
class FailedExecution:
    """A FAILED execution returned as a value when strict mode is off.

    ``payload`` is the raw ``GetQueryExecution`` response body.
    """

    query_execution_id: str
    payload: dict[str, Any]

    @property
    def is_failed(self) -> bool:
        return True

    @property
    def status(self) -> dict[str, Any]:
        return self.payload.get("QueryExecution", {}).get("Status", {})

    @property
    def state(self) -> str | None:
        return self.status.get("State")

    @property
    def error_message(self) -> str | None:
        return self.status.get("AthenaError", {}).get("ErrorMessage")


class AthenaQueryError(Exception):
    """Base class for errors raised by the query layer."""


class ConfigurationError(AthenaQueryError):
    """Raised before any request when the configuration cannot serve the call."""


class EngineQueryFailure(AthenaQueryError):
    """Raised on a FAILED execution when strict propagation is on."""

    def __init__(self, message: str, payload: dict[str, Any] | None = None) -> None:
        super().__init__(f"failed query with error: {message}")
        self.engine_message = message
        self.payload = payload or {}


class TransportFailure(AthenaQueryError):
    """Raised when Athena or S3 answers with a non-200 status."""

    def __init__(self, status: int | None, body: bytes | str = b"", action: str | None = None):
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        where = f" during {action}" if action else ""
        super().__init__(f"request failed with status {status}{where}: {body}")
        self.status = status
        self.body = body
        self.action = action


class DecodeFailure(AthenaQueryError):
    """Raised when a cell does not parse as its declared column type."""

    def __init__(self, value: str, type_name: str) -> None:
        super().__init__(f"cannot decode {value!r} as {type_name}")
        self.value = value
        self.type_name = type_name
