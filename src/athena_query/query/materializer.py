"""Turns a completed execution into the output shape the caller asked for.

Provides:
- Inline decoding of ``GetQueryResults`` payloads
- Raw delimited result file retrieval
- Manifest resolution for UNLOAD outputs (JSON records, Parquet partitions)
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from athena_query.aws.storage import build_lazy_partition, concat_rows
from athena_query.config import ResultShape
from athena_query.observability import get_logger, record_query_rows
from athena_query.query.decoder import decode_rows
from athena_query.query.models import (
    AthenaQueryError,
    ColumnInfo,
    ConfigurationError,
    QueryResult,
)
from athena_query.query.statement import MaterializeFormat

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    import pyarrow.dataset as ds

    from athena_query.aws.credentials import AwsCredentials
    from athena_query.aws.storage import ObjectStore
    from athena_query.query.models import ExecutionHandle
    from athena_query.query.statement import Query

logger = get_logger(__name__)

MANIFEST_SUFFIX = "-manifest.csv"


class ResultMaterializer:
    """Resolves results for one call against an object store."""

    def __init__(
        self,
        object_store: ObjectStore | None,
        credentials: AwsCredentials,
        fetch_concurrency: int = 1,
        partition_builder: Callable[[str, AwsCredentials], ds.Dataset] = build_lazy_partition,
        concat: Callable[[Sequence[ds.Dataset]], ds.Dataset] = concat_rows,
    ) -> None:
        self._object_store = object_store
        self._credentials = credentials
        self._fetch_concurrency = fetch_concurrency
        self._partition_builder = partition_builder
        self._concat = concat

    def materialize(
        self,
        shape: ResultShape,
        body: dict[str, Any],
        handle: ExecutionHandle,
        query: Query,
        decode_body: bool = True,
    ) -> Any:
        """Build the requested output from a fetched ``GetQueryResults`` body.

        Record and columnar shapes apply only when ``query`` was rendered with
        an UNLOAD; otherwise the inline payload is decoded.
        """
        unload_format = query.materialize.output_format if query.is_materialized else None

        if shape == ResultShape.COLUMNAR and unload_format == MaterializeFormat.COLUMNAR:
            if "ResultSet" not in body:
                return body
            return self.columnar(handle, decode_body)

        if shape == ResultShape.RECORDS and unload_format == MaterializeFormat.RECORD_JSON:
            if "ResultSet" not in body:
                return body
            return self.records(handle, decode_body)

        if shape == ResultShape.DELIMITED:
            return self.delimited(handle, decode_body)

        return self.inline(body, handle, query.statement_name)

    def inline(
        self, body: dict[str, Any], handle: ExecutionHandle, statement_name: str | None
    ) -> QueryResult | dict[str, Any]:
        """Decode an inline result set, or hand back bodies without one."""
        result_set = body.get("ResultSet")
        if result_set is None:
            return body

        result = QueryResult(
            query_execution_id=handle.execution_id,
            output_location=handle.result_location,
            statement_name=statement_name,
        )

        columns_info = result_set.get("ResultSetMetadata", {}).get("ColumnInfo")
        rows = result_set.get("Rows")
        if not columns_info or not rows:
            return result

        handle.column_metadata = [ColumnInfo.from_athena(info) for info in columns_info]
        header, *data = rows
        result.columns = [datum.get("VarCharValue", "") for datum in header.get("Data", [])]
        result.rows = decode_rows(data, handle.column_metadata)
        result.metadata = columns_info
        record_query_rows(len(result.rows))
        return result

    def delimited(self, handle: ExecutionHandle, decode_body: bool = True) -> str:
        """Return the CSV Athena wrote at the result location, or its URL."""
        location = self._require_location(handle)
        if not decode_body:
            return location
        return self._fetch(location).decode("utf-8")

    def manifest_locations(self, result_location: str) -> list[str]:
        """Read the UNLOAD manifest listing one data object URL per line."""
        manifest = self._fetch(result_location + MANIFEST_SUFFIX).decode("utf-8")
        locations = [line.strip() for line in manifest.splitlines() if line.strip()]
        logger.info("manifest resolved", objects=len(locations))
        return locations

    def records(self, handle: ExecutionHandle, decode_body: bool = True) -> list[Any]:
        """Decode every newline-delimited JSON object listed by the manifest, in order."""
        locations = self.manifest_locations(self._require_location(handle))
        if not decode_body:
            return locations

        records: list[Any] = []
        for payload in self._fetch_all(locations):
            for line in payload.decode("utf-8").split("\n"):
                if line.strip():
                    records.append(json.loads(line))
        record_query_rows(len(records))
        return records

    def columnar(self, handle: ExecutionHandle, decode_body: bool = True) -> ds.Dataset | list[str]:
        """Open every Parquet partition listed by the manifest as one lazy dataset."""
        locations = self.manifest_locations(self._require_location(handle))
        if not decode_body:
            return locations
        partitions = [
            self._partition_builder(location, self._credentials) for location in locations
        ]
        return self._concat(partitions)

    def _fetch_all(self, locations: list[str]) -> list[bytes]:
        if self._fetch_concurrency <= 1 or len(locations) <= 1:
            return [self._fetch(location) for location in locations]
        with ThreadPoolExecutor(max_workers=self._fetch_concurrency) as pool:
            return list(pool.map(self._fetch, locations))

    def _fetch(self, url: str) -> bytes:
        if self._object_store is None:
            raise ConfigurationError("no object store configured for out-of-band results")
        return self._object_store.fetch_object(url)

    @staticmethod
    def _require_location(handle: ExecutionHandle) -> str:
        if not handle.result_location:
            raise AthenaQueryError(
                f"execution {handle.execution_id} reported no result output location"
            )
        return handle.result_location
