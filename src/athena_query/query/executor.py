"""Query executor driving Athena executions to a terminal state.

Provides:
- Submission with content-addressed idempotency tokens
- Fixed-interval status polling
- Transparent PREPARE/EXECUTE for parameterized statements
- Dispatch of completed executions to the result materializer
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import threading
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from athena_query.aws.credentials import (
    AwsCredentials,
    BotocoreCredentialProvider,
    merge_credentials,
)
from athena_query.aws.storage import S3ObjectStore
from athena_query.aws.transport import SigV4Transport
from athena_query.config import ResultShape, get_settings
from athena_query.observability import (
    decrement_active_queries,
    get_logger,
    get_tracer,
    increment_active_queries,
    record_query_duration,
    record_request,
)
from athena_query.query.materializer import ResultMaterializer
from athena_query.query.models import (
    ConfigurationError,
    EngineQueryFailure,
    ExecutionHandle,
    FailedExecution,
    QueryState,
    TransportFailure,
)
from athena_query.query.statement import (
    MaterializeFormat,
    MaterializeSpec,
    Query,
    render,
    requires_prepare,
    statement_hash,
    statement_name_for,
)

if TYPE_CHECKING:
    from athena_query.aws.credentials import CredentialProvider
    from athena_query.aws.storage import ObjectStore
    from athena_query.aws.transport import Transport
    from athena_query.config import Settings

logger = get_logger(__name__)

CONTENT_TYPE = "application/x-amz-json-1.1"

_UNLOAD_FORMATS = {
    ResultShape.RECORDS: MaterializeFormat.RECORD_JSON,
    ResultShape.COLUMNAR: MaterializeFormat.COLUMNAR,
}


def client_request_token(payload: dict[str, Any], cache_query: bool = True) -> str:
    """Hash a StartQueryExecution payload into a ``ClientRequestToken``.

    Identical payloads share a token while caching, so Athena can reuse the
    previous execution. Without caching the current time is mixed in.
    """
    material = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    if not cache_query:
        material += f"|{time.time_ns()}"
    return hashlib.md5(material.encode("utf-8")).hexdigest().upper()


def _operation(sql: str) -> str:
    words = sql.split(None, 1)
    return words[0].upper() if words else "UNKNOWN"


class QueryExecutor:
    """Executes SQL against Athena and returns decoded results.

    Every call is independent: it owns its execution handle and shares no
    mutable state with concurrent calls.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        credentials: AwsCredentials | None = None,
        credential_provider: CredentialProvider | None = None,
        transport: Transport | None = None,
        object_store: ObjectStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            settings: Settings to use. If None, uses cached settings.
            credentials: Explicit credentials, overriding settings per field.
            credential_provider: Ambient credential source. Defaults to botocore's chain.
            transport: Signed HTTP transport. Defaults to SigV4 over httpx.
            object_store: S3 reader for out-of-band results. Defaults to boto3.
            sleep: Blocking wait between status polls.
        """
        self._settings = settings or get_settings()
        explicit = AwsCredentials.from_config(self._settings.aws)
        if credentials is not None:
            explicit = explicit.model_copy(
                update={k: v for k, v in credentials.model_dump().items() if v}
            )
        self._credentials = merge_credentials(
            explicit, credential_provider or BotocoreCredentialProvider()
        )
        self._lock = threading.Lock()
        self._transport = transport
        self._owned_transport: SigV4Transport | None = None
        self._object_store = object_store
        self._sleep = sleep

    def __enter__(self) -> QueryExecutor:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client of a transport this executor created.

        Injected transports belong to the caller and are left open.
        """
        with self._lock:
            if self._owned_transport is not None:
                self._owned_transport.close()
                if self._transport is self._owned_transport:
                    self._transport = None
                self._owned_transport = None

    @property
    def credentials(self) -> AwsCredentials:
        return self._credentials

    @property
    def endpoint(self) -> str:
        if self._settings.athena.endpoint_url:
            return self._settings.athena.endpoint_url
        if not self._credentials.region:
            raise ConfigurationError("an AWS region is required")
        return f"https://athena.{self._credentials.region}.amazonaws.com"

    def _get_transport(self) -> Transport:
        with self._lock:
            if self._transport is None:
                if not self._credentials.is_complete:
                    raise ConfigurationError(
                        "AWS access key, secret key and region are required to sign requests"
                    )
                self._owned_transport = SigV4Transport(
                    self._credentials, timeout=self._settings.query.request_timeout
                )
                self._transport = self._owned_transport
            return self._transport

    def _get_object_store(self) -> ObjectStore:
        with self._lock:
            if self._object_store is None:
                self._object_store = S3ObjectStore(self._credentials)
            return self._object_store

    def _output_config(self) -> dict[str, Any]:
        athena = self._settings.athena
        if not athena.output_location and not athena.workgroup:
            raise ConfigurationError("settings must have a workgroup, an output_location or both")

        config: dict[str, Any] = {}
        if athena.workgroup:
            config["WorkGroup"] = athena.workgroup
        if athena.output_location:
            config["ResultConfiguration"] = {"OutputLocation": athena.output_location}
        return config

    def build_query(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        shape: ResultShape = ResultShape.INLINE,
        cache_query: bool = True,
    ) -> Query:
        """Describe ``sql`` as a Query, attaching an UNLOAD for record or columnar shapes.

        Raises:
            ConfigurationError: If the shape needs an output location and none is set.
        """
        params = tuple(params or ())
        statement_name = statement_name_for(sql, cache_query) if params else None

        materialize = None
        unload_format = _UNLOAD_FORMATS.get(shape)
        if unload_format is not None:
            output_location = self._settings.athena.output_location
            if not output_location:
                raise ConfigurationError(
                    f"output_location is required for {shape.value} results"
                )
            # Athena requires an empty UNLOAD destination.
            destination = "/".join(
                [output_location.rstrip("/"), "results", statement_hash(sql, cache_query)]
            )
            materialize = MaterializeSpec.for_format(destination, unload_format)

        return Query(
            text=sql, params=params, statement_name=statement_name, materialize=materialize
        )

    def execute(
        self,
        sql: str,
        params: Sequence[Any] | None = None,
        *,
        shape: ResultShape | str | None = None,
        decode_body: bool | None = None,
        cache_query: bool | None = None,
        raise_on_failure: bool | None = None,
    ) -> Any:
        """Execute a SQL statement and return its result in the requested shape.

        Args:
            sql: SQL text. May contain ``?`` placeholders when ``params`` is given.
            params: Positional parameter values.
            shape: Output shape. Defaults to ``query.output_shape``.
            decode_body: Fetch out-of-band results instead of returning their locations.
            cache_query: Let Athena reuse results of identical queries.
            raise_on_failure: Raise EngineQueryFailure on FAILED executions.

        Returns:
            A QueryResult for inline results, CSV text, a list of JSON records,
            a pyarrow dataset, location references when ``decode_body`` is off, or
            a FailedExecution when the query failed and strict mode is off.

        Raises:
            ConfigurationError: If the configuration cannot serve the call.
            EngineQueryFailure: If the query failed and strict mode is on.
            TransportFailure: If any request answered with a non-200 status.
            DecodeFailure: If a result cell does not match its column type.
        """
        query_config = self._settings.query
        shape = ResultShape(shape) if shape is not None else query_config.output_shape
        if decode_body is None:
            decode_body = query_config.decode_body
        if cache_query is None:
            cache_query = self._settings.athena.cache_query
        if raise_on_failure is None:
            raise_on_failure = query_config.raise_on_failure

        output_config = self._output_config()
        query = self.build_query(sql, params, shape, cache_query)
        endpoint = self.endpoint

        materializer = ResultMaterializer(
            self._object_store if shape == ResultShape.INLINE else self._get_object_store(),
            self._credentials,
            fetch_concurrency=query_config.fetch_concurrency,
        )
        call = _Call(
            executor=self,
            endpoint=endpoint,
            output_config=output_config,
            cache_query=cache_query,
            raise_on_failure=raise_on_failure,
        )

        tracer = get_tracer()
        with tracer.start_as_current_span(
            "athena.query",
            attributes={
                "db.system": "athena",
                "db.operation": _operation(sql),
                "athena.shape": shape.value,
            },
        ):
            increment_active_queries()
            start = time.monotonic()
            status = "error"
            try:
                outcome = call.run(query)
                if isinstance(outcome, FailedExecution):
                    status = "failed"
                    return outcome
                handle, body, executed = outcome
                status = "succeeded"
                return materializer.materialize(shape, body, handle, executed, decode_body)
            finally:
                record_query_duration(time.monotonic() - start, status)
                decrement_active_queries()

    async def execute_async(self, sql: str, params: Sequence[Any] | None = None, **options: Any):
        """Run :meth:`execute` on a worker thread."""
        return await asyncio.to_thread(self.execute, sql, params, **options)


class _Call:
    """Protocol state for one logical call: submit, poll and fetch."""

    def __init__(
        self,
        executor: QueryExecutor,
        endpoint: str,
        output_config: dict[str, Any],
        cache_query: bool,
        raise_on_failure: bool,
    ) -> None:
        self._executor = executor
        self._settings = executor._settings
        self._transport = executor._get_transport()
        self._token = executor.credentials.token
        self._endpoint = endpoint
        self._host = urlparse(endpoint).netloc
        self._output_config = output_config
        self._cache_query = cache_query
        self._raise_on_failure = raise_on_failure

    def run(self, query: Query) -> tuple[ExecutionHandle, dict[str, Any], Query] | FailedExecution:
        """Drive ``query`` to completion, chaining EXECUTE after a successful PREPARE."""
        handle = self.submit(query)
        failure = self.wait(handle)
        if failure is not None:
            return failure

        body = self.fetch_results(handle, paginate=not requires_prepare(query))
        if requires_prepare(query):
            logger.info(
                "executing prepared statement",
                statement_name=query.statement_name,
                prepare_execution_id=handle.execution_id,
            )
            return self.run(query.as_prepared())
        return handle, body, query

    def request(self, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one signed Athena API action and decode its JSON response.

        Raises:
            TransportFailure: If Athena answers with a non-200 status.
        """
        headers = {
            "X-Amz-Target": f"AmazonAthena.{action}",
            "Host": self._host,
            "Content-Type": CONTENT_TYPE,
        }
        if self._token:
            headers["X-Amz-Security-Token"] = self._token

        body = json.dumps(payload).encode("utf-8")
        with get_tracer().start_as_current_span(
            "athena.request", attributes={"athena.action": action}
        ):
            response = self._transport.sign_and_send("POST", self._endpoint, headers, body)
        record_request(action, response.status)

        if response.status != 200:
            raise TransportFailure(response.status, response.body, action)
        return json.loads(response.body) if response.body else {}

    def submit(self, query: Query) -> ExecutionHandle:
        payload: dict[str, Any] = {
            **self._output_config,
            "QueryExecutionContext": {"Database": self._settings.athena.database},
            "QueryString": render(query),
        }
        payload["ClientRequestToken"] = client_request_token(payload, self._cache_query)

        response = self.request("StartQueryExecution", payload)
        handle = ExecutionHandle(execution_id=response["QueryExecutionId"])
        logger.info(
            "query submitted",
            query_execution_id=handle.execution_id,
            prepared=query.prepared,
            parameterized=query.is_parameterized,
        )
        return handle

    def wait(self, handle: ExecutionHandle) -> FailedExecution | None:
        """Poll until the execution leaves QUEUED/RUNNING.

        Returns:
            A FailedExecution when the query failed and strict mode is off,
            otherwise None once results can be fetched.

        Raises:
            EngineQueryFailure: If the query failed and strict mode is on.
        """
        query_config = self._settings.query
        pending_polls = 0

        while True:
            payload = self.request("GetQueryExecution", {"QueryExecutionId": handle.execution_id})
            execution = payload.get("QueryExecution", {})
            status = execution.get("Status", {})
            reported = status.get("State")
            state = QueryState.parse(reported)

            if state is not None and state.is_pending:
                pending_polls += 1
                if pending_polls == query_config.wait_log_threshold:
                    logger.info(
                        "query still pending, polling",
                        state=reported,
                        query_execution_id=handle.execution_id,
                        interval=query_config.poll_interval,
                    )
                self._executor._sleep(query_config.poll_interval)
                continue

            handle.result_location = execution.get("ResultConfiguration", {}).get(
                "OutputLocation"
            )

            if state == QueryState.SUCCEEDED:
                return None

            if state == QueryState.FAILED:
                message = status.get("AthenaError", {}).get("ErrorMessage", "")
                logger.warning(
                    "query failed",
                    query_execution_id=handle.execution_id,
                    error=message,
                )
                if self._raise_on_failure:
                    raise EngineQueryFailure(message, payload)
                return FailedExecution(query_execution_id=handle.execution_id, payload=payload)

            logger.warning(
                "query ended in unexpected state",
                state=reported,
                query_execution_id=handle.execution_id,
            )
            return None

    def fetch_results(self, handle: ExecutionHandle, paginate: bool = True) -> dict[str, Any]:
        """Fetch ``GetQueryResults``, following ``NextToken`` pages into one body."""
        body = self.request("GetQueryResults", {"QueryExecutionId": handle.execution_id})
        next_token = body.pop("NextToken", None) if paginate else None
        while next_token:
            page = self.request(
                "GetQueryResults",
                {"QueryExecutionId": handle.execution_id, "NextToken": next_token},
            )
            rows = page.get("ResultSet", {}).get("Rows", [])
            body.setdefault("ResultSet", {}).setdefault("Rows", []).extend(rows)
            next_token = page.get("NextToken")
        return body


_executor: QueryExecutor | None = None


def get_executor() -> QueryExecutor:
    """Get the global query executor (cached).

    Returns:
        The global QueryExecutor instance.
    """
    global _executor
    if _executor is None:
        _executor = QueryExecutor()
    return _executor


def reset_executor() -> None:
    """Reset the global executor (useful for testing)."""
    global _executor
    if _executor is not None:
        _executor.close()
    _executor = None
