"""Athena Query: run SQL on AWS Athena and decode the results."""

from athena_query.query.executor import QueryExecutor, get_executor
from athena_query.query.models import (
    AthenaQueryError,
    ConfigurationError,
    DecodeFailure,
    EngineQueryFailure,
    FailedExecution,
    QueryResult,
    ResultShape,
    TransportFailure,
)

__version__ = "0.1.0"

__all__ = [
    "AthenaQueryError",
    "ConfigurationError",
    "DecodeFailure",
    "EngineQueryFailure",
    "FailedExecution",
    "QueryExecutor",
    "QueryResult",
    "ResultShape",
    "TransportFailure",
    "__version__",
    "get_executor",
]
