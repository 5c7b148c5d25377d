"""Shared fixtures: an in-process fake of the Athena JSON API."""

from __future__ import annotations

import json
from typing import Any

import pytest

from athena_query.aws.credentials import AwsCredentials
from athena_query.aws.transport import TransportResponse
from athena_query.config import AthenaConfig, AwsConfig, QueryConfig, Settings

COLUMN_INFO = [
    {
        "CaseSensitive": False,
        "CatalogName": "hive",
        "Label": "id",
        "Name": "id",
        "Nullable": "UNKNOWN",
        "Precision": 10,
        "Scale": 0,
        "SchemaName": "",
        "TableName": "",
        "Type": "integer",
    },
    {
        "CaseSensitive": True,
        "CatalogName": "hive",
        "Label": "name",
        "Name": "name",
        "Nullable": "UNKNOWN",
        "Precision": 2_147_483_647,
        "Scale": 0,
        "SchemaName": "",
        "TableName": "",
        "Type": "varchar",
    },
]


def result_set(rows: list[list[str | None]], columns: list[dict] | None = None) -> dict:
    """Build a GetQueryResults body whose first row is the header."""
    columns = columns if columns is not None else COLUMN_INFO
    header = {"Data": [{"VarCharValue": c["Name"]} for c in columns]}
    data = [
        {"Data": [{} if v is None else {"VarCharValue": v} for v in row]} for row in rows
    ]
    return {
        "ResultSet": {
            "ResultSetMetadata": {"ColumnInfo": columns},
            "Rows": [header, *data],
        },
        "UpdateCount": 0,
    }


def execution_status(state: str, output_location: str = "s3://foo", error: str = "") -> dict:
    status: dict[str, Any] = {"State": state}
    if error:
        status["AthenaError"] = {"ErrorMessage": error}
    return {
        "QueryExecution": {
            "QueryExecutionId": "an uuid",
            "ResultConfiguration": {"OutputLocation": output_location},
            "Status": status,
        }
    }


class FakeAthena:
    """Transport answering Athena actions from scripted handlers.

    Handlers map an action name to a callable taking the decoded request
    payload and returning a dict body or a TransportResponse.
    """

    def __init__(self, handlers: dict[str, Any] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any], dict[str, str]]] = []
        self.handlers = {
            "StartQueryExecution": lambda payload: {"QueryExecutionId": "an uuid"},
            "GetQueryExecution": lambda payload: execution_status("SUCCEEDED"),
            "GetQueryResults": lambda payload: result_set([["1", "Ale"], ["2", "Wojtek"]]),
        }
        self.handlers.update(handlers or {})

    def sign_and_send(
        self, method: str, url: str, headers: dict[str, str], body: bytes
    ) -> TransportResponse:
        assert method == "POST"
        action = headers["X-Amz-Target"].removeprefix("AmazonAthena.")
        payload = json.loads(body)
        self.calls.append((action, payload, headers))

        answer = self.handlers[action](payload)
        if isinstance(answer, TransportResponse):
            return answer
        return TransportResponse(status=200, body=json.dumps(answer).encode("utf-8"))

    def actions(self) -> list[str]:
        return [action for action, _, _ in self.calls]

    def submitted(self) -> list[dict[str, Any]]:
        return [payload for action, payload, _ in self.calls if action == "StartQueryExecution"]


class FakeObjectStore:
    """Object store serving bytes from a dict keyed by URL."""

    def __init__(self, objects: dict[str, bytes] | None = None) -> None:
        self.objects = objects or {}
        self.fetched: list[str] = []

    def fetch_object(self, url: str) -> bytes:
        self.fetched.append(url)
        return self.objects[url]


class NoAmbientCredentials:
    def resolve(self) -> AwsCredentials | None:
        return None


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a fake region and output location."""
    return Settings(
        aws=AwsConfig(region="us-east-1", access_key_id="some key", secret_access_key="dummy"),
        athena=AthenaConfig(database="my_awesome_database", output_location="s3://foo"),
        query=QueryConfig(poll_interval=0.01),
    )


@pytest.fixture
def fake_athena() -> FakeAthena:
    return FakeAthena()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()
