"""Tests for the signed Athena transport and the S3 object store."""

from __future__ import annotations

import gzip
import io
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError

from athena_query.aws.credentials import AwsCredentials
from athena_query.aws.storage import S3ObjectStore, concat_rows, split_s3_url
from athena_query.aws.transport import SigV4Transport
from athena_query.query.models import TransportFailure

CREDENTIALS = AwsCredentials(
    access_key_id="AKIDEXAMPLE", secret_access_key="secret", region="us-east-1"
)


def s3_response(body: bytes, status: int = 200) -> dict:
    return {"Body": io.BytesIO(body), "ResponseMetadata": {"HTTPStatusCode": status}}


class TestSigV4Transport:
    """Tests for request signing and sending."""

    def make_transport(self, credentials=CREDENTIALS, status=200):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(status, content=b'{"QueryExecutionId": "an uuid"}')

        client = httpx.Client(transport=httpx.MockTransport(handler))
        return SigV4Transport(credentials, client=client), seen

    def test_signs_and_sends(self):
        transport, seen = self.make_transport()
        headers = {
            "X-Amz-Target": "AmazonAthena.StartQueryExecution",
            "Host": "athena.us-east-1.amazonaws.com",
            "Content-Type": "application/x-amz-json-1.1",
        }

        response = transport.sign_and_send(
            "POST", "https://athena.us-east-1.amazonaws.com", headers, b"{}"
        )

        assert response.status == 200
        assert response.body == b'{"QueryExecutionId": "an uuid"}'

        request = seen[0]
        assert request.method == "POST"
        assert request.content == b"{}"
        assert request.headers["x-amz-target"] == "AmazonAthena.StartQueryExecution"
        assert "x-amz-date" in request.headers
        authorization = request.headers["authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/us-east-1/athena/aws4_request" in authorization
        assert "x-amz-security-token" not in request.headers

    def test_session_token_is_signed(self):
        credentials = CREDENTIALS.model_copy(update={"token": "session"})
        transport, seen = self.make_transport(credentials)

        transport.sign_and_send("POST", "https://athena.us-east-1.amazonaws.com", {}, b"{}")

        assert seen[0].headers["x-amz-security-token"] == "session"

    def test_non_200_is_returned_not_raised(self):
        transport, _ = self.make_transport(status=400)
        url = "https://athena.us-east-1.amazonaws.com"
        response = transport.sign_and_send("POST", url, {}, b"")
        assert response.status == 400


class TestS3ObjectStore:
    """Tests for object reads through boto3."""

    def test_fetch_object(self):
        client = MagicMock()
        client.get_object.return_value = s3_response(b"hello")

        body = S3ObjectStore(CREDENTIALS, client=client).fetch_object("s3://bucket/a/b.csv")

        assert body == b"hello"
        client.get_object.assert_called_once_with(Bucket="bucket", Key="a/b.csv")

    def test_gzip_body_is_decompressed(self):
        client = MagicMock()
        client.get_object.return_value = s3_response(gzip.compress(b'{"id": 1}\n'))

        body = S3ObjectStore(CREDENTIALS, client=client).fetch_object("s3://bucket/part.gz")

        assert body == b'{"id": 1}\n'

    def test_non_200_raises(self):
        client = MagicMock()
        client.get_object.return_value = s3_response(b"slow down", status=503)

        with pytest.raises(TransportFailure) as exc_info:
            S3ObjectStore(CREDENTIALS, client=client).fetch_object("s3://bucket/key")

        assert exc_info.value.status == 503
        assert exc_info.value.body == "slow down"

    def test_client_error_raises(self):
        client = MagicMock()
        client.get_object.side_effect = ClientError(
            {
                "Error": {"Code": "NoSuchKey", "Message": "The specified key does not exist."},
                "ResponseMetadata": {"HTTPStatusCode": 404},
            },
            "GetObject",
        )

        with pytest.raises(TransportFailure) as exc_info:
            S3ObjectStore(CREDENTIALS, client=client).fetch_object("s3://bucket/missing")

        assert exc_info.value.status == 404
        assert exc_info.value.action == "s3://bucket/missing"


class TestStorageHelpers:
    """Tests for URL splitting and dataset concatenation."""

    def test_split_s3_url(self):
        assert split_s3_url("s3://bucket/path/to/object") == ("bucket", "path/to/object")

    @pytest.mark.parametrize("url", ["https://bucket/key", "s3:///key", "bucket/key"])
    def test_split_rejects_non_s3(self, url):
        with pytest.raises(ValueError, match="Not an S3 URL"):
            split_s3_url(url)

    def test_concat_empty(self):
        assert concat_rows([]).to_table().num_rows == 0

    def test_concat_in_memory_partitions(self):
        import pyarrow as pa
        import pyarrow.dataset as ds

        first = ds.dataset(pa.table({"id": [1, 2]}))
        second = ds.dataset(pa.table({"id": [3]}))

        table = concat_rows([first, second]).to_table()

        assert sorted(table.column("id").to_pylist()) == [1, 2, 3]
