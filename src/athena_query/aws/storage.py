"""S3 access for results Athena writes out of band.

Provides:
- Raw object reads by ``s3://`` URL
- Lazy Parquet partitions as pyarrow datasets
"""

from __future__ import annotations

import gzip
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

import boto3
import pyarrow as pa
import pyarrow.dataset as ds
from botocore.exceptions import ClientError
from pyarrow import fs

from athena_query.query.models import TransportFailure

if TYPE_CHECKING:
    from collections.abc import Sequence

    from athena_query.aws.credentials import AwsCredentials

GZIP_MAGIC = b"\x1f\x8b"


class ObjectStore(Protocol):
    """Reads one object by absolute URL."""

    def fetch_object(self, url: str) -> bytes: ...


def split_s3_url(url: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into bucket and key."""
    parsed = urlparse(url)
    if parsed.scheme != "s3" or not parsed.netloc:
        raise ValueError(f"Not an S3 URL: {url}")
    return parsed.netloc, parsed.path.lstrip("/")


class S3ObjectStore:
    """Object reads through a boto3 S3 client.

    Gzip-compressed objects are decompressed transparently.
    """

    def __init__(self, credentials: AwsCredentials, client=None) -> None:
        self._client = client or boto3.client(
            "s3",
            region_name=credentials.region,
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.token,
        )

    def fetch_object(self, url: str) -> bytes:
        """Fetch the object at ``url``.

        Raises:
            TransportFailure: If S3 does not answer with a 200.
        """
        bucket, key = split_s3_url(url)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            metadata = e.response.get("ResponseMetadata", {})
            message = e.response.get("Error", {}).get("Message", str(e))
            raise TransportFailure(metadata.get("HTTPStatusCode"), message, url) from e

        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode", 200)
        body = response["Body"].read()
        if status != 200:
            raise TransportFailure(status, body, url)
        if body.startswith(GZIP_MAGIC):
            body = gzip.decompress(body)
        return body


def _s3_filesystem(credentials: AwsCredentials) -> fs.S3FileSystem:
    return fs.S3FileSystem(
        access_key=credentials.access_key_id,
        secret_key=credentials.secret_access_key,
        session_token=credentials.token,
        region=credentials.region,
    )


def build_lazy_partition(url: str, credentials: AwsCredentials) -> ds.Dataset:
    """Open one Parquet object as a lazily scanned dataset."""
    bucket, key = split_s3_url(url)
    return ds.dataset(f"{bucket}/{key}", format="parquet", filesystem=_s3_filesystem(credentials))


def concat_rows(datasets: Sequence[ds.Dataset]) -> ds.Dataset:
    """Union partitions into one lazy dataset. Row order across partitions is unspecified."""
    if not datasets:
        return ds.dataset(pa.table({}))
    return ds.dataset(list(datasets))
