"""Signed HTTP transport for the Athena JSON API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

if TYPE_CHECKING:
    from athena_query.aws.credentials import AwsCredentials


@dataclass
class TransportResponse:
    """Status, headers and raw body of one HTTP exchange."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


class Transport(Protocol):
    """Sends one signed request and returns the raw response."""

    def sign_and_send(
        self, method: str, url: str, headers: dict[str, str], body: bytes
    ) -> TransportResponse: ...


class SigV4Transport:
    """Sign requests with AWS Signature Version 4 and send them with httpx."""

    def __init__(
        self,
        credentials: AwsCredentials,
        service: str = "athena",
        timeout: float = 60.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._credentials = credentials
        self._service = service
        self._client = client or httpx.Client(timeout=timeout)

    def _sign(self, method: str, url: str, headers: dict[str, str], body: bytes) -> dict[str, str]:
        request = AWSRequest(method=method, url=url, data=body, headers=headers)
        signer = SigV4Auth(
            Credentials(
                self._credentials.access_key_id,
                self._credentials.secret_access_key,
                self._credentials.token,
            ),
            self._service,
            self._credentials.region,
        )
        signer.add_auth(request)
        return {key.lower(): value for key, value in request.headers.items()}

    def sign_and_send(
        self, method: str, url: str, headers: dict[str, str], body: bytes
    ) -> TransportResponse:
        signed = self._sign(method, url, headers, body)
        response = self._client.request(method, url, headers=signed, content=body)
        return TransportResponse(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    def close(self) -> None:
        self._client.close()
