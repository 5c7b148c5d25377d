"""AWS credential resolution.

Explicit credentials (from settings or the caller) are merged field by field
over whatever an injectable provider resolves from the ambient environment.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from botocore.session import get_session
from pydantic import BaseModel, ConfigDict

from athena_query.observability import get_logger

if TYPE_CHECKING:
    from athena_query.config import AwsConfig

logger = get_logger(__name__)

CREDENTIAL_FIELDS = ("access_key_id", "secret_access_key", "token", "region")


class AwsCredentials(BaseModel):
    """Credentials and region used to sign Athena and S3 requests."""

    model_config = ConfigDict(frozen=True)

    access_key_id: str | None = None
    secret_access_key: str | None = None
    token: str | None = None
    region: str | None = None

    @classmethod
    def from_config(cls, config: AwsConfig) -> AwsCredentials:
        return cls(**{name: getattr(config, name) or None for name in CREDENTIAL_FIELDS})

    @property
    def is_complete(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.region)


class CredentialProvider(Protocol):
    """Source of ambient credentials."""

    def resolve(self) -> AwsCredentials | None: ...


class BotocoreCredentialProvider:
    """Resolve credentials through botocore's default provider chain.

    Covers environment variables, shared credential/config files, SSO and
    instance or container roles.
    """

    def __init__(self, profile: str | None = None) -> None:
        self._profile = profile

    def resolve(self) -> AwsCredentials | None:
        session = get_session()
        if self._profile:
            session.set_config_variable("profile", self._profile)

        credentials = session.get_credentials()
        region = session.get_config_variable("region")
        if credentials is None and region is None:
            logger.debug("no ambient aws credentials found")
            return None

        frozen = credentials.get_frozen_credentials() if credentials is not None else None
        return AwsCredentials(
            access_key_id=frozen.access_key if frozen else None,
            secret_access_key=frozen.secret_key if frozen else None,
            token=frozen.token if frozen else None,
            region=region,
        )


def merge_credentials(
    explicit: AwsCredentials | None,
    provider: CredentialProvider | None = None,
) -> AwsCredentials:
    """Merge explicit credentials over the provider's, explicit winning per field.

    Args:
        explicit: Caller or settings supplied credentials. Empty values count as unset.
        provider: Ambient credential source, consulted once.

    Returns:
        The merged credentials.
    """
    ambient = provider.resolve() if provider is not None else None
    merged = {}
    for name in CREDENTIAL_FIELDS:
        value = getattr(explicit, name, None) if explicit is not None else None
        if not value and ambient is not None:
            value = getattr(ambient, name)
        merged[name] = value or None
    return AwsCredentials(**merged)
