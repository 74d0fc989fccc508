from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import boto3

from berthauth.logging import get_logger
from berthauth.service.errors import ConfigurationError

logger = get_logger(__name__)


class SecretSource(Protocol):
    """Remote store holding the key-set JSON document."""

    async def fetch(self, secret_id: str) -> str: ...


class AwsSecretsManagerSource:
    """Read key sets from AWS Secrets Manager.

    boto3 is synchronous, so the call runs in a worker thread to keep the
    event loop free during startup and background refreshes.
    """

    def __init__(self, *, region_name: Optional[str] = None, client: Any = None) -> None:
        self._client = (
            client
            if client is not None
            else boto3.client("secretsmanager", region_name=region_name)
        )

    async def fetch(self, secret_id: str) -> str:
        response = await asyncio.to_thread(self._client.get_secret_value, SecretId=secret_id)
        secret = response.get("SecretString")
        if secret is None:
            binary = response.get("SecretBinary")
            if not binary:
                raise ConfigurationError(f"secret '{secret_id}' has no value")
            secret = bytes(binary).decode("utf-8")
        logger.info(
            "secret_fetched",
            secret_id=secret_id,
            version_id=response.get("VersionId"),
        )
        return secret


__all__ = ["SecretSource", "AwsSecretsManagerSource"]
