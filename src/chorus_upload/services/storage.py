# src/chorus_upload/services/storage.py
"""Content-addressed object storage for uploaded files."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from chorus_upload.core.settings import Settings
from chorus_upload.utils.hash import content_address

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when the object store rejects or fails a write."""


@dataclass(frozen=True)
class StoredObject:
    """Where an upload ended up."""

    address: str
    url: str


class ContentStore:
    """Write payloads to a bucket under their SHA-256 address.

    Writes are single ``put_object`` calls, so an object is either fully
    visible or absent. Re-uploading identical bytes overwrites the same key.
    """

    def __init__(self, client: Any, bucket: str, public_base_url: str) -> None:
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, config: Settings) -> ContentStore:
        client = boto3.client(
            "s3",
            region_name=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
        )
        return cls(client, config.s3_bucket, config.public_base_url)

    def public_url(self, address: str, filename: str) -> str:
        return f"{self.public_base_url}/{address}/{quote(filename)}"

    async def put(self, data: bytes, filename: str, *, address: str | None = None) -> StoredObject:
        """Persist ``data`` and return its address and public URL.

        Args:
            data: Payload bytes.
            filename: Declared filename, only used for the returned URL.
            address: Precomputed content address; computed from ``data`` if omitted.

        Raises:
            StoreError: If the underlying store fails.
        """
        key = address or content_address(data)
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreError(f"Error uploading {key}: {exc}") from exc

        logger.info("Uploaded '%s' to s3://%s/%s", filename, self.bucket, key)
        return StoredObject(address=key, url=self.public_url(key, filename))
