"""
S3 service module for order artifacts and stored book data.

This module provides functionality for:
- Uploading rendered PDFs to S3 and returning vendor-fetchable URLs
- Storing the book data JSON submitted before checkout
- Fetching stored book data back by URL during fulfillment

The bucket and region come from ``StorageSettings``. Uploads are keyed by
order, so storing the same key twice overwrites the earlier object.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, Dict, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from .configuration import StorageSettings
from .errors import ConfigurationMissing, DataNotFound, StorageError

logger = logging.getLogger(__name__)


class S3ArtifactStore:
    """
    Upload artifacts to a single S3 bucket.

    The boto3 client is created lazily on first use; pass ``client`` to
    inject one (tests, custom endpoints).
    """

    def __init__(self, settings: StorageSettings, client: Any = None) -> None:
        if not settings.is_configured:
            raise ConfigurationMissing("storage", "S3_BUCKET_NAME not configured")
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.settings.region)
        return self._client

    def store(self, key: str, data: bytes, content_type: str) -> str:
        """
        Upload ``data`` under ``key`` and return a durable URL for it.

        Args:
            key: S3 object key (path within the bucket)
            data: Object body
            content_type: MIME type recorded on the object

        Returns:
            A public URL when ``public_base_url`` is configured, otherwise a
            presigned GET URL valid for ``url_expiration`` seconds

        Raises:
            StorageError: If the upload or URL signing fails
        """
        bucket = self.settings.bucket
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{bucket}/{key}")
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise StorageError(f"S3 upload failed for {key}: {e}", stage="uploading") from e

        return self.url_for(key)

    def url_for(self, key: str) -> str:
        if self.settings.public_base_url:
            return f"{self.settings.public_base_url.rstrip('/')}/{key}"
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.settings.bucket, "Key": key},
                ExpiresIn=self.settings.url_expiration,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned URL for {key}: {e}")
            raise StorageError(f"Failed to generate presigned URL for {key}: {e}") from e
        logger.info(f"Generated presigned URL for {key} (expires in {self.settings.url_expiration}s)")
        return url


class BookDataStore:
    """
    Store and fetch book data documents.

    Documents are written through an ``S3ArtifactStore``; fetching works for
    any URL the store handed out (presigned or public).
    """

    def __init__(
        self,
        settings: StorageSettings,
        artifacts: Optional[S3ArtifactStore] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings
        self._artifacts = artifacts
        self._http = http_client

    def store(self, book_data: Dict[str, Any]) -> str:
        if self._artifacts is None:
            raise ConfigurationMissing("storage", "Blob storage is not set up yet.")
        key = f"{self.settings.book_data_prefix}/{int(time.time() * 1000)}-{secrets.token_hex(3)}.json"
        body = json.dumps(book_data).encode("utf-8")
        return self._artifacts.store(key, body, "application/json")

    def fetch(self, url: str) -> Dict[str, Any]:
        """
        Download a stored book data document.

        Raises:
            DataNotFound: On any non-200 response, transport error or invalid JSON
        """
        try:
            if self._http is not None:
                response = self._http.get(url, timeout=self.settings.fetch_timeout)
            else:
                response = httpx.get(url, timeout=self.settings.fetch_timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            raise DataNotFound(f"Failed to fetch book data: {e}", stage="fetching") from e

        if response.status_code != 200:
            raise DataNotFound(f"Failed to fetch book data: {response.status_code}", stage="fetching")

        try:
            payload = response.json()
        except ValueError as e:
            raise DataNotFound(f"Book data is not valid JSON: {e}", stage="fetching") from e
        if not isinstance(payload, dict):
            raise DataNotFound("Book data must be a JSON object", stage="fetching")
        return payload
