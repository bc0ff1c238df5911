"""
S3 service module for PDF uploads and Markdown artifacts.

This module provides functionality for:
- Generating presigned PUT URLs so clients upload PDFs directly to storage
- Reading uploaded PDFs with a size ceiling
- Writing conversion artifacts
- Converting between (bucket, key) pairs and ``s3://bucket/key`` locators

It talks to S3 or any S3-compatible store (MinIO) through boto3. All
methods are blocking; async callers run them in a worker thread.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple
from urllib.parse import urlsplit

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .configuration import MAX_PDF_BYTES, Settings, StorageSettings
from .errors import ConversionFailure, PayloadTooLarge

logger = logging.getLogger(__name__)

LOCATOR_SCHEME = "s3"


def to_locator(bucket: str, key: str) -> str:
    """
    Build the storage locator recorded on jobs.

    Example:
        >>> to_locator("pdf2html-storage", "output/abc/report.md")
        "s3://pdf2html-storage/output/abc/report.md"
    """
    return f"{LOCATOR_SCHEME}://{bucket}/{key}"


def parse_locator(locator: str) -> Tuple[str, str]:
    """
    Split an ``s3://bucket/key`` locator into its bucket and key.

    Raises:
        ValueError: If the locator is not an s3 locator with both parts
    """
    parts = urlsplit(locator)
    key = parts.path.lstrip("/")
    if parts.scheme != LOCATOR_SCHEME or not parts.netloc or not key:
        raise ValueError(f"Not a storage locator: {locator}")
    return parts.netloc, key


def _get_s3_client(options: StorageSettings):
    """
    Create an S3 client for the configured endpoint.

    Path-style addressing and SigV4 are required by MinIO and accepted by S3.
    Explicit credentials are only passed when configured, so the default
    boto3 credential chain still applies on AWS.
    """
    config = Config(
        signature_version="s3v4",
        s3={"addressing_style": "path"},
        connect_timeout=options.connect_timeout_seconds,
        read_timeout=options.read_timeout_seconds,
        retries={"max_attempts": 3, "mode": "standard"},
    )
    kwargs = {"region_name": options.region, "config": config}
    if options.endpoint_url:
        kwargs["endpoint_url"] = options.endpoint_url
    if options.access_key and options.secret_key:
        kwargs["aws_access_key_id"] = options.access_key
        kwargs["aws_secret_access_key"] = options.secret_key
    return boto3.client("s3", **kwargs)


class S3ObjectStorage:
    """
    Object storage backed by S3 or MinIO.

    Attributes:
        bucket: Default bucket for uploads and artifacts
        presign_expiry_seconds: Lifetime of presigned upload URLs
    """

    def __init__(self, options: StorageSettings, client=None) -> None:
        self.options = options
        self.bucket = options.bucket
        self.presign_expiry_seconds = options.presign_expiry_seconds
        self._client = client or _get_s3_client(options)

    def ensure_bucket(self) -> None:
        """
        Create the default bucket if it does not exist yet.

        Note:
            Only attempted when ``storage.create_bucket`` is enabled; on AWS
            buckets are usually provisioned separately.
        """
        if not self.options.create_bucket:
            return
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("404", "NoSuchBucket", "NotFound"):
                raise
        logger.info(f"Creating bucket {self.bucket}")
        self._client.create_bucket(Bucket=self.bucket)

    def issue_presigned_upload_url(
        self,
        bucket: str,
        key: str,
        content_type: str,
        expires_in: Optional[int] = None,
    ) -> str:
        """
        Generate a presigned URL for uploading a file to storage.

        Args:
            bucket: Target bucket
            key: Object key the client must upload to
            content_type: Content type the client must send with the PUT
            expires_in: URL lifetime in seconds (default: ``presign_expiry_seconds``)

        Returns:
            Presigned PUT URL
        """
        expiration = expires_in or self.presign_expiry_seconds
        url = self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expiration,
        )
        logger.info(f"Generated presigned upload URL for {key} (expires in {expiration}s)")
        return url

    def get_object(self, bucket: str, key: str, max_bytes: int = MAX_PDF_BYTES) -> bytes:
        """
        Read an object fully into memory.

        Raises:
            PayloadTooLarge: If the object is larger than ``max_bytes``
            ConversionFailure: If the object does not exist
        """
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                raise ConversionFailure(f"Object not found: {to_locator(bucket, key)}") from e
            raise

        size = response.get("ContentLength")
        if size is not None and size > max_bytes:
            response["Body"].close()
            raise PayloadTooLarge(f"Object is {size} bytes, limit is {max_bytes}")

        data = response["Body"].read(max_bytes + 1)
        if len(data) > max_bytes:
            raise PayloadTooLarge(f"Object exceeds the {max_bytes} byte limit")
        return data

    def get_text(self, bucket: str, key: str) -> Optional[str]:
        """Read a UTF-8 text object, or None when it does not exist."""
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                logger.warning(f"Object not found: {to_locator(bucket, key)}")
                return None
            raise
        return response["Body"].read().decode("utf-8")

    def put_object(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """
        Write an object, replacing any existing object at the same key.

        Returns:
            The ``s3://bucket/key`` locator of the written object
        """
        logger.info(f"Uploading {len(data)} bytes to s3://{bucket}/{key}")
        self._client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        return to_locator(bucket, key)


def build_storage(settings: Settings) -> S3ObjectStorage:
    return S3ObjectStorage(settings.storage)
