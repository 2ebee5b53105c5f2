# src/liverc_ingest/storage/object_store.py
"""
Raw payload archive on S3/MinIO.

Every JSON body fetched from LiveRC can be kept verbatim so that a later
markup or payload change can be re-processed without hitting LiveRC again.
"""

import base64
import gzip
import hashlib
import json
import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote, urlsplit

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import (
    MINIO_ACCESS_KEY,
    MINIO_BUCKET_RAW,
    MINIO_ENDPOINT,
    MINIO_REGION,
    MINIO_SECRET_KEY,
)

logger = logging.getLogger(__name__)


class LiveRcPayloadArchive:
    """
    S3-compatible archive for raw LiveRC payloads.

    Objects are written as a ``{"metadata": ..., "data": ...}`` envelope,
    gzip-compressed with a Content-MD5 integrity header, under a Hive-style
    key derived from the source URL.
    """

    def __init__(
        self,
        bucket_name: str = MINIO_BUCKET_RAW,
        endpoint_url: str = MINIO_ENDPOINT,
        access_key: str = MINIO_ACCESS_KEY,
        secret_key: str = MINIO_SECRET_KEY,
        client: Any | None = None,
    ) -> None:
        """
        Args:
            bucket_name: Target bucket
            endpoint_url: MinIO/S3 endpoint URL
            access_key: Access key ID
            secret_key: Secret access key
            client: Optional pre-configured boto3 client
        """
        self.bucket_name = bucket_name
        self.client = client or self.create_client(endpoint_url, access_key, secret_key)

    @staticmethod
    def create_client(endpoint_url: str, access_key: str, secret_key: str) -> Any:
        """Create a boto3 S3 client configured for MinIO."""
        try:
            config = Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            )
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=MINIO_REGION,
                config=config,
            )
            logger.info(f"✅ S3 client created (Region: {MINIO_REGION})")
            return client
        except Exception as e:
            logger.error(f"❌ Failed to create S3 client: {e}")
            raise

    def bucket_exists(self) -> bool:
        """
        Returns:
            True if the bucket exists, False on 404

        Raises:
            ClientError: On permission or configuration errors
        """
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in ["404", "NoSuchBucket"]:
                return False
            logger.error(f"❌ Error checking bucket {self.bucket_name}: {e}")
            raise

    def create_bucket_if_not_exists(self) -> None:
        try:
            if not self.bucket_exists():
                self.client.create_bucket(Bucket=self.bucket_name)
                logger.info(f"✅ Bucket '{self.bucket_name}' created.")
        except ClientError as e:
            logger.error(f"❌ Failed to create bucket {self.bucket_name}: {e}")
            raise

    @staticmethod
    def build_key(source_url: str, fetched_at: datetime) -> str:
        """
        Hive-style key for a payload.

        ``https://live.liverc.com/results/spring/buggy/r1/a-main.json`` becomes
        ``liverc/host=live.liverc.com/date=2024-05-12/results/spring/buggy/r1/a-main.json``.
        """
        parts = urlsplit(source_url)
        segments = [unquote(s) for s in parts.path.split("/") if s] or ["index"]
        safe = ["".join(c if c.isalnum() or c in "-_." else "_" for c in s) for s in segments]
        if not safe[-1].endswith(".json"):
            safe[-1] = f"{safe[-1]}.json"
        return "/".join(
            ["liverc", f"host={parts.netloc.lower()}", f"date={fetched_at:%Y-%m-%d}", *safe]
        )

    def archive(self, source_url: str, payload: Any) -> None:
        """
        Store one payload.

        Raises:
            ClientError: On S3 errors
            BotoCoreError: On SDK/network errors
        """
        fetched_at = datetime.now(UTC)
        key = self.build_key(source_url, fetched_at)
        envelope = {
            "metadata": {
                "source_url": source_url,
                "fetched_at": fetched_at.isoformat(),
            },
            "data": payload,
        }

        data = gzip.compress(json.dumps(envelope, separators=(",", ":")).encode("utf-8"))
        # nosec: B303 - MD5 is used for Content-MD5 integrity, not security.
        md5_hash = hashlib.new("md5", data, usedforsecurity=False).digest()  # nosec B303

        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType="application/json",
                ContentEncoding="gzip",
                ContentMD5=base64.b64encode(md5_hash).decode("utf-8"),
                Metadata={"source_url": source_url[:1024]},
            )
            logger.debug(f"✅ Archived {key} | Size: {len(data):,} bytes")
        except ClientError as e:
            error = e.response.get("Error", {})
            logger.error(
                f"❌ S3 ClientError - Bucket: {self.bucket_name}, Key: {key}, "
                f"Code: {error.get('Code')}, Message: {error.get('Message')}"
            )
            raise
        except BotoCoreError as e:
            logger.error(f"❌ BotoCoreError - Bucket: {self.bucket_name}, Key: {key}, Error: {e}")
            raise

    def get_json(self, key: str) -> dict[str, Any]:
        """Read an archived envelope back, decompressing when needed."""
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=key)
            content = response["Body"].read()
            if response.get("ContentEncoding") == "gzip":
                content = gzip.decompress(content)
            data: dict[str, Any] = json.loads(content.decode("utf-8"))
            return data
        except ClientError as e:
            logger.error(f"❌ Failed to get object {key}: {e}")
            raise
