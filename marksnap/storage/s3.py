"""S3-compatible object store (AWS S3, Cloudflare R2, MinIO)."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import boto3
from botocore.exceptions import ClientError

from .base import ObjectInfo, StoredObject

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _MISSING_CODES


class S3ObjectStore:
    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ) -> None:
        if not bucket:
            raise ValueError("SNAPSHOT_S3_BUCKET is required for the s3 storage backend")
        self.bucket = bucket
        cleaned = prefix.strip("/")
        self.prefix = f"{cleaned}/" if cleaned else ""
        if client is None:
            logger.info("Connecting to S3 bucket %s (endpoint=%s)", bucket, endpoint_url or "aws")
            client = boto3.client("s3", region_name=region, endpoint_url=endpoint_url)
        self.client = client

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def put(self, key, data, *, content_type, metadata=None) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=self._key(key),
            Body=data,
            ContentType=content_type,
            Metadata={k: str(v) for k, v in (metadata or {}).items()},
        )

    def get(self, key: str) -> Optional[StoredObject]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise
        body = response["Body"].read()
        return StoredObject(
            key=key,
            size=len(body),
            content_type=response.get("ContentType") or "application/octet-stream",
            metadata=dict(response.get("Metadata") or {}),
            data=body,
        )

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=self._key(key))
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength") or 0),
            content_type=response.get("ContentType") or "application/octet-stream",
            metadata=dict(response.get("Metadata") or {}),
        )

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self._key(key))

    def list(self, prefix: str) -> List[str]:
        paginator = self.client.get_paginator("list_objects_v2")
        keys: List[str] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self._key(prefix)):
            for item in page.get("Contents") or []:
                raw: str = item["Key"]
                keys.append(raw[len(self.prefix):])
        return keys
