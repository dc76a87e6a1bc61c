"""
Object store access.

``ObjectStore`` is the contract the orchestrator depends on. ``S3ObjectStore``
implements it on top of boto3 for any S3-compatible service (AWS S3,
Cloudflare R2, MinIO). boto3 is blocking, so every call is pushed to a worker
thread to keep the event loop free while a wave is in flight.
"""

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from media_tagger.errors import StorageError
from media_tagger.models import ListPage, MediaObject, StoredObject


if TYPE_CHECKING:
    from collections.abc import Callable


MAX_PAGE_SIZE = 1000
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


class ObjectStore(Protocol):
    """Minimal key/value blob store with cursor-based listing."""

    async def list_page(self, *, prefix: str, limit: int, cursor: str | None) -> ListPage: ...

    async def head(self, key: str) -> MediaObject | None: ...

    async def get(self, key: str) -> StoredObject | None: ...

    async def put(self, key: str, body: bytes, *, content_type: str) -> None: ...


def _is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in NOT_FOUND_CODES


def _as_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.fromtimestamp(0, tz=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class S3ObjectStore:
    """ObjectStore backed by a boto3 S3 client bound to one bucket."""

    def __init__(self, client: Any, bucket: str) -> None:  # noqa: ANN401
        self._client = client
        self.bucket = bucket

    @classmethod
    def from_settings(
        cls,
        bucket: str,
        *,
        endpoint_url: str | None = None,
        region: str | None = None,
        max_pool_connections: int = 50,
    ) -> "S3ObjectStore":
        """
        Build a store from connection settings.

        Credentials come from the standard boto3 chain (environment, profile, instance role).
        ``endpoint_url`` selects a non-AWS service, e.g.
        ``https://<account>.r2.cloudflarestorage.com`` for R2.
        """
        config = Config(
            max_pool_connections=max_pool_connections,
            retries={"max_attempts": 3, "mode": "standard"},
        )
        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region or None,
            config=config,
        )
        logger.debug(
            "s3_client_created",
            bucket=bucket,
            endpoint_url=endpoint_url,
            region=region,
        )
        return cls(client, bucket)

    async def _call(self, operation: str, fn: "Callable[..., Any]", **kwargs: Any) -> Any:  # noqa: ANN401
        try:
            return await asyncio.to_thread(fn, Bucket=self.bucket, **kwargs)
        except BotoCoreError as exc:
            msg = f"{operation} failed: {exc}"
            raise StorageError(msg) from exc

    async def list_page(self, *, prefix: str, limit: int, cursor: str | None) -> ListPage:
        kwargs: dict[str, Any] = {"Prefix": prefix, "MaxKeys": min(limit, MAX_PAGE_SIZE)}
        if cursor:
            kwargs["ContinuationToken"] = cursor
        try:
            resp = await self._call("list_objects_v2", self._client.list_objects_v2, **kwargs)
        except ClientError as exc:
            msg = f"list_objects_v2 failed for prefix {prefix!r}: {exc}"
            raise StorageError(msg) from exc

        objects = [
            MediaObject(
                key=entry["Key"],
                size=int(entry.get("Size") or 0),
                uploaded_at=_as_utc(entry.get("LastModified")),
            )
            for entry in resp.get("Contents") or []
            if entry.get("Key")
        ]
        truncated = bool(resp.get("IsTruncated"))
        return ListPage(
            objects=objects,
            truncated=truncated,
            cursor=resp.get("NextContinuationToken") if truncated else None,
        )

    async def head(self, key: str) -> MediaObject | None:
        try:
            resp = await self._call("head_object", self._client.head_object, Key=key)
        except ClientError as exc:
            if _is_not_found(exc):
                return None
            msg = f"head_object failed for {key}: {exc}"
            raise StorageError(msg) from exc
        return MediaObject(
            key=key,
            size=int(resp.get("ContentLength") or 0),
            uploaded_at=_as_utc(resp.get("LastModified")),
            content_type=resp.get("ContentType"),
        )

    async def get(self, key: str) -> StoredObject | None:
        try:
            resp = await self._call("get_object", self._client.get_object, Key=key)
            body = await asyncio.to_thread(resp["Body"].read)
        except ClientError as exc:
            if _is_not_found(exc):
                return None
            msg = f"get_object failed for {key}: {exc}"
            raise StorageError(msg) from exc
        except BotoCoreError as exc:
            msg = f"reading body of {key} failed: {exc}"
            raise StorageError(msg) from exc
        return StoredObject(
            key=key,
            body=body,
            size=int(resp.get("ContentLength") or len(body)),
            uploaded_at=_as_utc(resp.get("LastModified")),
            content_type=resp.get("ContentType"),
        )

    async def put(self, key: str, body: bytes, *, content_type: str) -> None:
        try:
            await self._call(
                "put_object",
                self._client.put_object,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except ClientError as exc:
            msg = f"put_object failed for {key}: {exc}"
            raise StorageError(msg) from exc
