"""
S3/MinIO backend store.

Implements BackendStore for Amazon S3 and S3-compatible services (MinIO, etc.).
Writes are conditional (If-None-Match: *) so existing objects are never
overwritten.
"""

import mimetypes
from contextlib import AsyncExitStack
from typing import Any

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from blobstore.core.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    PresignError,
    StorageError,
)
from blobstore.core.logging import get_logger
from blobstore.storage.base import BackendStore, ReadStream, StreamSource, WalkFn, iter_source

logger = get_logger(__name__)

# S3 minimum multipart chunk size (5 MiB)
DEFAULT_PUT_CHUNK_SIZE = 5 * 1024 * 1024

# Keys requested per list_objects_v2 page
DEFAULT_LIST_SIZE = 200

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})
ALREADY_EXISTS_CODES = frozenset(
    {"PreconditionFailed", "ConditionalRequestConflict", "412"}
)


def _error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return str(e.response.get("Error", {}).get("Code", ""))
    return ""


def build_endpoint_url(endpoint: str | None, secure: bool) -> str | None:
    """
    Build a client endpoint URL from a configured endpoint.

    Args:
        endpoint: Either "host[:port]" or a full URL. None means AWS.
        secure: Whether to use TLS when endpoint has no scheme.

    Returns:
        Endpoint URL, or None to use the AWS default.
    """
    if not endpoint:
        return None
    if "://" in endpoint:
        return endpoint
    scheme = "https" if secure else "http"
    return f"{scheme}://{endpoint}"


class S3Store(BackendStore):
    """S3/MinIO storage implementation."""

    def __init__(
        self,
        client: Any,
        bucket_name: str,
        exit_stack: AsyncExitStack | None = None,
        put_chunk_size: int = DEFAULT_PUT_CHUNK_SIZE,
        list_size: int = DEFAULT_LIST_SIZE,
    ) -> None:
        """
        Initialize S3 store around an open client. Use S3Store.open() instead.

        Args:
            client: Open aioboto3 S3 client.
            bucket_name: S3 bucket name.
            exit_stack: Stack that closes the client on close().
            put_chunk_size: Multipart part size for streamed writes.
            list_size: Page size for key enumeration.
        """
        self.client = client
        self.bucket_name = bucket_name
        self.put_chunk_size = put_chunk_size
        self.list_size = list_size
        self._exit_stack = exit_stack

    @classmethod
    async def open(
        cls,
        endpoint: str | None,
        bucket_name: str,
        access_key: str,
        secret_key: str,
        secure: bool = True,
        region: str = "us-east-1",
        max_attempts: int = 3,
    ) -> "S3Store":
        """
        Open a client against the bucket and check that the bucket is reachable.

        Args:
            endpoint: Custom endpoint (for MinIO/self-hosted), or None for AWS.
            bucket_name: S3 bucket name.
            access_key: AWS access key ID.
            secret_key: AWS secret access key.
            secure: Use TLS.
            region: AWS region.
            max_attempts: Max attempts made by the botocore transport.

        Raises:
            StorageError: If the bucket can't be reached.
        """
        endpoint_url = build_endpoint_url(endpoint, secure)

        session = aioboto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        client_config = BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path" if endpoint_url else "auto"},
            retries={"max_attempts": max_attempts, "mode": "standard"},
        )

        exit_stack = AsyncExitStack()
        try:
            client = await exit_stack.enter_async_context(
                session.client(
                    "s3",
                    endpoint_url=endpoint_url,
                    use_ssl=secure,
                    config=client_config,
                )
            )
            await client.head_bucket(Bucket=bucket_name)
        except (ClientError, BotoCoreError) as e:
            await exit_stack.aclose()
            raise StorageError(
                message=f"Failed to open S3 storage: {e}",
                details={"endpoint": endpoint_url, "bucket": bucket_name},
            ) from e
        except BaseException:
            await exit_stack.aclose()
            raise

        return cls(client, bucket_name, exit_stack=exit_stack)

    def _storage_error(self, e: Exception, key: str, action: str) -> StorageError:
        """Translate a botocore error into a storage error."""
        code = _error_code(e)
        if code in NOT_FOUND_CODES:
            return NotFoundError(key)
        if code in ALREADY_EXISTS_CODES:
            return AlreadyExistsError(key)
        return StorageError(
            message=f"Failed to {action} on S3: {e}",
            details={"key": key, "bucket": self.bucket_name},
        )

    def _get_content_type(self, key: str) -> str:
        """Guess content type from key extension."""
        content_type, _ = mimetypes.guess_type(key)
        return content_type or "application/octet-stream"

    async def read_bytes(self, key: str) -> bytes:
        """Download object from S3."""
        try:
            response = await self.client.get_object(Bucket=self.bucket_name, Key=key)
            async with response["Body"] as stream:
                return await stream.read()
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(e, key, "read") from e

    async def read_stream(self, key: str) -> ReadStream:
        """Open the object body for streaming."""
        try:
            response = await self.client.get_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(e, key, "read") from e

        return ReadStream(key, response["Body"])

    async def write_bytes(self, key: str, value: bytes) -> int:
        """Upload object unless it already exists."""
        try:
            await self.client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=value,
                ContentType=self._get_content_type(key),
                IfNoneMatch="*",
            )
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(e, key, "write") from e

        return len(value)

    async def write_stream(self, key: str, source: StreamSource) -> int:
        """
        Upload object from a stream unless it already exists.

        Payloads that fit in a single chunk are sent with one put_object.
        Larger payloads go through a multipart upload, which is aborted if
        anything fails before it completes.
        """
        chunk_size = self.put_chunk_size
        buffer = bytearray()
        parts: list[dict[str, Any]] = []
        upload_id: str | None = None
        written = 0

        try:
            async for chunk in iter_source(source, chunk_size):
                buffer += chunk
                written += len(chunk)

                while len(buffer) >= chunk_size:
                    if upload_id is None:
                        response = await self.client.create_multipart_upload(
                            Bucket=self.bucket_name,
                            Key=key,
                            ContentType=self._get_content_type(key),
                        )
                        upload_id = response["UploadId"]

                    part = bytes(buffer[:chunk_size])
                    del buffer[:chunk_size]
                    parts.append(await self._upload_part(key, upload_id, len(parts) + 1, part))

            if upload_id is None:
                await self.client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=bytes(buffer),
                    ContentType=self._get_content_type(key),
                    IfNoneMatch="*",
                )
                return written

            if buffer:
                parts.append(
                    await self._upload_part(key, upload_id, len(parts) + 1, bytes(buffer))
                )

            await self.client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
                IfNoneMatch="*",
            )
            return written

        except BaseException as e:
            if upload_id is not None:
                await self._abort_upload(key, upload_id)
            if isinstance(e, (ClientError, BotoCoreError)):
                raise self._storage_error(e, key, "write") from e
            raise

    async def _upload_part(
        self, key: str, upload_id: str, part_number: int, data: bytes
    ) -> dict[str, Any]:
        response = await self.client.upload_part(
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return {"PartNumber": part_number, "ETag": response["ETag"]}

    async def _abort_upload(self, key: str, upload_id: str) -> None:
        try:
            await self.client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "s3_multipart_abort_failed",
                key=key,
                bucket=self.bucket_name,
                upload_id=upload_id,
                error=str(e),
            )

    async def remove(self, key: str) -> None:
        """Delete object from S3."""
        try:
            # Check if exists first
            await self.client.head_object(Bucket=self.bucket_name, Key=key)
            await self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._storage_error(e, key, "delete") from e

    async def stat(self, key: str) -> bool:
        """Check if object exists in S3."""
        try:
            await self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise self._storage_error(e, key, "stat") from e

    async def walk_keys(self, walk_fn: WalkFn) -> None:
        """Walk every object key in the bucket."""
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            async for page in paginator.paginate(
                Bucket=self.bucket_name,
                PaginationConfig={"PageSize": self.list_size},
            ):
                for obj in page.get("Contents", []):
                    await walk_fn(obj["Key"])
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                message=f"Failed to list objects: {e}",
                details={"bucket": self.bucket_name},
            ) from e

    async def close(self) -> None:
        """Close the S3 client."""
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
            self._exit_stack = None

    def supports_presigned_urls(self) -> bool:
        return True

    async def presigned_get_object(
        self,
        key: str,
        expires_in: int,
        response_content_type: str | None = None,
    ) -> str:
        """Generate presigned GET URL for direct access."""
        params = {"Bucket": self.bucket_name, "Key": key}
        if response_content_type:
            params["ResponseContentType"] = response_content_type

        try:
            return await self.client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise PresignError(
                message=f"Failed to generate presigned URL: {e}",
                details={"key": key, "bucket": self.bucket_name},
            ) from e
