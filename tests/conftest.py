"""
Pytest configuration and fixtures.
"""

import asyncio
import io
from typing import AsyncGenerator
from urllib.parse import quote, urlencode

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError, NoCredentialsError

from blobstore.core.config import Settings
from blobstore.storage.driver import URL_VALIDITY_SECONDS, Driver
from blobstore.storage.local import DiskStore
from blobstore.storage.presigned import PresignedURLCache
from blobstore.storage.s3 import S3Store

CACHE_TTL_SECONDS = URL_VALIDITY_SECONDS - 5 * 60


def client_error(code: str, operation: str, status: int = 400) -> ClientError:
    """Build a botocore ClientError the way the S3 client raises it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


# =============================================================================
# In-memory S3 client
# =============================================================================


class FakeBody:
    """Object body returned by get_object."""

    def __init__(self, data: bytes) -> None:
        self._buf = io.BytesIO(data)
        self.closed = False

    async def read(self, amt: int | None = None) -> bytes:
        return self._buf.read() if amt is None else self._buf.read(amt)

    def close(self) -> None:
        self.closed = True

    async def __aenter__(self) -> "FakeBody":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class FakePaginator:
    def __init__(self, client: "FakeS3Client") -> None:
        self.client = client

    def paginate(self, Bucket: str, PaginationConfig: dict | None = None):
        page_size = (PaginationConfig or {}).get("PageSize", 1000)
        self.client.page_sizes.append(page_size)
        return self._pages(page_size)

    async def _pages(self, page_size: int):
        keys = list(self.client.objects)
        if not keys:
            yield {"KeyCount": 0}
            return
        for i in range(0, len(keys), page_size):
            yield {
                "Contents": [
                    {"Key": key, "Size": len(self.client.objects[key])}
                    for key in keys[i : i + page_size]
                ]
            }


class FakeS3Client:
    """Subset of the aioboto3 S3 client API backed by a dict."""

    def __init__(self, endpoint: str = "https://cdn.example.com") -> None:
        self.endpoint = endpoint
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.uploads: dict[str, dict] = {}
        self.aborted: list[str] = []
        self.page_sizes: list[int] = []
        self.presign_calls: list[dict] = []
        self.delete_calls: list[str] = []
        self.closed = False

        # Failure/latency injection
        self.put_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.presign_error: Exception | None = None
        self.presign_delay = 0.0
        self.get_delay = 0.0

    async def head_bucket(self, Bucket: str) -> dict:
        return {}

    async def put_object(
        self,
        Bucket: str,
        Key: str,
        Body: bytes,
        ContentType: str | None = None,
        IfNoneMatch: str | None = None,
    ) -> dict:
        if self.put_error is not None:
            raise self.put_error
        if IfNoneMatch == "*" and Key in self.objects:
            raise client_error("PreconditionFailed", "PutObject", 412)
        self.objects[Key] = bytes(Body)
        if ContentType:
            self.content_types[Key] = ContentType
        return {"ETag": '"etag"'}

    async def get_object(self, Bucket: str, Key: str) -> dict:
        if self.get_delay:
            await asyncio.sleep(self.get_delay)
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject", 404)
        return {"Body": FakeBody(self.objects[Key])}

    async def head_object(self, Bucket: str, Key: str) -> dict:
        if Key not in self.objects:
            raise client_error("404", "HeadObject", 404)
        return {"ContentLength": len(self.objects[Key])}

    async def delete_object(self, Bucket: str, Key: str) -> dict:
        self.delete_calls.append(Key)
        if self.delete_error is not None:
            raise self.delete_error
        self.objects.pop(Key, None)
        return {}

    async def create_multipart_upload(
        self, Bucket: str, Key: str, ContentType: str | None = None
    ) -> dict:
        upload_id = f"upload-{len(self.uploads) + 1}"
        self.uploads[upload_id] = {"key": Key, "parts": {}}
        return {"UploadId": upload_id}

    async def upload_part(
        self, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict:
        self.uploads[UploadId]["parts"][PartNumber] = bytes(Body)
        return {"ETag": f'"part-{PartNumber}"'}

    async def complete_multipart_upload(
        self,
        Bucket: str,
        Key: str,
        UploadId: str,
        MultipartUpload: dict,
        IfNoneMatch: str | None = None,
    ) -> dict:
        if IfNoneMatch == "*" and Key in self.objects:
            raise client_error("PreconditionFailed", "CompleteMultipartUpload", 412)
        parts = self.uploads.pop(UploadId)["parts"]
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        self.objects[Key] = b"".join(parts[n] for n in numbers)
        return {"ETag": '"multipart"'}

    async def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> dict:
        self.uploads.pop(UploadId, None)
        self.aborted.append(UploadId)
        return {}

    def get_paginator(self, operation_name: str) -> FakePaginator:
        assert operation_name == "list_objects_v2"
        return FakePaginator(self)

    async def generate_presigned_url(
        self, ClientMethod: str, Params: dict | None = None, ExpiresIn: int = 3600
    ) -> str:
        self.presign_calls.append(
            {"method": ClientMethod, "params": dict(Params or {}), "expires_in": ExpiresIn}
        )
        if self.presign_delay:
            await asyncio.sleep(self.presign_delay)
        if self.presign_error is not None:
            raise self.presign_error

        query = {"X-Amz-Expires": ExpiresIn, "X-Sig": f"sig{len(self.presign_calls)}"}
        if "ResponseContentType" in Params:
            query["response-content-type"] = Params["ResponseContentType"]
        return f"{self.endpoint}/{Params['Bucket']}/{quote(Params['Key'])}?{urlencode(query)}"


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        storage_backend="local",
        storage_local_base_path=str(tmp_path / "storage"),
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def presign_failure() -> Exception:
    return NoCredentialsError()


@pytest_asyncio.fixture
async def disk_store(tmp_path) -> AsyncGenerator[DiskStore, None]:
    """Open a disk store in a temporary directory."""
    store = await DiskStore.open(tmp_path / "store")
    yield store
    await store.close()


@pytest.fixture
def s3_store(fake_s3: FakeS3Client) -> S3Store:
    return S3Store(fake_s3, "media")


@pytest.fixture
def presigned_cache(clock: FakeClock) -> PresignedURLCache:
    return PresignedURLCache(ttl=CACHE_TTL_SECONDS, capacity=1000, clock=clock)


@pytest.fixture
def s3_driver(s3_store: S3Store, presigned_cache: PresignedURLCache) -> Driver:
    """S3 driver with proxying disabled and an unstarted URL cache."""
    return Driver(storage=s3_store, bucket="media", presigned_cache=presigned_cache)


@pytest.fixture
def local_driver(disk_store: DiskStore) -> Driver:
    return Driver(storage=disk_store)


@pytest_asyncio.fixture(params=["local", "s3"])
async def driver(request, tmp_path, s3_driver: Driver) -> AsyncGenerator[Driver, None]:
    """Driver for each supported backend."""
    if request.param == "s3":
        yield s3_driver
        return

    store = await DiskStore.open(tmp_path / "driver-store")
    yield Driver(storage=store)
    await store.close()
