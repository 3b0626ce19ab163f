import hashlib
import os
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Iterator

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from uploader.config import Settings
from uploader.errors import (
    ObjectNotFound,
    PermanentBackendError,
    RangeNotSatisfiable,
    TransientBackendError,
)
from uploader.metrics import backend_call_latency_seconds

DEFAULT_READ_CHUNK_SIZE = 64 * 1024

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_TRANSIENT_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
}
_TRANSIENT_BOTOCORE = (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    content_type: str | None = None
    etag: str | None = None


@dataclass(frozen=True)
class ListingPage:
    entries: list[str] = field(default_factory=list)
    continuation_token: str | None = None


class ObjectStream:
    """Incrementally readable object body.

    Iterate it for chunks, or call `read(n)`. Only the chunk currently being
    consumed is held in memory.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        content_length: int | None = None,
        content_type: str | None = None,
        close: Callable[[], None] | None = None,
    ) -> None:
        self._chunks = iter(chunks)
        self._buffer = b""
        self._close = close
        self.closed = False
        self.content_length = content_length
        self.content_type = content_type

    def __iter__(self) -> Iterator[bytes]:
        if self._buffer:
            pending, self._buffer = self._buffer, b""
            yield pending
        for chunk in self._chunks:
            if chunk:
                yield chunk

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            return b"".join(list(self))
        while len(self._buffer) < size:
            chunk = next(self._chunks, None)
            if chunk is None:
                break
            self._buffer += chunk
        data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._close is not None:
            self._close()

    def __enter__(self) -> "ObjectStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ObjectBackend:
    """Bucket-scoped object storage operations used by the uploader."""

    def put_object(self, key: str, content_type: str, data: bytes) -> str | None:
        raise NotImplementedError

    def initiate_multipart(self, key: str, content_type: str) -> str:
        raise NotImplementedError

    def upload_part(self, key: str, session_id: str, part_number: int, data: bytes) -> str:
        raise NotImplementedError

    def complete_multipart(self, key: str, session_id: str, parts: list[tuple[int, str]]) -> None:
        raise NotImplementedError

    def abort_multipart(self, key: str, session_id: str) -> None:
        raise NotImplementedError

    def get_object(self, key: str, byte_range: tuple[int, int] | None = None) -> ObjectStream:
        raise NotImplementedError

    def head_object(self, key: str) -> ObjectInfo:
        raise NotImplementedError

    def list_objects(self, prefix: str = "", continuation_token: str | None = None, page_size: int = 1000) -> ListingPage:
        raise NotImplementedError

    def delete_object(self, key: str) -> None:
        raise NotImplementedError


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


class LocalObjectBackend(ObjectBackend):
    """Filesystem backend for development and tests.

    Objects live directly under `root`. Multipart parts are staged under
    `root/.multipart/<session>` and are not listable until completion, which
    moves the assembled file into place atomically.
    """

    def __init__(self, root: str, chunk_size: int = DEFAULT_READ_CHUNK_SIZE) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.chunk_size = chunk_size
        self._staging = self.root / ".multipart"
        self._meta = self.root / ".meta"
        self._tmp = self.root / ".tmp"
        for directory in (self._staging, self._meta, self._tmp):
            directory.mkdir(exist_ok=True)

    def _object_path(self, key: str) -> Path:
        if not key or key.startswith(".") or "\x00" in key:
            raise PermanentBackendError(f"invalid object key: {key!r}")
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise PermanentBackendError(f"invalid object key: {key!r}")
        return path

    def _session_dir(self, session_id: str) -> Path:
        session_dir = self._staging / session_id
        if not session_dir.is_dir():
            raise PermanentBackendError(f"no such multipart session: {session_id}")
        return session_dir

    def _publish(self, key: str, tmp_path: Path, content_type: str) -> None:
        target = self._object_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        (self._meta / key.replace("/", "%2F")).write_text(content_type, encoding="utf-8")
        os.replace(tmp_path, target)

    def put_object(self, key: str, content_type: str, data: bytes) -> str | None:
        self._object_path(key)
        tmp_path = self._tmp / uuid.uuid4().hex
        tmp_path.write_bytes(data)
        self._publish(key, tmp_path, content_type)
        return _etag(data)

    def initiate_multipart(self, key: str, content_type: str) -> str:
        self._object_path(key)
        session_id = uuid.uuid4().hex
        session_dir = self._staging / session_id
        session_dir.mkdir()
        (session_dir / "key").write_text(key, encoding="utf-8")
        (session_dir / "content_type").write_text(content_type, encoding="utf-8")
        return session_id

    def upload_part(self, key: str, session_id: str, part_number: int, data: bytes) -> str:
        session_dir = self._session_dir(session_id)
        (session_dir / f"part_{part_number:05d}").write_bytes(data)
        return _etag(data)

    def complete_multipart(self, key: str, session_id: str, parts: list[tuple[int, str]]) -> None:
        session_dir = self._session_dir(session_id)
        if not parts:
            raise PermanentBackendError("multipart completion requires at least one part")
        numbers = [number for number, _ in parts]
        if numbers != sorted(numbers):
            raise PermanentBackendError("parts must be listed in ascending part number order")

        tmp_path = self._tmp / uuid.uuid4().hex
        with tmp_path.open("wb") as out:
            for number, etag in parts:
                part_path = session_dir / f"part_{number:05d}"
                if not part_path.exists():
                    raise PermanentBackendError(f"part {number} was never uploaded")
                data = part_path.read_bytes()
                if _etag(data) != etag:
                    raise PermanentBackendError(f"etag mismatch for part {number}")
                out.write(data)
        content_type = (session_dir / "content_type").read_text(encoding="utf-8")
        self._publish(key, tmp_path, content_type)
        shutil.rmtree(session_dir)

    def abort_multipart(self, key: str, session_id: str) -> None:
        shutil.rmtree(self._session_dir(session_id))

    def _iter_file(self, path: Path, start: int, length: int) -> Iterator[bytes]:
        with path.open("rb") as handle:
            handle.seek(start)
            remaining = length
            while remaining > 0:
                data = handle.read(min(self.chunk_size, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data

    def get_object(self, key: str, byte_range: tuple[int, int] | None = None) -> ObjectStream:
        info = self.head_object(key)
        start, end = 0, info.size - 1
        if byte_range is not None:
            start, end = byte_range
            if start < 0 or end < start or start >= info.size:
                raise RangeNotSatisfiable(f"range {start}-{end} out of bounds for {key}")
            end = min(end, info.size - 1)
        chunks = self._iter_file(self._object_path(key), start, end - start + 1)
        return ObjectStream(chunks, content_length=end - start + 1, content_type=info.content_type, close=chunks.close)

    def head_object(self, key: str) -> ObjectInfo:
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        meta = self._meta / key.replace("/", "%2F")
        content_type = meta.read_text(encoding="utf-8") if meta.exists() else None
        return ObjectInfo(key=key, size=path.stat().st_size, content_type=content_type)

    def list_objects(self, prefix: str = "", continuation_token: str | None = None, page_size: int = 1000) -> ListingPage:
        root = self.root
        keys = sorted(
            str(path.relative_to(root)).replace("\\", "/")
            for path in root.rglob("*")
            if path.is_file() and not path.relative_to(root).parts[0].startswith(".")
        )
        keys = [k for k in keys if k.startswith(prefix) and (continuation_token is None or k > continuation_token)]
        page = keys[:page_size]
        token = page[-1] if len(keys) > page_size else None
        return ListingPage(entries=page, continuation_token=token)

    def delete_object(self, key: str) -> None:
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        path.unlink()
        (self._meta / key.replace("/", "%2F")).unlink(missing_ok=True)


class S3ObjectBackend(ObjectBackend):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.chunk_size = chunk_size
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    @contextmanager
    def _call(self, operation: str, key: str | None = None):
        start = time.perf_counter()
        try:
            yield
        except ClientError as exc:
            raise _translate_client_error(exc, operation, key) from exc
        except _TRANSIENT_BOTOCORE as exc:
            raise TransientBackendError(f"{operation} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise PermanentBackendError(f"{operation} failed: {exc}") from exc
        finally:
            backend_call_latency_seconds.labels(operation=operation).observe(time.perf_counter() - start)

    def put_object(self, key: str, content_type: str, data: bytes) -> str | None:
        with self._call("put_object", key):
            result = self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return result.get("ETag")

    def initiate_multipart(self, key: str, content_type: str) -> str:
        with self._call("create_multipart_upload", key):
            result = self.client.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        return result["UploadId"]

    def upload_part(self, key: str, session_id: str, part_number: int, data: bytes) -> str:
        with self._call("upload_part", key):
            result = self.client.upload_part(
                Bucket=self.bucket,
                Key=key,
                PartNumber=part_number,
                UploadId=session_id,
                Body=data,
            )
        return result["ETag"]

    def complete_multipart(self, key: str, session_id: str, parts: list[tuple[int, str]]) -> None:
        with self._call("complete_multipart_upload", key):
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=session_id,
                MultipartUpload={"Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]},
            )

    def abort_multipart(self, key: str, session_id: str) -> None:
        with self._call("abort_multipart_upload", key):
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=session_id)

    def _iter_body(self, body, key: str) -> Iterator[bytes]:
        with self._call("get_object_body", key):
            for chunk in body.iter_chunks(self.chunk_size):
                yield chunk

    def get_object(self, key: str, byte_range: tuple[int, int] | None = None) -> ObjectStream:
        params = {"Bucket": self.bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        with self._call("get_object", key):
            result = self.client.get_object(**params)
        body = result["Body"]
        return ObjectStream(
            self._iter_body(body, key),
            content_length=result.get("ContentLength"),
            content_type=result.get("ContentType"),
            close=body.close,
        )

    def head_object(self, key: str) -> ObjectInfo:
        with self._call("head_object", key):
            result = self.client.head_object(Bucket=self.bucket, Key=key)
        return ObjectInfo(
            key=key,
            size=result["ContentLength"],
            content_type=result.get("ContentType"),
            etag=result.get("ETag"),
        )

    def list_objects(self, prefix: str = "", continuation_token: str | None = None, page_size: int = 1000) -> ListingPage:
        params = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": page_size}
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        with self._call("list_objects_v2"):
            response = self.client.list_objects_v2(**params)
        entries = [item["Key"] for item in response.get("Contents", []) if item.get("Key")]
        token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ListingPage(entries=entries, continuation_token=token)

    def delete_object(self, key: str) -> None:
        with self._call("delete_object", key):
            self.client.delete_object(Bucket=self.bucket, Key=key)


def _translate_client_error(exc: ClientError, operation: str, key: str | None) -> Exception:
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    message = f"{operation} failed: {code or status} {error.get('Message', '')}".strip()
    if key is not None and (code in _NOT_FOUND_CODES or (status == 404 and code != "NoSuchUpload")):
        return ObjectNotFound(key)
    if code == "InvalidRange" or status == 416:
        return RangeNotSatisfiable(message)
    if code in _TRANSIENT_CODES or status >= 500 or status == 429:
        return TransientBackendError(message)
    return PermanentBackendError(message)


def build_backend(settings: Settings) -> ObjectBackend:
    backend = settings.storage_backend.lower()
    chunk_size = settings.download_chunk_size_bytes
    if backend == "local":
        return LocalObjectBackend(settings.storage_root, chunk_size=chunk_size)
    if backend == "s3":
        return S3ObjectBackend(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url or None,
            access_key_id=settings.aws_access_key_id or None,
            secret_access_key=settings.aws_secret_access_key or None,
            chunk_size=chunk_size,
        )
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectBackend(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
            chunk_size=chunk_size,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
