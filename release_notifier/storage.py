"""
Durable JSON key-value storage.

Two backends share one small protocol:
- FileStorage: JSON documents under a local directory
- MinioStorage: JSON objects in a MinIO/S3 bucket

Reads return ``Found`` or ``NotFound`` so that "nothing stored yet" is a
normal value rather than an exception. Every other failure is raised as
``TransientIOError``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from minio import Minio
from minio.error import S3Error

from .config import NotifierSettings
from .errors import ConfigError, TransientIOError

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "NoSuchObject")


@dataclass(frozen=True)
class Found:
    data: Any


@dataclass(frozen=True)
class NotFound:
    key: str


ReadResult = Union[Found, NotFound]


class Storage(Protocol):
    def read(self, key: str) -> ReadResult: ...

    def write(self, key: str, data: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class FileStorage:
    """JSON documents stored as files below ``base_dir``."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)

    def _path(self, key: str) -> Path:
        return self.base_dir / key

    def read(self, key: str) -> ReadResult:
        path = self._path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return NotFound(key)
        except OSError as exc:
            raise TransientIOError(f"Failed to read {path}: {exc}") from exc
        try:
            return Found(json.loads(raw))
        except json.JSONDecodeError as exc:
            raise TransientIOError(f"Corrupt JSON in {path}: {exc}") from exc

    def write(self, key: str, data: Any) -> None:
        path = self._path(key)
        tmp: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp, path)
            tmp = None
        except OSError as exc:
            raise TransientIOError(f"Failed to write {path}: {exc}") from exc
        finally:
            if tmp is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise TransientIOError(f"Failed to delete {path}: {exc}") from exc


def _build_minio_client(settings: NotifierSettings) -> Minio:
    ep = settings.minio_endpoint.strip()
    default_secure = None
    if ep.startswith("http://"):
        ep = ep[len("http://"):]
        default_secure = False
    elif ep.startswith("https://"):
        ep = ep[len("https://"):]
        default_secure = True

    if ":" in ep:
        host, port_str = ep.rsplit(":", 1)
        try:
            port: Optional[int] = int(port_str)
        except ValueError:
            host, port = ep, None
    else:
        host, port = ep, None

    is_k8s_svc = host.endswith(".svc") or host.endswith(".svc.cluster.local")
    is_local = host.startswith("localhost") or host.endswith(".lan")
    secure = default_secure if default_secure is not None else not (is_k8s_svc or is_local)
    if port is None:
        port = 80 if not secure else 9000

    return Minio(
        f"{host}:{port}",
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=secure,
    )


class MinioStorage:
    """JSON objects stored in a MinIO bucket under ``minio_prefix``."""

    def __init__(self, settings: NotifierSettings, client: Optional[Minio] = None):
        self.bucket = settings.minio_bucket
        self.prefix = settings.minio_prefix
        self.client = client or _build_minio_client(settings)
        self._bucket_checked = False

    def _object_name(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)
        self._bucket_checked = True

    def read(self, key: str) -> ReadResult:
        name = self._object_name(key)
        try:
            response = self.client.get_object(bucket_name=self.bucket, object_name=name)
            try:
                data = response.read()
            finally:
                response.close()
                response.release_conn()
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return NotFound(key)
            raise TransientIOError(f"Failed to read s3://{self.bucket}/{name}: {exc}") from exc
        except Exception as exc:
            raise TransientIOError(f"Failed to read s3://{self.bucket}/{name}: {exc}") from exc
        try:
            return Found(json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransientIOError(f"Corrupt JSON in s3://{self.bucket}/{name}: {exc}") from exc

    def write(self, key: str, data: Any) -> None:
        name = self._object_name(key)
        body = json.dumps(data, indent=2).encode("utf-8")
        try:
            self._ensure_bucket()
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=name,
                data=BytesIO(body),
                length=len(body),
                content_type="application/json",
            )
        except Exception as exc:
            raise TransientIOError(f"Failed to write s3://{self.bucket}/{name}: {exc}") from exc

    def delete(self, key: str) -> None:
        name = self._object_name(key)
        try:
            self.client.remove_object(bucket_name=self.bucket, object_name=name)
        except S3Error as exc:
            if exc.code in _MISSING_CODES:
                return
            raise TransientIOError(f"Failed to delete s3://{self.bucket}/{name}: {exc}") from exc
        except Exception as exc:
            raise TransientIOError(f"Failed to delete s3://{self.bucket}/{name}: {exc}") from exc


def build_storage(settings: NotifierSettings) -> Storage:
    backend = settings.storage_backend.lower()
    if backend == "file":
        return FileStorage(settings.data_dir)
    if backend == "minio":
        if not settings.minio_access_key:
            raise ConfigError("MINIO_ACCESS_KEY is required for the minio storage backend")
        return MinioStorage(settings)
    raise ConfigError(f"Unknown storage backend: {settings.storage_backend}")
