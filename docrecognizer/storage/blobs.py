"""Blob storage for uploaded documents.

LOCAL: filesystem directory, for development and tests.
GCS: Google Cloud Storage bucket, for production.

Keys are generated here, never by callers: ``YYYY/MM/DD/<uuid4>/<file name>``.
"""

import base64
import datetime
import json
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO

from ..config import Settings
from ..errors import BlobNotFound, StorageError


def new_key(file_name: str, now: datetime.datetime | None = None) -> str:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    safe_name = os.path.basename(file_name or "").strip() or "document"
    return "/".join([now.strftime("%Y"), now.strftime("%m"), now.strftime("%d"), str(uuid.uuid4()), safe_name])


class BlobStore(ABC):
    @abstractmethod
    def upload(self, file_name: str, content_type: str, fileobj: BinaryIO, size: int | None = None) -> str:
        """Store the stream and return its freshly generated key."""

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Return the object's bytes; raises BlobNotFound or StorageError."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def get_url(self, key: str) -> str:
        """Temporary URL to the object."""


class LocalBlobStore(BlobStore):
    def __init__(self, base_path: str | Path, logger: logging.Logger | None = None):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.log = logger or logging.getLogger(__name__)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise StorageError(f"key escapes storage root: {key}")
        return path

    def upload(self, file_name: str, content_type: str, fileobj: BinaryIO, size: int | None = None) -> str:
        key = new_key(file_name)
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                shutil.copyfileobj(fileobj, f)
        except OSError as exc:
            raise StorageError(f"failed to upload file: {exc}") from exc
        self.log.info("Stored %s (%s) at %s", file_name, content_type, key)
        return key

    def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(key) from None
        except OSError as exc:
            raise StorageError(f"failed to read object {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            raise BlobNotFound(key) from None
        except OSError as exc:
            raise StorageError(f"failed to delete object {key}: {exc}") from exc
        self.log.info("Deleted %s", key)

    def get_url(self, key: str) -> str:
        path = self._path(key)
        if not path.exists():
            raise BlobNotFound(key)
        return path.as_uri()


class GCSBlobStore(BlobStore):
    def __init__(self, bucket_name: str, client=None, url_ttl_seconds: int = 3600,
                 logger: logging.Logger | None = None):
        if not bucket_name:
            raise StorageError("GCS_BUCKET_NAME not set")
        self.bucket_name = bucket_name
        self._client = client
        self.url_ttl_seconds = url_ttl_seconds
        self.log = logger or logging.getLogger(__name__)

    @property
    def client(self):
        if self._client is None:
            from google.cloud import storage

            creds_b64 = os.getenv("GOOGLE_APPLICATION_CREDENTIALS_JSON")
            if creds_b64:
                creds = json.loads(base64.b64decode(creds_b64))
                self._client = storage.Client.from_service_account_info(creds)
            else:
                self._client = storage.Client()
        return self._client

    def _blob(self, key: str):
        return self.client.bucket(self.bucket_name).blob(key)

    def upload(self, file_name: str, content_type: str, fileobj: BinaryIO, size: int | None = None) -> str:
        from google.api_core.exceptions import GoogleAPIError

        key = new_key(file_name)
        try:
            self._blob(key).upload_from_file(fileobj, size=size, content_type=content_type)
        except GoogleAPIError as exc:
            raise StorageError(f"failed to upload file: {exc}") from exc
        self.log.info("Uploaded %s to gs://%s/%s", file_name, self.bucket_name, key)
        return key

    def download(self, key: str) -> bytes:
        from google.api_core.exceptions import GoogleAPIError, NotFound

        try:
            return self._blob(key).download_as_bytes()
        except NotFound:
            raise BlobNotFound(key) from None
        except GoogleAPIError as exc:
            raise StorageError(f"failed to get object {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        from google.api_core.exceptions import GoogleAPIError, NotFound

        try:
            self._blob(key).delete()
        except NotFound:
            raise BlobNotFound(key) from None
        except GoogleAPIError as exc:
            raise StorageError(f"failed to delete object {key}: {exc}") from exc

    def get_url(self, key: str) -> str:
        from google.api_core.exceptions import GoogleAPIError

        try:
            return self._blob(key).generate_signed_url(
                version="v4",
                expiration=datetime.timedelta(seconds=self.url_ttl_seconds),
                method="GET",
            )
        except GoogleAPIError as exc:
            raise StorageError(f"failed to generate signed URL: {exc}") from exc


def make_blob_store(settings: Settings, logger: logging.Logger | None = None) -> BlobStore:
    backend = settings.storage_backend.lower()
    if backend == "gcs":
        return GCSBlobStore(settings.gcs_bucket_name or "", url_ttl_seconds=settings.signed_url_ttl_seconds,
                            logger=logger)
    if backend == "local":
        return LocalBlobStore(settings.local_storage_path, logger=logger)
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")
