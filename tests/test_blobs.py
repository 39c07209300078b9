import datetime
import io
import re
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import Forbidden, NotFound

from docrecognizer.config import load_settings
from docrecognizer.errors import BlobNotFound, StorageError
from docrecognizer.storage.blobs import GCSBlobStore, LocalBlobStore, make_blob_store, new_key

KEY_RE = re.compile(r"^\d{4}/\d{2}/\d{2}/[0-9a-f-]{36}/[^/]+$")


def test_new_key_layout():
    now = datetime.datetime(2025, 3, 7, 12, 0, tzinfo=datetime.timezone.utc)
    key = new_key("invoice.pdf", now)
    assert key.startswith("2025/03/07/")
    assert key.endswith("/invoice.pdf")
    assert KEY_RE.match(key)


def test_new_key_never_carries_directories():
    assert new_key("../../etc/passwd").endswith("/passwd")
    assert new_key("").endswith("/document")


def test_keys_are_unique_per_upload(blobs):
    a = blobs.upload("doc.pdf", "application/pdf", io.BytesIO(b"one"))
    b = blobs.upload("doc.pdf", "application/pdf", io.BytesIO(b"two"))
    assert a != b
    assert blobs.download(a) == b"one"
    assert blobs.download(b) == b"two"


def test_local_upload_download_delete(blobs):
    key = blobs.upload("scan.png", "image/png", io.BytesIO(b"\x89PNG data"))
    assert KEY_RE.match(key)
    assert blobs.download(key) == b"\x89PNG data"
    assert blobs.get_url(key).startswith("file://")

    blobs.delete(key)

    with pytest.raises(BlobNotFound):
        blobs.download(key)
    with pytest.raises(BlobNotFound):
        blobs.delete(key)
    with pytest.raises(BlobNotFound):
        blobs.get_url(key)


@pytest.mark.parametrize("key", ["../outside.txt", "/etc/passwd", "2025/../../x"])
def test_local_rejects_keys_outside_root(blobs, key):
    with pytest.raises(StorageError):
        blobs.download(key)


@pytest.fixture
def gcs():
    client = MagicMock()
    blob = client.bucket.return_value.blob.return_value
    return GCSBlobStore("docs", client=client), client, blob


def test_gcs_upload_uses_generated_key(gcs):
    store, client, blob = gcs
    stream = io.BytesIO(b"pdf")

    key = store.upload("a.pdf", "application/pdf", stream, 3)

    assert KEY_RE.match(key)
    client.bucket.assert_called_with("docs")
    client.bucket.return_value.blob.assert_called_with(key)
    blob.upload_from_file.assert_called_once_with(stream, size=3, content_type="application/pdf")


def test_gcs_not_found_maps_to_blob_not_found(gcs):
    store, _, blob = gcs
    blob.download_as_bytes.side_effect = NotFound("no such object")
    with pytest.raises(BlobNotFound):
        store.download("2025/01/01/x/a.pdf")


def test_gcs_api_error_maps_to_storage_error(gcs):
    store, _, blob = gcs
    blob.delete.side_effect = Forbidden("denied")
    with pytest.raises(StorageError, match="denied"):
        store.delete("2025/01/01/x/a.pdf")


def test_gcs_signed_url(gcs):
    store, _, blob = gcs
    blob.generate_signed_url.return_value = "https://signed"

    assert store.get_url("k") == "https://signed"
    kwargs = blob.generate_signed_url.call_args.kwargs
    assert kwargs["version"] == "v4"
    assert kwargs["method"] == "GET"
    assert kwargs["expiration"] == datetime.timedelta(seconds=3600)


def test_gcs_requires_bucket():
    with pytest.raises(StorageError):
        GCSBlobStore("")


def test_make_blob_store_selects_backend(tmp_path):
    local = make_blob_store(load_settings(storage_backend="local", local_storage_path=str(tmp_path)))
    assert isinstance(local, LocalBlobStore)

    gcs = make_blob_store(load_settings(storage_backend="GCS", gcs_bucket_name="docs"))
    assert isinstance(gcs, GCSBlobStore)

    with pytest.raises(ValueError):
        make_blob_store(load_settings(storage_backend="s3"))
