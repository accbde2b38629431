import pytest
from google.api_core.exceptions import Forbidden, ServiceUnavailable

from app.services.exceptions import StorageError
from app.services.storage import (
    GCSObjectStore,
    LocalObjectStore,
    _classify_storage_error,
    object_key,
    safe_object_name,
)


class FakeBlob:
    def __init__(self, name, failures):
        self.name = name
        self.failures = list(failures)
        self.uploads = []

    def upload_from_string(self, data, content_type=None):
        if self.failures:
            raise self.failures.pop(0)
        self.uploads.append((data, content_type))


class FakeBucket:
    def __init__(self, failures=(), exists=True):
        self.failures = failures
        self._exists = exists
        self.blobs = {}

    def exists(self, timeout=None):
        return self._exists

    def blob(self, name):
        blob = FakeBlob(name, self.failures)
        self.blobs[name] = blob
        return blob


class FakeStorageClient:
    def __init__(self, bucket):
        self._bucket = bucket

    def bucket(self, name):
        return self._bucket


def test_object_key_is_unique_and_sanitized():
    first = object_key("chan/1", "my report.pdf")
    second = object_key("chan/1", "my report.pdf")
    assert first != second
    container, token, filename = first.split("/")
    assert container == "chan_1"
    assert len(token) == 32
    assert filename == "my_report.pdf"
    assert safe_object_name("...") == "file"


def test_local_store_writes_bytes(tmp_path):
    store = LocalObjectStore(tmp_path)
    artifact_id = store.upload(b"hello", "channel-1", "a.txt", "text/plain")
    assert artifact_id.startswith("channel-1/")
    assert store.read(artifact_id) == b"hello"


def test_gcs_upload_retries_transient_errors():
    bucket = FakeBucket(failures=[ServiceUnavailable("busy")])
    sleeps = []
    store = GCSObjectStore(
        "archives", client=FakeStorageClient(bucket), sleep=sleeps.append
    )
    artifact_id = store.upload(b"data", "channel-1", "a.pdf", "application/pdf")
    assert bucket.blobs[artifact_id].uploads == [(b"data", "application/pdf")]
    assert len(sleeps) == 1


def test_gcs_upload_fails_fast_on_permanent_errors():
    bucket = FakeBucket(failures=[Forbidden("denied")])
    sleeps = []
    store = GCSObjectStore(
        "archives", client=FakeStorageClient(bucket), sleep=sleeps.append
    )
    with pytest.raises(StorageError):
        store.upload(b"data", "channel-1", "a.pdf", "application/pdf")
    assert sleeps == []


def test_gcs_missing_bucket_is_a_storage_error():
    store = GCSObjectStore("archives", client=FakeStorageClient(FakeBucket(exists=False)))
    with pytest.raises(StorageError):
        store.upload(b"data", "channel-1", "a.pdf", "application/pdf")


def test_classify_storage_error():
    assert _classify_storage_error(ServiceUnavailable("busy")) == "transient"
    assert _classify_storage_error(Forbidden("nope")) == "permanent"
