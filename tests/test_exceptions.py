import pytest
import requests

from app.services.exceptions import (
    ArchiveError,
    ContentTooLargeError,
    ErrorKind,
    StorageError,
    kind_for_request_exception,
    kind_for_status,
    reason_for,
)


@pytest.mark.parametrize(
    "status, kind",
    [(404, ErrorKind.HTTP_CLIENT), (429, ErrorKind.HTTP_CLIENT), (503, ErrorKind.HTTP_SERVER), (302, ErrorKind.DOWNLOAD_FAILED)],
)
def test_kind_for_status(status, kind):
    assert kind_for_status(status) is kind


def test_kind_for_request_exception():
    assert kind_for_request_exception(requests.ConnectTimeout()) is ErrorKind.TIMEOUT
    assert kind_for_request_exception(requests.exceptions.MissingSchema()) is ErrorKind.INVALID_URL
    assert kind_for_request_exception(requests.ConnectionError()) is ErrorKind.DOWNLOAD_FAILED


def test_reason_follows_kind_not_message():
    assert reason_for(ContentTooLargeError("anything")) == "File too large"
    assert reason_for(StorageError("timeout while uploading")) == "Failed to store file"
    assert reason_for(ArchiveError("x", kind=ErrorKind.TIMEOUT)) == "Timeout while fetching URL"
    assert reason_for(ValueError("x")) == "Unknown error"
