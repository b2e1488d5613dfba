"""
Tests for artifact and book data storage.
"""

import json

import httpx
import pytest
from botocore.exceptions import ClientError

from season_book_backend.configuration import StorageSettings
from season_book_backend.errors import ConfigurationMissing, DataNotFound, StorageError
from season_book_backend.s3_service import BookDataStore, S3ArtifactStore

from fakes import FakeS3Client


class FailingS3Client(FakeS3Client):
    def put_object(self, Bucket, Key, Body, ContentType):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")


@pytest.fixture
def settings():
    return StorageSettings(bucket="books", url_expiration=600)


class TestS3ArtifactStore:
    def test_requires_bucket(self):
        with pytest.raises(ConfigurationMissing):
            S3ArtifactStore(StorageSettings())

    def test_store_returns_presigned_url(self, settings):
        s3 = FakeS3Client()
        store = S3ArtifactStore(settings, client=s3)

        url = store.store("orders/ts_a_1/cover.pdf", b"%PDF", "application/pdf")

        assert url == "https://books.s3.test/orders/ts_a_1/cover.pdf?expires=600"
        assert s3.objects[("books", "orders/ts_a_1/cover.pdf")] == (b"%PDF", "application/pdf")

    def test_public_base_url(self):
        settings = StorageSettings(bucket="books", public_base_url="https://cdn.test/")
        store = S3ArtifactStore(settings, client=FakeS3Client())
        assert store.store("k/cover.pdf", b"x", "application/pdf") == "https://cdn.test/k/cover.pdf"

    def test_same_key_overwrites(self, settings):
        s3 = FakeS3Client()
        store = S3ArtifactStore(settings, client=s3)
        store.store("k", b"one", "application/pdf")
        store.store("k", b"two", "application/pdf")
        assert s3.objects[("books", "k")][0] == b"two"

    def test_upload_failure_is_storage_error(self, settings):
        store = S3ArtifactStore(settings, client=FailingS3Client())
        with pytest.raises(StorageError):
            store.store("k", b"x", "application/pdf")


class TestBookDataStore:
    def test_store_writes_json_under_prefix(self, settings):
        s3 = FakeS3Client()
        store = BookDataStore(settings, artifacts=S3ArtifactStore(settings, client=s3))

        url = store.store({"team": {"name": "Riverside FC"}})

        (bucket, key), (body, content_type) = next(iter(s3.objects.items()))
        assert key.startswith("book-data/") and key.endswith(".json")
        assert content_type == "application/json"
        assert json.loads(body) == {"team": {"name": "Riverside FC"}}
        assert key in url

    def test_store_without_storage(self):
        with pytest.raises(ConfigurationMissing):
            BookDataStore(StorageSettings()).store({})

    def test_fetch(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"entries": []}))
        store = BookDataStore(settings, http_client=httpx.Client(transport=transport))
        assert store.fetch("https://books.test/a.json") == {"entries": []}

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(404, text="missing"),
            httpx.Response(200, text="not json"),
            httpx.Response(200, json=["not", "an", "object"]),
        ],
    )
    def test_fetch_failures_are_data_not_found(self, settings, response):
        transport = httpx.MockTransport(lambda request: response)
        store = BookDataStore(settings, http_client=httpx.Client(transport=transport))
        with pytest.raises(DataNotFound):
            store.fetch("https://books.test/a.json")
