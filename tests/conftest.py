"""Shared fixtures for the messaging test suite."""

import asyncio
from typing import Iterable

import pytest
import pytest_asyncio

from estate_messaging.database.memory import InMemoryStoreGateway
from estate_messaging.errors import UploadError
from estate_messaging.schemas.messaging import AttachmentFile, Identity
from estate_messaging.services.messaging_service import MessagingService
from estate_messaging.utils.blob_store import BlobStore


class FakeBlobStore(BlobStore):
    """Blob store that records uploads and fails for chosen filenames."""

    def __init__(self, fail_on: Iterable[str] = (), delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.uploaded = []
        self.active = 0
        self.peak = 0

    async def upload(self, file: AttachmentFile) -> str:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if file.filename in self.fail_on:
                raise UploadError(f"upload of {file.filename} rejected")
            url = f"https://files.estate.io/{file.filename}"
            self.uploaded.append(url)
            return url
        finally:
            self.active -= 1


@pytest.fixture
def u1() -> Identity:
    return Identity(id="u1", email="u1@estate.io")


@pytest.fixture
def u2() -> Identity:
    return Identity(id="u2", email="u2@estate.io")


@pytest.fixture
def u3() -> Identity:
    return Identity(id="u3", email="u3@estate.io")


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest_asyncio.fixture
async def gateway() -> InMemoryStoreGateway:
    store = InMemoryStoreGateway()
    await store.ensure_indexes()
    return store


@pytest.fixture
def make_service(gateway, blob_store):
    """Build a MessagingService for an identity against the shared store."""

    def _make(identity, blobs=None) -> MessagingService:
        return MessagingService(identity, gateway, blobs or blob_store, retry_seconds=0.01)

    return _make


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait
