"""Pytest configuration and fixtures"""

import shutil
import tempfile
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from resumable_upload.core.session import SessionRegistry
from resumable_upload.main import app
from resumable_upload.services.storage.chunk_store import ChunkStore
from resumable_upload.services.storage.internal import LocalArchive
from resumable_upload.services.upload_service import UploadService, get_upload_service


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def staging_dir(temp_dir):
    return temp_dir / "staging"


@pytest.fixture
def archive_dir(temp_dir):
    return temp_dir / "archive"


@pytest.fixture
def chunk_store(staging_dir):
    return ChunkStore(str(staging_dir))


@pytest.fixture
def archive(archive_dir):
    return LocalArchive(str(archive_dir))


@pytest.fixture
def service(chunk_store, archive):
    """Upload service wired to temporary directories and a private registry"""
    return UploadService(registry=SessionRegistry(), chunk_store=chunk_store, archive=archive)


@pytest.fixture
def client(service):
    """Synchronous HTTP client against the app, using the temporary service"""
    app.dependency_overrides[get_upload_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(service):
    """Async HTTP client bound to the app in-process"""
    app.dependency_overrides[get_upload_service] = lambda: service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()
