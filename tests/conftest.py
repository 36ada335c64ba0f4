"""Shared pytest fixtures for Photoforge tests."""

import base64
import io
import json
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from PIL import Image

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.job_store import JobStore
from photoforge.core.ledger import CreditLedger

SOURCE_URL = "https://images.example.com/photo-{}.jpg"
SESSION_URL = "https://upload.test/session/1"
FILE_URI = "https://generativelanguage.googleapis.com/v1beta/files/abc123"


def image_response(*images: bytes, mime_type: str = "image/png") -> dict:
    """Build a generateContent response carrying the given images."""
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": mime_type,
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        }
                        for image in images
                    ]
                }
            }
        ]
    }


def error_body(message: str) -> dict:
    return {"error": {"message": message}}


class FakeUpstream:
    """Programmable stand-in for the source image host and the Gemini API.

    Used as the handler of an ``httpx.MockTransport``.  Source images are
    served from ``images.example.com``; upload and generate calls are
    recorded so tests can assert on the order of strategies.

    Attributes:
        source_status: Status code returned for source fetches
        source_headers: Headers returned for source fetches
        source_body: Body returned for source fetches
        generate_queue: Per-model list of ``(status, body)`` consumed in order
        default_generate: ``(status, body)`` used once a model's queue is empty
    """

    def __init__(self, image: bytes):
        self.image = image
        self.source_status = 200
        self.source_headers = {"content-type": "image/png"}
        self.source_body = image
        self.generate_queue: dict[str, list[tuple[int, dict]]] = {}
        self.default_generate: tuple[int, dict] = (200, image_response(image))
        self.generate_calls: list[tuple[str, dict]] = []
        self.source_fetches: list[str] = []
        self.upload_starts: list[httpx.Request] = []
        self.upload_finalizes: list[httpx.Request] = []

    def fail_all(self, status: int, message: str = "model unavailable") -> None:
        self.default_generate = (status, error_body(message))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = request.url

        if url.host == "images.example.com":
            self.source_fetches.append(str(url))
            return httpx.Response(
                self.source_status, headers=self.source_headers, content=self.source_body
            )

        if url.path.endswith("/upload/v1beta/files"):
            self.upload_starts.append(request)
            return httpx.Response(200, headers={"x-goog-upload-url": SESSION_URL})

        if str(url) == SESSION_URL:
            self.upload_finalizes.append(request)
            return httpx.Response(200, json={"file": {"uri": FILE_URI, "mimeType": "image/png"}})

        if url.path.endswith(":generateContent"):
            model = url.path.rsplit("/", 1)[-1].split(":")[0]
            self.generate_calls.append((model, json.loads(request.content)))
            queue = self.generate_queue.get(model)
            status, body = queue.pop(0) if queue else self.default_generate
            return httpx.Response(status, json=body)

        return httpx.Response(404, text="not found")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PhotoforgeConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PhotoforgeConfig instance for testing
    """
    return PhotoforgeConfig(
        _env_file=None,
        google_api_key="test-key",
        data_dir=temp_dir / "data",
        archives_dir=temp_dir / "archives",
        public_base_url="/files",
        max_source_bytes=1024 * 1024,
    )


@pytest.fixture
def job_store(test_config: PhotoforgeConfig) -> JobStore:
    """Create a job store backed by a temporary database."""
    return JobStore(test_config.database_path)


@pytest.fixture
def ledger(job_store: JobStore, test_config: PhotoforgeConfig) -> CreditLedger:
    return CreditLedger(job_store, test_config.free_allowance)


@pytest.fixture
def png_bytes() -> bytes:
    """A small, valid PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(200, 120, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def upstream(png_bytes: bytes) -> FakeUpstream:
    return FakeUpstream(png_bytes)


@pytest.fixture
def source_urls():
    """Factory returning ``n`` distinct source URLs."""

    def _make(n: int) -> list[str]:
        return [SOURCE_URL.format(i + 1) for i in range(n)]

    return _make
