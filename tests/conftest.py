"""
Pytest configuration and fixtures for PDF2HTML Backend tests.
"""

import os

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["JOB_STORE_BACKEND"] = "memory"
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["MISTRAL_API_KEY"] = "test-mistral-key"

from pdf2html_backend.configuration import MAX_PDF_BYTES, make_runtime_config
from pdf2html_backend.errors import ConversionFailure, PayloadTooLarge
from pdf2html_backend.job_manager import JobManager
from pdf2html_backend.job_store import InMemoryJobStore
from pdf2html_backend.main import app, get_job_manager
from pdf2html_backend.models import OcrPage, OcrResult
from pdf2html_backend.ocr_client import OcrEngine
from pdf2html_backend.s3_service import to_locator
from pdf2html_backend.work_queue import InMemoryWorkQueue
from pdf2html_backend.worker import ConversionWorker

SAMPLE_PDF = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
trailer
<< /Size 4 /Root 1 0 R >>
%%EOF"""


class FakeStorage:
    """Dict-backed stand-in for S3ObjectStorage."""

    def __init__(self, bucket: str) -> None:
        self.bucket = bucket
        self.objects = {}
        self.presigned = []

    def ensure_bucket(self) -> None:
        return None

    def issue_presigned_upload_url(self, bucket, key, content_type, expires_in=None):
        self.presigned.append((bucket, key, content_type, expires_in))
        return f"http://storage.test/{bucket}/{key}?X-Amz-Expires={expires_in}"

    def get_object(self, bucket, key, max_bytes=MAX_PDF_BYTES):
        if (bucket, key) not in self.objects:
            raise ConversionFailure(f"Object not found: {to_locator(bucket, key)}")
        data = self.objects[(bucket, key)]
        if len(data) > max_bytes:
            raise PayloadTooLarge(f"Object exceeds the {max_bytes} byte limit")
        return data

    def get_text(self, bucket, key):
        data = self.objects.get((bucket, key))
        return None if data is None else data.decode("utf-8")

    def put_object(self, bucket, key, data, content_type):
        self.objects[(bucket, key)] = data
        return to_locator(bucket, key)


class FakeOcrEngine(OcrEngine):
    """Returns a canned result, or raises ``error`` when set."""

    def __init__(self, result: OcrResult, error: Exception = None) -> None:
        self.result = result
        self.error = error
        self.calls = []

    async def convert(self, pdf_bytes, filename):
        self.calls.append((pdf_bytes, filename))
        if self.error is not None:
            raise self.error
        return self.result


class FakeFetcher:
    """Serves bytes (or raises exceptions) per URL."""

    def __init__(self) -> None:
        self.responses = {}
        self.calls = []

    async def fetch(self, url):
        self.calls.append(url)
        response = self.responses.get(url, SAMPLE_PDF)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return make_runtime_config(
        {
            "job_store": {"backend": "memory"},
            "queue": {"backend": "memory"},
            "worker": {"job_timeout_seconds": 5, "requeue_delay_seconds": 0},
        }
    )


@pytest.fixture
def sample_pdf():
    return SAMPLE_PDF


@pytest.fixture
def ocr_result():
    return OcrResult(
        model="mistral-ocr-latest",
        pages=[
            OcrPage(index=0, markdown="# Quarterly Report\n\nRevenue grew."),
            OcrPage(index=1, markdown="## Outlook\n\nSteady."),
        ],
        usage_info={"pages_processed": 2},
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def queue():
    return InMemoryWorkQueue(poll_interval=0.01)


@pytest.fixture
def storage(settings):
    return FakeStorage(settings.storage.bucket)


@pytest.fixture
def ocr(ocr_result):
    return FakeOcrEngine(ocr_result)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def manager(store, queue, storage, settings):
    return JobManager(store=store, queue=queue, storage=storage, settings=settings)


@pytest.fixture
def worker(store, storage, ocr, fetcher, settings):
    return ConversionWorker(store=store, storage=storage, ocr=ocr, fetcher=fetcher, settings=settings)


@pytest.fixture
def client(manager):
    """Create a test client for the FastAPI app wired to in-memory collaborators."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()
