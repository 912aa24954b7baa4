"""
SongStudio Testing Configuration
Pytest fixtures and test setup
"""
import io
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
import numpy as np
import pytest
import soundfile as sf

# Add src to Python path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from songstudio.core.result import Result  # noqa: E402
from songstudio.database.connection import DatabaseManager  # noqa: E402
from songstudio.jobs.base import BaseJobClient, JobHandle, JobKind, JobStatus  # noqa: E402
from songstudio.pipeline.store import ProjectStateStore  # noqa: E402
from songstudio.storage.gateway import StorageGateway  # noqa: E402

STORAGE_BASE_URL = "https://storage.test"
STORAGE_BUCKET = "recordings"
TEST_SAMPLE_RATE = 8000


def make_wav(
    value: float = 0.25,
    seconds: float = 1.0,
    channels: int = 1,
    sample_rate: int = TEST_SAMPLE_RATE
) -> bytes:
    """Constant-level 16-bit WAV, so segment order is visible in the samples"""
    frames = int(seconds * sample_rate)
    samples = np.full((frames, channels), value, dtype=np.float32)
    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def read_wav(data: bytes):
    return sf.read(io.BytesIO(data), dtype="float32", always_2d=True)


class ObjectStore:
    """In-memory bucket plus provider CDN, served through httpx.MockTransport"""

    def __init__(self, base_url: str = STORAGE_BASE_URL, bucket: str = STORAGE_BUCKET):
        self.base_url = base_url
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[str] = []
        self.requests: List[httpx.Request] = []
        self.fail_uploads = False

    @property
    def public_prefix(self) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/"

    def put(self, url: str, data: bytes) -> str:
        self.objects[url] = data
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        upload_prefix = f"{self.base_url}/storage/v1/object/{self.bucket}/"

        if request.method == "POST" and url.startswith(upload_prefix):
            if self.fail_uploads:
                return httpx.Response(500, text="storage unavailable")
            path = url[len(upload_prefix):]
            self.objects[self.public_prefix + path] = request.content
            self.uploads.append(path)
            return httpx.Response(200, json={"Key": f"{self.bucket}/{path}"})

        if request.method == "GET" and url in self.objects:
            return httpx.Response(200, content=self.objects[url])

        return httpx.Response(404, json={"error": "not found"})


class ScriptedJobClient(BaseJobClient):
    """
    Job client whose poll responses follow a script.

    The n-th started job follows `scripts[n-1]` (the last script is reused
    when jobs outnumber scripts). Each step is a JobStatus or a Result; the
    last step repeats once the script runs out.
    """

    def __init__(
        self,
        name: str = "job",
        provider: str = "replicate",
        kind: JobKind = JobKind.VOCAL_SEPARATION,
        scripts: Optional[List[List[Union[JobStatus, Result]]]] = None,
        start_results: Optional[List[Result]] = None
    ):
        super().__init__(api_key="test-key", base_url="https://provider.test")
        self.name = name
        self.provider = provider
        self.kind = kind
        self.scripts = scripts or [[JobStatus.processing()]]
        self.start_results = list(start_results or [])
        self.started: List[Dict[str, Any]] = []
        self.poll_counts: Dict[str, int] = {}
        self._jobs: Dict[str, List[Union[JobStatus, Result]]] = {}

    async def start(self, **params: Any) -> Result[JobHandle]:
        self.started.append(params)
        if self.start_results:
            return self.start_results.pop(0)

        number = len(self._jobs) + 1
        job_id = f"{self.name}-{number}"
        self._jobs[job_id] = list(self.scripts[min(number, len(self.scripts)) - 1])
        self.poll_counts[job_id] = 0
        return Result.ok(self._handle(job_id))

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        self.poll_counts[handle.job_id] += 1
        script = self._jobs[handle.job_id]
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Result):
            return step
        return Result.ok(step)


class ScriptedAnalyzer(ScriptedJobClient):
    """Scripted structure analyzer that returns a fixed analysis document"""

    def __init__(self, analysis: Optional[Dict[str, Any]] = None, **kwargs: Any):
        kwargs.setdefault("name", "analysis")
        kwargs.setdefault("kind", JobKind.STRUCTURE_ANALYSIS)
        super().__init__(**kwargs)
        self.analysis = analysis or {}

    async def fetch_analysis(self, status: JobStatus) -> Result[Dict[str, Any]]:
        return Result.ok(self.analysis)


@pytest.fixture
def object_store():
    """Fresh in-memory bucket"""
    return ObjectStore()


@pytest.fixture
async def http_client(object_store):
    """HTTP client routed to the in-memory bucket"""
    client = httpx.AsyncClient(transport=httpx.MockTransport(object_store.handler))
    yield client
    await client.aclose()


@pytest.fixture
def gateway(http_client):
    """Storage gateway backed by the in-memory bucket"""
    return StorageGateway(
        base_url=STORAGE_BASE_URL,
        service_key="service-key",
        bucket=STORAGE_BUCKET,
        client=http_client
    )


@pytest.fixture
async def database():
    """In-memory SQLite database with all tables created"""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.initialize()
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def store(database):
    return ProjectStateStore(database)


@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def wav_bytes():
    """One second of mono audio at a constant level"""
    return make_wav()


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: mark test as unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
