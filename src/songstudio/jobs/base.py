"""
Job Client Foundation
Shared types and HTTP plumbing for external asynchronous providers
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any, List

import httpx
from pydantic import BaseModel, Field

from ..core.config import get_settings
from ..core.logging import job_logger
from ..core.result import Result, ErrorKind

settings = get_settings()

# Gateway and throttling responses worth retrying
TRANSIENT_STATUS_CODES = {408, 429, 502, 503, 504}


class JobKind(str, Enum):
    """Kinds of work delegated to providers"""
    VOCAL_SEPARATION = "vocal_separation"
    INSTRUMENTAL_GENERATION = "instrumental_generation"
    INTRO_GENERATION = "intro_generation"
    OUTRO_GENERATION = "outro_generation"
    MIX_MASTER = "mix_master"
    VOCAL_CLEANUP = "vocal_cleanup"
    ENHANCEMENT = "enhancement"
    STRUCTURE_ANALYSIS = "structure_analysis"


class JobState(str, Enum):
    """Provider job lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


class JobHandle(BaseModel):
    """Reference to one outstanding provider job"""
    provider: str
    kind: JobKind
    job_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def artifact_key(self) -> str:
        """Stable key for artifacts produced by this job"""
        return f"{self.provider}:{self.job_id}"


class JobStatus(BaseModel):
    """Outcome of a single status check"""
    state: JobState
    outputs: Dict[str, str] = Field(default_factory=dict)
    progress: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def processing(cls, progress: Optional[str] = None) -> 'JobStatus':
        return cls(state=JobState.PROCESSING, progress=progress)

    @classmethod
    def succeeded(cls, outputs: Dict[str, str]) -> 'JobStatus':
        return cls(state=JobState.SUCCEEDED, outputs=outputs)

    @classmethod
    def failed(cls, reason: str, state: JobState = JobState.FAILED) -> 'JobStatus':
        return cls(state=state, reason=reason)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_success(self) -> bool:
        return self.state == JobState.SUCCEEDED

    @property
    def output_urls(self) -> List[str]:
        return list(self.outputs.values())


class BaseJobClient:
    """Base class for provider clients exposing start/poll"""

    provider: str = "base"
    kind: JobKind

    def __init__(
        self,
        api_key: str,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.cleanup()

    async def initialize(self) -> Result[None]:
        """Initialize HTTP client"""
        if not self.api_key:
            return Result.err(f"{self.provider} API key is required", ErrorKind.INPUT)

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True

        return Result.ok(None)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
            self._owns_client = True
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any
    ) -> Result[Any]:
        """Perform one provider request and classify failures"""

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = kwargs.pop("headers", None) or self._headers()

        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            return Result.err(f"{self.provider} {operation} timed out: {e}", ErrorKind.TRANSIENT)
        except httpx.RequestError as e:
            return Result.err(f"{self.provider} {operation} request failed: {e}", ErrorKind.TRANSIENT)

        if response.status_code in TRANSIENT_STATUS_CODES:
            return Result.err(
                f"{self.provider} {operation} unavailable: {response.status_code}",
                ErrorKind.TRANSIENT
            )

        if response.status_code >= 400:
            error_msg = f"{self.provider} {operation} error: {response.status_code}"
            try:
                error_data = response.json()
                if isinstance(error_data, dict):
                    detail = error_data.get("detail") or error_data.get("error") or error_data.get("msg")
                    if detail:
                        error_msg += f" - {detail}"
            except ValueError:
                error_msg += f" - {response.text[:200]}"
            return Result.err(error_msg, ErrorKind.PROVIDER)

        if not response.content:
            return Result.ok({})

        try:
            return Result.ok(response.json())
        except ValueError:
            return Result.err(f"{self.provider} {operation} returned invalid JSON", ErrorKind.PROVIDER)

    async def _fetch_bytes(self, url: str) -> Result[bytes]:
        """Download a source asset referenced by URL"""
        try:
            response = await self.client.get(url)
        except httpx.RequestError as e:
            return Result.err(f"Failed to download {url}: {e}", ErrorKind.TRANSIENT)

        if response.status_code != 200:
            kind = ErrorKind.TRANSIENT if response.status_code in TRANSIENT_STATUS_CODES else ErrorKind.INPUT
            return Result.err(f"Failed to download {url}: {response.status_code}", kind)

        return Result.ok(response.content)

    def _handle(self, job_id: str, kind: JobKind = None, **metadata: Any) -> JobHandle:
        handle = JobHandle(
            provider=self.provider,
            kind=kind or self.kind,
            job_id=str(job_id),
            metadata=metadata
        )
        job_logger.log_job_started(
            provider=self.provider,
            kind=handle.kind.value,
            job_id=handle.job_id,
            **{k: v for k, v in metadata.items() if isinstance(v, (str, int, float))}
        )
        return handle

    @staticmethod
    def _require(**values: Any) -> Optional[Result]:
        """Reject missing or blank inputs before any network call"""
        for name, value in values.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                return Result.err(f"Missing required input: {name}", ErrorKind.INPUT)
            if isinstance(value, (list, tuple)) and not value:
                return Result.err(f"Missing required input: {name}", ErrorKind.INPUT)
        return None

    async def start(self, **params: Any) -> Result[JobHandle]:
        raise NotImplementedError

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        raise NotImplementedError

    async def cleanup(self) -> None:
        """Clean up resources"""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

