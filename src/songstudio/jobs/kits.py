"""
Kits Vocal Cleanup Client
Optional vocal isolation pass applied to dry recordings before mixing
"""

from typing import Optional, Any

import httpx

from ..core.config import get_settings
from ..core.result import Result, ErrorKind
from .base import BaseJobClient, JobHandle, JobKind, JobStatus, JobState

settings = get_settings()


class VocalCleanupClient(BaseJobClient):
    """Kits.ai vocal separation used as a cleanup pass"""

    provider = "kits"
    kind = JobKind.VOCAL_CLEANUP

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(
            api_key=api_key if api_key is not None else settings.KITS_API_KEY,
            base_url=base_url or settings.KITS_BASE_URL,
            client=client
        )

    async def start(self, vocals_url: str = None, **kwargs: Any) -> Result[JobHandle]:
        """Upload vocals as a multipart file and create a cleanup job"""
        missing = self._require(vocals_url=vocals_url)
        if missing:
            return missing

        audio = await self._fetch_bytes(vocals_url)
        if not audio.success:
            return audio.propagate()

        # Multipart body; let httpx set the boundary
        result = await self._request(
            "POST",
            "/vocal-separations",
            "create cleanup",
            headers={"Authorization": f"Bearer {self.api_key}"},
            files={"inputFile": ("vocals.wav", audio.data, "audio/wav")}
        )
        if not result.success:
            return result.propagate()

        job_id = result.data.get("id")
        if not job_id:
            return Result.err("No job ID returned from Kits", ErrorKind.PROVIDER)

        return Result.ok(self._handle(job_id, source_url=vocals_url))

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        """Check cleanup job status once"""
        result = await self._request(
            "GET",
            f"/vocal-separations/{handle.job_id}",
            "check cleanup",
            headers={"Authorization": f"Bearer {self.api_key}"}
        )
        if not result.success:
            return result.propagate()

        data = result.data
        status = data.get("status")

        if status == "success":
            vocal_url = data.get("vocalAudioFileUrl") or data.get("lossyVocalAudioFileUrl")
            if not vocal_url:
                return Result.ok(JobStatus.failed("No vocal output in result"))
            return Result.ok(JobStatus.succeeded({"vocals": vocal_url}))

        if status in ("error", "cancelled"):
            state = JobState.CANCELED if status == "cancelled" else JobState.FAILED
            return Result.ok(JobStatus.failed(data.get("error") or "Kits processing failed", state))

        return Result.ok(JobStatus.processing(status))
