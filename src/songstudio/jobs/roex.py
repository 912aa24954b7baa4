"""
RoEx Mixing Client
Uploads vocal and instrumental stems and drives a preview mix task
"""

from typing import Dict, Optional, Any

import httpx

from ..core.config import get_settings
from ..core.result import Result, ErrorKind
from .base import BaseJobClient, JobHandle, JobKind, JobStatus

settings = get_settings()


class MixMasterClient(BaseJobClient):
    """RoEx Tonn multitrack preview mix"""

    provider = "roex"
    kind = JobKind.MIX_MASTER

    INSTRUMENTAL_TRACK = {
        "instrumentGroup": "DRUMS_GROUP",
        "presenceSetting": "NORMAL",
        "panPreference": "CENTRE",
        "reverbPreference": "NONE",
    }
    VOCAL_TRACK = {
        "instrumentGroup": "VOCAL_GROUP",
        "presenceSetting": "LEAD",
        "panPreference": "CENTRE",
        "reverbPreference": "LOW",
    }

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        client: Optional[httpx.AsyncClient] = None,
        webhook_url: str = None
    ):
        super().__init__(
            api_key=api_key if api_key is not None else settings.ROEX_API_KEY,
            base_url=base_url or settings.ROEX_BASE_URL,
            client=client
        )
        self.webhook_url = webhook_url or f"{settings.WEBHOOK_BASE_URL.rstrip('/')}/roex"

    def _headers(self) -> Dict[str, str]:
        return {
            "X-API-Key": self.api_key,
            "Content-Type": "application/json",
        }

    async def _stage_track(self, source_url: str, filename: str) -> Result[str]:
        """Copy a source asset into RoEx upload storage, returning its readable URL"""

        upload = await self._request(
            "POST",
            "/upload",
            f"upload {filename}",
            json={"filename": filename, "contentType": "audio/wav"}
        )
        if not upload.success:
            return upload.propagate()

        signed_url = upload.data.get("signed_url")
        readable_url = upload.data.get("readable_url")
        if not signed_url or not readable_url:
            return Result.err(f"RoEx upload for {filename} returned no URLs", ErrorKind.PROVIDER)

        audio = await self._fetch_bytes(source_url)
        if not audio.success:
            return audio.propagate()

        try:
            response = await self.client.put(
                signed_url,
                content=audio.data,
                headers={"Content-Type": "audio/wav"}
            )
        except httpx.RequestError as e:
            return Result.err(f"RoEx PUT for {filename} failed: {e}", ErrorKind.TRANSIENT)

        if response.status_code >= 400:
            return Result.err(f"RoEx PUT for {filename} failed: {response.status_code}", ErrorKind.PROVIDER)

        return Result.ok(readable_url)

    async def start(
        self,
        vocals_url: str = None,
        instrumental_url: str = None,
        **kwargs: Any
    ) -> Result[JobHandle]:
        """Stage both stems and submit a preview mix"""
        missing = self._require(vocals_url=vocals_url, instrumental_url=instrumental_url)
        if missing:
            return missing

        vocal_track = await self._stage_track(vocals_url, "vocals.wav")
        if not vocal_track.success:
            return vocal_track.propagate()

        instrumental_track = await self._stage_track(instrumental_url, "instrumental.wav")
        if not instrumental_track.success:
            return instrumental_track.propagate()

        payload = {
            "multitrackData": {
                "trackData": [
                    {"trackURL": instrumental_track.data, **self.INSTRUMENTAL_TRACK},
                    {"trackURL": vocal_track.data, **self.VOCAL_TRACK},
                ],
                "musicalStyle": "POP",
                "sampleRate": "44100",
                "webhookURL": self.webhook_url,
            }
        }

        result = await self._request("POST", "/mixpreview", "submit mix", json=payload)
        if not result.success:
            return result.propagate()

        data = result.data
        task_id = data.get("multitrack_task_id") or data.get("task_id") or data.get("id")
        if not task_id:
            return Result.err("No task ID returned from RoEx mixing", ErrorKind.PROVIDER)

        return Result.ok(self._handle(task_id, vocals_url=vocals_url))

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        """Retrieve preview mix state once"""
        result = await self._request(
            "POST",
            "/retrievepreviewmix",
            "retrieve mix",
            json={
                "multitrackData": {
                    "multitrackTaskId": handle.job_id,
                    "retrieveFXSettings": True,
                }
            }
        )
        if not result.success:
            return result.propagate()

        return Result.ok(self.parse_result(result.data))

    @staticmethod
    def parse_result(body: Dict[str, Any]) -> JobStatus:
        """Interpret a retrieve response or webhook body"""
        preview = body.get("previewMixTaskResults") or body
        output_url = (
            preview.get("download_url_preview_mixed")
            or preview.get("download_url_mixed")
            or preview.get("preview_mix_url")
        )
        state = preview.get("state") or body.get("state")

        if preview.get("error") or body.get("error") or state == "MIX_TASK_FAILED":
            message = preview.get("message") or body.get("message") or "RoEx mixing failed"
            return JobStatus.failed(message)

        if output_url:
            return JobStatus.succeeded({"mix": output_url})

        if state == "MIX_TASK_PREVIEW_COMPLETED":
            return JobStatus.failed("RoEx preview completed without a download URL")

        return JobStatus.processing(state)
