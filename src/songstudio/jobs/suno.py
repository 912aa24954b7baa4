"""
Suno Generation Clients
Per-section instrumental generation and intro/outro generation
"""

from typing import Dict, Optional, Any

import httpx

from ..core.config import get_settings
from ..core.result import Result, ErrorKind
from .base import BaseJobClient, JobHandle, JobKind, JobStatus

settings = get_settings()


class SunoTaskClient(BaseJobClient):
    """Shared Suno task submission and record-info polling"""

    provider = "suno"
    CALLBACK_PATH = "/suno"

    FAILED_STATUSES = {
        "FAILED",
        "CREATE_TASK_FAILED",
        "GENERATE_AUDIO_FAILED",
        "CALLBACK_EXCEPTION",
        "SENSITIVE_WORD_ERROR",
    }

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        client: Optional[httpx.AsyncClient] = None,
        callback_url: str = None
    ):
        super().__init__(
            api_key=api_key if api_key is not None else settings.SUNO_API_KEY,
            base_url=base_url or settings.SUNO_BASE_URL,
            client=client
        )
        self.callback_url = callback_url or f"{settings.WEBHOOK_BASE_URL.rstrip('/')}{self.CALLBACK_PATH}"

    async def _submit(self, path: str, payload: Dict[str, Any], kind: JobKind, **metadata: Any) -> Result[JobHandle]:
        result = await self._request("POST", path, "submit task", json=payload)
        if not result.success:
            return result.propagate()

        data = result.data
        if data.get("code") != 200:
            return Result.err(f"Suno API error: {data.get('msg') or data.get('code')}", ErrorKind.PROVIDER)

        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            return Result.err("No taskId returned from Suno", ErrorKind.PROVIDER)

        return Result.ok(self._handle(task_id, kind=kind, **metadata))

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        """Check task status once"""
        result = await self._request(
            "GET",
            "/api/v1/generate/record-info",
            "check status",
            params={"taskId": handle.job_id}
        )
        if not result.success:
            return result.propagate()

        return Result.ok(self.parse_record(result.data))

    @classmethod
    def parse_record(cls, body: Dict[str, Any]) -> JobStatus:
        """Interpret a record-info response or callback body"""
        if body.get("code") not in (200, None):
            return JobStatus.failed(body.get("msg") or f"Suno status error: {body.get('code')}")

        data = body.get("data") or {}
        status = str(data.get("status") or "PENDING").upper()

        if data.get("errorMessage") or status in cls.FAILED_STATUSES:
            return JobStatus.failed(data.get("errorMessage") or f"Suno task {status}")

        if status == "SUCCESS":
            tracks = (data.get("response") or {}).get("sunoData") or []
            audio_url = tracks[0].get("audioUrl") if tracks else None
            if audio_url:
                return JobStatus.succeeded({"audio": audio_url})
            return JobStatus.failed("Suno task succeeded without audio")

        return JobStatus.processing(status)


class InstrumentalGeneratorClient(SunoTaskClient):
    """Adds a generated instrumental under an uploaded vocal section"""

    kind = JobKind.INSTRUMENTAL_GENERATION

    DEFAULT_TAGS = "Jewish Music, Melodic, Traditional, Warm, Acoustic"
    DEFAULT_NEGATIVE_TAGS = "Heavy Metal, Electronic, Aggressive"

    async def start(
        self,
        upload_url: str = None,
        title: str = None,
        section_index: int = 0,
        tags: str = None,
        negative_tags: str = None,
        vocal_gender: str = "m",
        **kwargs: Any
    ) -> Result[JobHandle]:
        """Submit an add-instrumental task for one section"""
        missing = self._require(upload_url=upload_url, title=title)
        if missing:
            return missing

        payload = {
            "uploadUrl": upload_url,
            "title": f"{title} - Section {section_index + 1}",
            "tags": tags or self.DEFAULT_TAGS,
            "negativeTags": negative_tags or self.DEFAULT_NEGATIVE_TAGS,
            "vocalGender": vocal_gender,
            "styleWeight": 0.6,
            "audioWeight": 0.65,
            "weirdnessConstraint": 0.5,
            "model": "V4_5PLUS",
            "callBackUrl": self.callback_url,
        }

        return await self._submit(
            "/api/v1/generate/add-instrumental",
            payload,
            self.kind,
            section_index=section_index,
            source_url=upload_url
        )


class IntroOutroGeneratorClient(SunoTaskClient):
    """Generates instrumental intro or outro material"""

    kind = JobKind.INTRO_GENERATION
    DEFAULT_TAGS = "Melodic, Warm"

    PROMPTS = {
        "intro": "[Instrumental intro] {tags} intro music, building up energy",
        "outro": "[Instrumental outro] {tags} outro music, fading out peacefully",
    }

    async def start(
        self,
        part: str = None,
        title: str = None,
        tags: str = None,
        **kwargs: Any
    ) -> Result[JobHandle]:
        """Submit an intro or outro generation task"""
        missing = self._require(part=part, title=title)
        if missing:
            return missing

        if part not in self.PROMPTS:
            return Result.err(f"Unknown part: {part}", ErrorKind.INPUT)

        style = tags or self.DEFAULT_TAGS
        payload = {
            "prompt": self.PROMPTS[part].format(tags=style),
            "tags": style,
            "title": f"{title} - {part.capitalize()}",
            "instrumental": True,
            "model": "V4_5",
            "callBackUrl": self.callback_url,
        }

        kind = JobKind.INTRO_GENERATION if part == "intro" else JobKind.OUTRO_GENERATION
        return await self._submit("/api/v1/generate", payload, kind, part=part)
