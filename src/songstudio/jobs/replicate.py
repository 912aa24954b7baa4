"""
Replicate Prediction Clients
Vocal separation, voice enhancement and structure analysis
"""

import json
from typing import Dict, Optional, Any

import httpx

from ..core.config import get_settings
from ..core.result import Result, ErrorKind
from .base import BaseJobClient, JobHandle, JobKind, JobStatus, JobState

settings = get_settings()


class ReplicatePredictionClient(BaseJobClient):
    """Shared create/get prediction protocol"""

    provider = "replicate"
    MODEL_VERSION: str = ""

    # Replicate status -> pipeline state
    STATE_MAPPING = {
        "starting": JobState.PENDING,
        "processing": JobState.PROCESSING,
        "succeeded": JobState.SUCCEEDED,
        "failed": JobState.FAILED,
        "canceled": JobState.CANCELED,
    }

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(
            api_key=api_key if api_key is not None else settings.REPLICATE_API_TOKEN,
            base_url=base_url or settings.REPLICATE_BASE_URL,
            client=client
        )

    async def _create_prediction(self, model_input: Dict[str, Any], **metadata: Any) -> Result[JobHandle]:
        result = await self._request(
            "POST",
            "/v1/predictions",
            "create prediction",
            json={"version": self.MODEL_VERSION, "input": model_input}
        )
        if not result.success:
            return result.propagate()

        prediction = result.data
        prediction_id = prediction.get("id")
        if not prediction_id:
            return Result.err("No prediction ID returned from Replicate", ErrorKind.PROVIDER)

        return Result.ok(self._handle(prediction_id, **metadata))

    async def poll(self, handle: JobHandle) -> Result[JobStatus]:
        """Check prediction status once"""
        result = await self._request("GET", f"/v1/predictions/{handle.job_id}", "get prediction")
        if not result.success:
            return result.propagate()

        prediction = result.data
        state = self.STATE_MAPPING.get(prediction.get("status"), JobState.PROCESSING)

        if state == JobState.SUCCEEDED:
            outputs = self._normalize_output(prediction.get("output"), handle)
            if not outputs:
                return Result.ok(JobStatus.failed("Prediction succeeded without usable output"))
            return Result.ok(JobStatus.succeeded(outputs))

        if state in (JobState.FAILED, JobState.CANCELED):
            reason = prediction.get("error") or f"Prediction {prediction.get('status')}"
            return Result.ok(JobStatus.failed(str(reason), state))

        return Result.ok(JobStatus(state=state, progress=self._progress(prediction)))

    def _progress(self, prediction: Dict[str, Any]) -> Optional[str]:
        return prediction.get("status")

    def _normalize_output(self, output: Any, handle: JobHandle) -> Dict[str, str]:
        raise NotImplementedError


class VocalSeparatorClient(ReplicatePredictionClient):
    """Demucs vocal / accompaniment separation"""

    kind = JobKind.VOCAL_SEPARATION
    MODEL_VERSION = "25a173108cff36ef9f80f854c162d01df9e6528be175794b81158fa03836d953"

    INSTRUMENTAL_KEYS = ("no_vocals", "accompaniment", "Accompaniment", "instrumental", "other")
    VOCAL_KEYS = ("vocals", "Vocals")

    async def start(self, audio_url: str = None, **kwargs: Any) -> Result[JobHandle]:
        """Submit a track for separation"""
        missing = self._require(audio_url=audio_url)
        if missing:
            return missing

        return await self._create_prediction(
            {
                "audio": audio_url,
                "stem": "vocals",
                "model_name": "htdemucs",
                "output_format": "mp3",
            },
            source_url=audio_url
        )

    def _normalize_output(self, output: Any, handle: JobHandle) -> Dict[str, str]:
        vocals = None
        instrumental = None

        if isinstance(output, dict):
            vocals = next((output[k] for k in self.VOCAL_KEYS if output.get(k)), None)
            instrumental = next((output[k] for k in self.INSTRUMENTAL_KEYS if output.get(k)), None)
        elif isinstance(output, list):
            if len(output) > 0:
                vocals = output[0]
            if len(output) > 1:
                instrumental = output[1]
        elif isinstance(output, str):
            instrumental = output

        # Separation is useless without a backing track
        if not instrumental:
            return {}

        outputs = {"instrumental": instrumental}
        if vocals:
            outputs["vocals"] = vocals
        return outputs


class VoiceEnhancerClient(ReplicatePredictionClient):
    """Resemble Enhance denoise/enhance"""

    kind = JobKind.ENHANCEMENT
    MODEL_VERSION = "93266a7e7f5805fb79bcf213b1a4e0ef2e45aff3c06eefd96c59e850c87fd6a2"

    async def start(self, audio_url: str = None, mode: str = "narration", **kwargs: Any) -> Result[JobHandle]:
        """Submit a recording for enhancement"""
        missing = self._require(audio_url=audio_url)
        if missing:
            return missing

        return await self._create_prediction(
            {"input_audio": audio_url},
            source_url=audio_url,
            mode=mode
        )

    def _normalize_output(self, output: Any, handle: JobHandle) -> Dict[str, str]:
        # Output is [denoised, enhanced]
        if isinstance(output, list) and output:
            if handle.metadata.get("mode") == "singing":
                return {"enhanced": output[0]}
            return {"enhanced": output[-1]}
        if isinstance(output, str) and output:
            return {"enhanced": output}
        return {}


class StructureAnalyzerClient(ReplicatePredictionClient):
    """All-in-one music structure analyzer"""

    kind = JobKind.STRUCTURE_ANALYSIS
    MODEL_VERSION = "001b4137be6ac67bdc28cb5cffacf128b874f530258d033de23121e785cb7290"

    async def start(self, audio_url: str = None, **kwargs: Any) -> Result[JobHandle]:
        """Submit a track for structure analysis"""
        missing = self._require(audio_url=audio_url)
        if missing:
            return missing

        return await self._create_prediction(
            {"music_input": audio_url, "sonify": False, "visualize": False},
            source_url=audio_url
        )

    def _normalize_output(self, output: Any, handle: JobHandle) -> Dict[str, str]:
        if isinstance(output, str):
            return {"analysis": output}
        if isinstance(output, list):
            urls = [item for item in output if isinstance(item, str)]
            json_urls = [url for url in urls if ".json" in url]
            chosen = (json_urls or urls or [None])[0]
            return {"analysis": chosen} if chosen else {}
        return {}

    async def fetch_analysis(self, status: JobStatus) -> Result[Dict[str, Any]]:
        """Download the JSON analysis referenced by a successful status"""
        url = status.outputs.get("analysis")
        if not url:
            return Result.err("No analysis output", ErrorKind.PROVIDER)

        payload = await self._fetch_bytes(url)
        if not payload.success:
            return payload.propagate()

        try:
            return Result.ok(json.loads(payload.data))
        except ValueError as e:
            return Result.err(f"Analysis output is not JSON: {e}", ErrorKind.PROVIDER)
