"""
Narration Flow
A single spoken take cleaned up by the voice enhancer
"""

from typing import Dict, Union

from ..core.config import get_settings
from ..core.result import Result, ErrorKind
from ..jobs.base import JobHandle
from ..storage.gateway import StorageCategory
from .base import BaseStageController
from .state import FlowMode, NarrationStage

settings = get_settings()


class NarrationFlowController(BaseStageController):
    """recording -> enhancing -> finish"""

    mode = FlowMode.NARRATION
    stages = NarrationStage

    PROCESSING_STAGES = (NarrationStage.ENHANCING,)

    async def record_narration(self, audio: Union[bytes, str], content_type: str = "audio/wav") -> Result[str]:
        """Store the narration take, replacing any earlier one"""
        if not self._is_stage(NarrationStage.RECORDING):
            return Result.err(f"Cannot record during {self.stage}", ErrorKind.INPUT)

        stored = await self._store_audio(audio, StorageCategory.RECORDINGS, "narration", content_type)
        if not stored.success:
            await self._report(stored.error, stored.kind)
            return stored

        self.project.flow.recording_url = stored.data
        await self._persist()
        return stored

    def can_finish(self) -> bool:
        return self._is_stage(NarrationStage.RECORDING) and bool(self.project.flow.recording_url)

    async def _finish(self) -> bool:
        if not await self._advance(NarrationStage.ENHANCING):
            return False
        return self._is_stage(NarrationStage.FINISH)

    async def _run_enhancing(self) -> None:
        params = {"audio_url": self.project.flow.recording_url, "mode": "narration"}
        recovered = await self._consume_recovered("enhance", params)
        if recovered:
            await self._enhanced(recovered)
            return

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            url = await self._promote(handle, outputs["enhanced"], StorageCategory.ENHANCED, "narration")
            await self._enhanced(url)

        await self._run_job(
            self.clients.enhancer,
            "enhance",
            params,
            succeeded,
            max_attempts=settings.ENHANCER_MAX_ATTEMPTS
        )

    async def _enhanced(self, url: str) -> None:
        self.project.generated_song_url = url
        if not (await self._transition(NarrationStage.FINISH)).success:
            return
        await self._complete(url)

    def _category_for(self, role: str) -> str:
        return StorageCategory.ENHANCED
