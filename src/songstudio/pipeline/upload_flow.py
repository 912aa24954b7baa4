"""
Upload Flow
Record over a user-supplied song
"""

from typing import Optional, Union

from ..core.result import Result, ErrorKind
from ..storage.gateway import StorageCategory
from .playback import PlaybackFlowController
from .state import FlowMode, UploadStage


class UploadFlowController(PlaybackFlowController):
    """upload -> processing -> splitting -> ready-record <-> recording -> creating-playback -> finish"""

    mode = FlowMode.UPLOAD
    stages = UploadStage

    PROCESSING_STAGES = (
        UploadStage.PROCESSING,
        UploadStage.SPLITTING,
        UploadStage.CREATING_PLAYBACK,
    )

    RECORDING_STAGES = (UploadStage.RECORDING,)

    async def upload_file(
        self,
        audio: Union[bytes, str],
        content_type: str = "audio/mpeg",
        duration: Optional[float] = None
    ) -> Result:
        """Store the user's song and start processing it"""
        if not self._is_stage(UploadStage.UPLOAD):
            return Result.err(f"Cannot upload during {self.stage}", ErrorKind.INPUT)

        stored = await self._store_audio(audio, StorageCategory.UPLOADS, "upload", content_type)
        if not stored.success:
            await self._report(stored.error, stored.kind)
            return stored

        self.project.flow.uploaded_file_url = stored.data
        self.project.generated_playback_url = stored.data
        if duration:
            self.project.song_duration = duration

        transitioned = await self._transition(UploadStage.PROCESSING)
        if transitioned.success:
            await self.run_stage()
        return transitioned

    async def _run_processing(self) -> None:
        # Separation must succeed; analysis falls back to a default layout
        if not await self._separate(self.project.flow.uploaded_file_url):
            return

        await self._analyze(self._source_for_analysis())
        if not self.sections:
            return

        await self._advance(UploadStage.SPLITTING)

    async def _run_splitting(self) -> None:
        await self._split()
        await self._transition(UploadStage.READY_RECORD)

    async def _run_creating_playback(self) -> None:
        await self._assemble_playback(UploadStage.FINISH)

    async def _finish(self) -> bool:
        if not (await self._transition(UploadStage.CREATING_PLAYBACK)).success:
            return False
        await self._run_creating_playback()
        return self._is_stage(UploadStage.FINISH)
