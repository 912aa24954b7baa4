"""
Search Flow
Record over a catalog song: separate, analyze, split, record, mix
"""

from typing import List, Optional

from ..core.result import Result, ErrorKind
from .playback import PlaybackFlowController
from .state import FlowMode, SearchStage, Section


class SearchFlowController(PlaybackFlowController):
    """search -> separating -> analyzing -> splitting -> ready-record <-> recording -> processing -> finish"""

    mode = FlowMode.SEARCH
    stages = SearchStage

    PROCESSING_STAGES = (
        SearchStage.SEPARATING,
        SearchStage.ANALYZING,
        SearchStage.SPLITTING,
        SearchStage.PROCESSING,
    )

    RECORDING_STAGES = (SearchStage.RECORDING,)

    async def select_playback(
        self,
        playback_url: str,
        playback_id: Optional[str] = None,
        title: Optional[str] = None,
        sections: Optional[List[Section]] = None,
        duration: Optional[float] = None
    ) -> Result:
        """Choose the catalog song and start preparing it"""
        if not self._is_stage(SearchStage.SEARCH):
            return Result.err(f"Cannot select a playback during {self.stage}", ErrorKind.INPUT)
        if not playback_url:
            await self._report("A playback must be selected", ErrorKind.INPUT)
            return Result.err("A playback must be selected", ErrorKind.INPUT)

        self.project.playback_id = playback_id
        self.project.generated_playback_url = playback_url
        self.project.flow.playback_url = playback_url
        self.project.flow.playback_title = title
        if duration:
            self.project.song_duration = duration
        if sections:
            # Structure known from catalog metadata; analysis is skipped
            self.project.flow.sections = list(sections)

        transitioned = await self._transition(SearchStage.SEPARATING)
        if transitioned.success:
            await self.run_stage()
        return transitioned

    async def back_to_search(self) -> Result:
        """Drop the prepared playback and choose another"""
        self.project.instrumental_url = None
        self.project.original_vocals_url = None
        self.project.generated_playback_url = None
        self.project.flow.sections = []
        return await self._transition(SearchStage.SEARCH)

    async def _run_separating(self) -> None:
        if not await self._separate(self.project.flow.playback_url or self.project.generated_playback_url):
            return

        await self._advance(SearchStage.SPLITTING if self.sections else SearchStage.ANALYZING)

    async def _run_analyzing(self) -> None:
        await self._analyze(self._source_for_analysis())
        if not self.sections:
            return

        await self._advance(SearchStage.SPLITTING)

    async def _run_splitting(self) -> None:
        await self._split()
        await self._transition(SearchStage.READY_RECORD)

    async def _run_processing(self) -> None:
        await self._assemble_playback(SearchStage.FINISH)

    async def _finish(self) -> bool:
        if not (await self._transition(SearchStage.PROCESSING)).success:
            return False
        await self._run_processing()
        return self._is_stage(SearchStage.FINISH)
