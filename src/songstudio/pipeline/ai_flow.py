"""
AI Flow
Sing to a metronome, generate an instrumental per section, re-record
over it, then wrap the song with a generated intro and outro
"""

from typing import Dict, List, Optional

from ..audio.merge import merge_audio_segments
from ..core.logging import pipeline_logger
from ..core.result import Result, ErrorKind
from ..jobs.base import JobHandle
from ..storage.gateway import StorageCategory, build_storage_path
from .base import BaseStageController
from .state import AiStage, FlowMode, SectionType, TempoSettings, all_recorded
from .structure import sections_from_types

INTRO_OUTRO_PARTS = ("intro", "outro")


def section_role(index: int) -> str:
    return f"section:{index}"


class AiFlowController(BaseStageController):
    """select-tempo -> metronome-recording -> select-style -> processing -> final-recording
    -> generating-intro-outro -> merging -> finish"""

    mode = FlowMode.AI
    stages = AiStage

    PROCESSING_STAGES = (
        AiStage.PROCESSING,
        AiStage.GENERATING_INTRO_OUTRO,
        AiStage.MERGING,
    )

    RECORDING_STAGES = (AiStage.METRONOME_RECORDING, AiStage.FINAL_RECORDING)

    def _take_field(self) -> str:
        if self._is_stage(AiStage.FINAL_RECORDING):
            return "final_recording_url"
        return "audio_url"

    async def select_tempo(
        self,
        bpm: int,
        time_signature: str = "4/4",
        section_types: Optional[List[SectionType]] = None
    ) -> Result:
        """Fix the tempo and the song layout, then open metronome recording"""
        if not self._is_stage(AiStage.SELECT_TEMPO):
            return Result.err(f"Cannot set tempo during {self.stage}", ErrorKind.INPUT)

        self.project.tempo = TempoSettings(bpm=bpm, time_signature=time_signature)
        if section_types:
            self.project.flow.sections = sections_from_types(section_types)
        if not self.sections:
            self.project.flow.sections = sections_from_types([SectionType.VERSE, SectionType.CHORUS])

        self.project.flow.current_section_index = 0
        return await self._transition(AiStage.METRONOME_RECORDING)

    async def confirm_recordings(self) -> Result:
        """
        Merge the metronome takes into one file and move on to style
        selection. Blocked until every section has a take.
        """
        if not self._is_stage(AiStage.METRONOME_RECORDING):
            return Result.err(f"Cannot confirm recordings during {self.stage}", ErrorKind.INPUT)
        if not all_recorded(self.sections):
            return Result.err("Every section needs a recording", ErrorKind.INPUT)

        takes = [section.audio_url for section in self.sections if section.recordable]
        merged = await merge_audio_segments(takes, self.gateway.download)
        if not merged.success:
            await self._report(merged.error, merged.kind)
            return merged.propagate()

        path = build_storage_path(
            StorageCategory.MERGED,
            str(self.project.user_id) if self.project.user_id else None,
            self.project.project_name,
            "metronome",
            "wav",
            artifact_key="metronome:" + "|".join(takes)
        )
        uploaded = await self.gateway.upload(merged.data.data, merged.data.content_type, path)
        if not uploaded.success:
            await self._report(uploaded.error, uploaded.kind)
            return uploaded

        self.project.flow.metronome_recording_url = uploaded.data
        return await self._transition(AiStage.SELECT_STYLE)

    async def select_style(
        self,
        tags: str,
        negative_tags: Optional[str] = None,
        vocal_gender: str = "m"
    ) -> Result:
        """Choose the musical style and generate instrumentals"""
        if not self._is_stage(AiStage.SELECT_STYLE):
            return Result.err(f"Cannot select a style during {self.stage}", ErrorKind.INPUT)
        if not tags or not tags.strip():
            await self._report("A music style is required", ErrorKind.INPUT)
            return Result.err("A music style is required", ErrorKind.INPUT)

        self.project.music_style = tags
        self.project.negative_tags = negative_tags
        self.project.vocal_gender = vocal_gender

        transitioned = await self._transition(AiStage.PROCESSING)
        if transitioned.success:
            await self.run_stage()
        return transitioned

    async def _run_processing(self) -> None:
        """One instrumental per recorded section, generated concurrently"""
        pending = [
            index for index, section in enumerate(self.sections)
            if section.recordable and not section.instrumental_url
        ]

        jobs = {
            section_role(index): {
                "upload_url": self.sections[index].audio_url,
                "title": self.project.project_name,
                "section_index": index,
                "tags": self.project.music_style,
                "negative_tags": self.project.negative_tags,
                "vocal_gender": self.project.vocal_gender,
            }
            for index in pending
        }

        for index in list(pending):
            role = section_role(index)
            recovered = await self._consume_recovered(role, jobs[role])
            if recovered:
                self.sections[index].instrumental_url = recovered
                pending.remove(index)
                del jobs[role]

        if not pending:
            await self._instrumentals_ready()
            return

        async def all_succeeded(handles: Dict[str, JobHandle], outputs: Dict[str, Dict[str, str]]) -> None:
            for index in pending:
                role = section_role(index)
                self.sections[index].instrumental_url = await self._promote(
                    handles[role], outputs[role]["audio"], StorageCategory.AI_GENERATED, f"section_{index}"
                )
            await self._instrumentals_ready()

        await self._run_group(self.clients.instrumental, jobs, all_succeeded)

    async def _instrumentals_ready(self) -> None:
        self.project.flow.current_section_index = 0
        await self._transition(AiStage.FINAL_RECORDING)

    def can_finish(self) -> bool:
        return self._is_stage(AiStage.FINAL_RECORDING) and all_recorded(self.sections, self.stage)

    async def _finish(self) -> bool:
        if not await self._advance(AiStage.GENERATING_INTRO_OUTRO):
            return False
        return self._is_stage(AiStage.FINISH)

    async def _run_generating_intro_outro(self) -> None:
        """Intro and outro are started together; merging waits for both"""
        pending = [
            part for part in INTRO_OUTRO_PARTS
            if not getattr(self.project, f"{part}_url")
        ]

        jobs = {
            part: {"part": part, "title": self.project.project_name, "tags": self.project.music_style}
            for part in pending
        }

        for part in list(pending):
            recovered = await self._consume_recovered(part, jobs[part])
            if recovered:
                setattr(self.project, f"{part}_url", recovered)
                pending.remove(part)
                del jobs[part]

        if not pending:
            await self._intro_outro_ready()
            return

        async def all_succeeded(handles: Dict[str, JobHandle], outputs: Dict[str, Dict[str, str]]) -> None:
            for part in pending:
                url = await self._promote(handles[part], outputs[part]["audio"], StorageCategory.AI_GENERATED, part)
                setattr(self.project, f"{part}_url", url)
            await self._intro_outro_ready()

        await self._run_group(self.clients.intro_outro, jobs, all_succeeded)

    async def _intro_outro_ready(self) -> None:
        await self._advance(AiStage.MERGING)

    def final_parts(self) -> List[str]:
        """Intro, each section's final take in section order, outro"""
        parts = [self.project.intro_url]
        parts.extend(section.final_recording_url for section in self.sections if section.recordable)
        parts.append(self.project.outro_url)
        return [url for url in parts if url]

    async def _run_merging(self) -> None:
        parts = self.final_parts()
        if not parts:
            await self._report("Nothing to merge", ErrorKind.INPUT)
            return

        duration = None
        if len(parts) == 1:
            final_url = parts[0]
        else:
            merged = await merge_audio_segments(parts, self.gateway.download)
            if not merged.success:
                await self._report(merged.error, merged.kind)
                return

            path = build_storage_path(
                StorageCategory.FINAL,
                str(self.project.user_id) if self.project.user_id else None,
                self.project.project_name,
                "final",
                "wav",
                artifact_key="final:" + "|".join(parts)
            )
            uploaded = await self.gateway.upload(merged.data.data, merged.data.content_type, path)
            if not uploaded.success:
                await self._report(uploaded.error, uploaded.kind)
                return
            final_url = uploaded.data
            duration = merged.data.duration

        pipeline_logger.logger.info(
            "Final song assembled",
            project_id=self.project_id,
            parts=len(parts)
        )
        self.project.generated_song_url = final_url
        self.project.song_duration = duration or self.project.song_duration
        if not (await self._transition(AiStage.FINISH)).success:
            return
        await self._complete(final_url, self.project.song_duration)
