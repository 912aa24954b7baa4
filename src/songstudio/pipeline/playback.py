"""
Playback Flow Steps
Separation, structure analysis, instrumental splitting and playback
assembly shared by the search and upload flows
"""

from typing import Dict, Optional, Union

from ..core.config import get_settings
from ..core.logging import pipeline_logger
from ..core.result import Result, ErrorKind
from ..audio.merge import Placement, overlay_at_offsets, slice_segments
from ..jobs.base import JobHandle, JobStatus
from ..jobs.poller import JobFailure
from ..storage.gateway import StorageCategory, build_storage_path
from .base import BaseStageController
from .structure import default_structure, parse_analysis

settings = get_settings()

ROLE_CATEGORIES = {
    "separation": StorageCategory.SEPARATED,
    "mix": StorageCategory.ROEX,
    "cleanup": StorageCategory.KITS_CLEANED,
}


class PlaybackFlowController(BaseStageController):
    """Common steps for flows that record over an existing song"""

    def _category_for(self, role: str) -> str:
        return ROLE_CATEGORIES.get(role, StorageCategory.AI_GENERATED)

    # Separation

    async def _separate(self, source_url: str) -> bool:
        """Split vocals from the source; True once an instrumental is stored"""
        if self.project.instrumental_url:
            return True

        params = {"audio_url": source_url}
        recovered = await self._consume_recovered("separation", params)
        if recovered:
            self._apply_separation(source_url, recovered)
            await self._persist()
            return True

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            instrumental = await self._promote(
                handle, outputs["instrumental"], StorageCategory.SEPARATED, "instrumental"
            )
            self._apply_separation(source_url, instrumental)
            await self._persist()

        outcome = await self._run_job(
            self.clients.separator,
            "separation",
            params,
            succeeded
        )
        return outcome.succeeded

    def _apply_separation(self, source_url: str, instrumental_url: str) -> None:
        # The full song is kept; the instrumental becomes the playback
        self.project.original_vocals_url = source_url
        self.project.instrumental_url = instrumental_url
        self.project.generated_playback_url = instrumental_url

    # Structure analysis

    async def _analyze(self, source_url: str) -> None:
        """Establish sections; analysis failures fall back to the default layout"""
        if self.sections:
            return

        async def fallback(failure: JobFailure) -> None:
            pipeline_logger.logger.warning(
                "Structure analysis failed, using default structure",
                project_id=self.project_id,
                error=failure.error
            )
            self.project.flow.sections = default_structure(self.project.song_duration)

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            analysis = await self.clients.analyzer.fetch_analysis(JobStatus.succeeded(outputs))
            if not analysis.success:
                await fallback(JobFailure(job_id=handle.job_id, error=analysis.error, kind=analysis.kind))
                return
            self.project.flow.sections = parse_analysis(analysis.data, self.project.song_duration)

        await self._run_job(
            self.clients.analyzer,
            "analysis",
            {"audio_url": source_url},
            succeeded,
            on_failed=fallback,
            interval=settings.ANALYZER_POLL_INTERVAL_SECONDS
        )
        if not self.sections:
            # Cancelled before any callback ran
            return
        await self._persist()

    # Splitting

    async def _split(self) -> None:
        """
        Cut the instrumental into per-section backing segments.

        Sections that already have a segment are skipped. Any failure
        leaves the remaining sections on the full instrumental.
        """
        instrumental = self.project.instrumental_url
        pending = [
            (index, section) for index, section in enumerate(self.sections)
            if not section.segment_url and section.start_time is not None and section.end_time is not None
        ]
        if not instrumental or not pending:
            return

        sliced = await slice_segments(
            instrumental,
            [(section.start_time, section.end_time) for _, section in pending],
            self.gateway.download
        )
        if not sliced.success:
            pipeline_logger.logger.warning(
                "Splitting failed, sections keep the full instrumental",
                project_id=self.project_id,
                error=sliced.error
            )
            return

        for (index, section), segment in zip(pending, sliced.data):
            if segment is None:
                continue
            path = build_storage_path(
                StorageCategory.SEGMENTS,
                str(self.project.user_id) if self.project.user_id else None,
                self.project.project_name,
                f"section_{index}",
                "wav",
                artifact_key=f"{instrumental}:section:{index}"
            )
            uploaded = await self.gateway.upload(segment.data, segment.content_type, path)
            if uploaded.success:
                section.segment_url = uploaded.data
            else:
                pipeline_logger.logger.warning(
                    "Segment upload failed", project_id=self.project_id, section=index, error=uploaded.error
                )

        await self._persist()

    # Recording stages

    async def _process_take(self, index: int, take_url: str) -> str:
        """Denoise a sung take through the vocal stem; any failure keeps the raw take"""
        if not settings.TAKE_DENOISE_ENABLED:
            return take_url

        denoised: Dict[str, str] = {}

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            if not outputs.get("vocals"):
                pipeline_logger.logger.warning(
                    "Denoise returned no vocal stem, keeping raw take", project_id=self.project_id, section=index
                )
                return
            denoised["url"] = await self._promote(
                handle, outputs["vocals"], StorageCategory.RECORDINGS, f"section_{index}_denoised"
            )

        async def keep_raw(failure: JobFailure) -> None:
            pipeline_logger.logger.warning(
                "Take denoise failed, keeping raw take",
                project_id=self.project_id,
                section=index,
                error=failure.error
            )

        await self._run_job(
            self.clients.separator,
            f"denoise:{index}",
            {"audio_url": take_url},
            succeeded,
            on_failed=keep_raw,
            max_attempts=settings.TAKE_DENOISE_MAX_ATTEMPTS
        )
        return denoised.get("url", take_url)

    async def record_free_take(self, audio: Union[bytes, str], content_type: str = "audio/wav") -> Result[str]:
        """Store a whole-song take recorded without section boundaries"""
        stored = await self._store_audio(audio, StorageCategory.RECORDINGS, "free_recording", content_type)
        if not stored.success:
            await self._report(stored.error, stored.kind)
            return stored
        self.project.vocals_url = stored.data
        await self._persist()
        return stored

    def can_finish(self) -> bool:
        if self._free_recording() and self.project.vocals_url:
            return True
        return super().can_finish()

    def _free_recording(self) -> bool:
        return self.stage == "free-recording"

    # Playback assembly

    async def _assemble_vocals(self) -> Result[str]:
        """One vocal track: section takes placed on the timeline, else the free take"""
        placements = [
            Placement(url=section.active_recording_url, start_time=section.start_time or 0.0)
            for section in self.sections
            if section.recordable and section.active_recording_url
        ]
        if not placements:
            if self.project.vocals_url:
                return Result.ok(self.project.vocals_url)
            return Result.err("No recordings to assemble", ErrorKind.INPUT)

        overlaid = await overlay_at_offsets(
            placements,
            self.gateway.download,
            offset_ms=self.project.mix.voice_offset_ms,
            total_duration=self.project.song_duration
        )
        if not overlaid.success:
            pipeline_logger.logger.warning(
                "Overlay failed, using first recording", project_id=self.project_id, error=overlaid.error
            )
            return Result.ok(placements[0].url)

        path = build_storage_path(
            StorageCategory.RECORDINGS,
            str(self.project.user_id) if self.project.user_id else None,
            self.project.project_name,
            "vocals",
            "wav",
            artifact_key=f"vocals:{'|'.join(p.url for p in placements)}:{self.project.mix.voice_offset_ms}"
        )
        return await self.gateway.upload(overlaid.data.data, overlaid.data.content_type, path)

    async def _cleanup_vocals(self, vocals_url: str) -> str:
        """Optional cleanup pass; any failure keeps the dry vocals"""
        if not settings.KITS_CLEANUP_ENABLED or not self.clients.cleanup.api_key:
            return vocals_url

        cleaned: Dict[str, str] = {}

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            cleaned["url"] = await self._promote(
                handle, outputs["vocals"], StorageCategory.KITS_CLEANED, "vocals_clean"
            )

        async def keep_dry(failure: JobFailure) -> None:
            pipeline_logger.logger.warning(
                "Vocal cleanup failed, using dry vocals", project_id=self.project_id, error=failure.error
            )

        await self._run_job(
            self.clients.cleanup,
            "cleanup",
            {"vocals_url": vocals_url},
            succeeded,
            on_failed=keep_dry
        )
        return cleaned.get("url", vocals_url)

    async def _assemble_playback(self, next_stage: str) -> bool:
        """
        Build the finished song: vocals, optional cleanup, then mix.

        Moves to `next_stage` and completes the project only when the
        mix succeeds.
        """
        instrumental = self.project.instrumental_url or self.project.generated_playback_url
        if not instrumental:
            await self._report("No instrumental to mix with", ErrorKind.INPUT)
            return False

        vocals = await self._assemble_vocals()
        if not vocals.success:
            await self._report(vocals.error, vocals.kind)
            return False

        vocals_url = await self._cleanup_vocals(vocals.data)
        self.project.vocals_url = vocals_url
        await self._persist()

        params = {"vocals_url": vocals_url, "instrumental_url": instrumental}
        recovered = await self._consume_recovered("mix", params)
        if recovered:
            return await self._mixed(recovered, next_stage)

        done: Dict[str, bool] = {}

        async def succeeded(handle: JobHandle, outputs: Dict[str, str]) -> None:
            mix_url = await self._promote(handle, outputs["mix"], StorageCategory.ROEX, "mix")
            done["ok"] = await self._mixed(mix_url, next_stage)

        await self._run_job(
            self.clients.mixer,
            "mix",
            params,
            succeeded,
            max_attempts=settings.MIXER_MAX_ATTEMPTS
        )
        return done.get("ok", False)

    async def _mixed(self, mix_url: str, next_stage: str) -> bool:
        self.project.generated_song_url = mix_url
        if not (await self._transition(next_stage)).success:
            return False
        return await self._complete(mix_url, self.project.song_duration)

    async def save_draft(self) -> Result:
        """Keep the recordings and stop before processing"""
        return await self._transition(self.stages.READY_RECORD)

    def _source_for_analysis(self) -> Optional[str]:
        return self.project.original_vocals_url or self.project.generated_playback_url

    async def start_recording(self, index: Optional[int] = None) -> Result:
        """Enter the per-section recording loop"""
        if not self.sections:
            await self._report("Song has no sections to record", ErrorKind.INPUT)
            return Result.err("Song has no sections to record", ErrorKind.INPUT)

        target = self._next_unrecorded(-1) if index is None else index
        selected = self.select_section(target)
        if not selected.success:
            return selected
        return await self._transition(self.stages.RECORDING)

    async def start_free_recording(self) -> Result:
        """Record the whole song in one take"""
        return await self._transition(self.stages.FREE_RECORDING)

    async def back_to_ready(self) -> Result:
        return await self._transition(self.stages.READY_RECORD)
