"""
Unit tests for the pipeline state model
Completeness rules, flow documents and resume stage resolution
"""
import pytest
from pydantic import ValidationError

from songstudio.pipeline.state import (
    AiFlowState,
    AiStage,
    FlowMode,
    NarrationStage,
    ProjectData,
    SearchFlowState,
    SearchStage,
    Section,
    SectionRecording,
    SectionType,
    UploadStage,
    all_recorded,
    resolve_stage
)


def section(section_type=SectionType.VERSE, **kwargs):
    return Section(type=section_type, label=section_type.value, **kwargs)


@pytest.mark.unit
class TestAllRecorded:
    """Finish gating"""

    def test_every_recordable_section_needs_a_take(self):
        sections = [
            section(SectionType.INTRO),
            section(SectionType.VERSE, audio_url="https://cdn.test/v.wav"),
            section(SectionType.CHORUS),
        ]
        assert not all_recorded(sections)

        sections[2].user_recording_url = "https://cdn.test/c.wav"
        assert all_recorded(sections)

    def test_intro_and_outro_are_not_required(self):
        sections = [
            section(SectionType.INTRO),
            section(SectionType.VERSE, audio_url="https://cdn.test/v.wav"),
            section(SectionType.OUTRO),
        ]
        assert all_recorded(sections)

    def test_no_recordable_sections_is_never_complete(self):
        assert not all_recorded([])
        assert not all_recorded([section(SectionType.INTRO), section(SectionType.OUTRO)])

    def test_final_recording_stage_only_counts_final_takes(self):
        sections = [section(SectionType.VERSE, audio_url="https://cdn.test/v.wav")]
        assert not all_recorded(sections, AiStage.FINAL_RECORDING.value)

        sections[0].final_recording_url = "https://cdn.test/final.wav"
        assert all_recorded(sections, AiStage.FINAL_RECORDING.value)

    def test_layered_take_counts(self):
        verse = section(recordings=[SectionRecording(audio_url="https://cdn.test/layer.wav")])
        assert all_recorded([verse])


@pytest.mark.unit
class TestSection:

    def test_active_recording_precedence(self):
        verse = section(
            audio_url="https://cdn.test/metronome.wav",
            recordings=[SectionRecording(audio_url="https://cdn.test/layer.wav")]
        )
        assert verse.active_recording_url == "https://cdn.test/metronome.wav"

        verse.user_recording_url = "https://cdn.test/take.wav"
        assert verse.active_recording_url == "https://cdn.test/take.wav"

        assert section().active_recording_url is None

    def test_backing_prefers_generated_instrumental(self):
        verse = section(segment_url="https://cdn.test/slice.wav")
        assert verse.backing_url == "https://cdn.test/slice.wav"

        verse.instrumental_url = "https://cdn.test/generated.mp3"
        assert verse.backing_url == "https://cdn.test/generated.mp3"


@pytest.mark.unit
class TestProjectDocument:
    """Serialized `verses` document"""

    def test_new_project_starts_at_first_stage(self):
        project = ProjectData.new(FlowMode.AI, project_name="Song")

        assert project.mode == FlowMode.AI
        assert project.stage == "select-tempo"
        assert isinstance(project.flow, AiFlowState)

    def test_document_round_trip_selects_flow_by_mode(self):
        project = ProjectData.new(FlowMode.SEARCH, project_name="Song", playback_id="pb-1")
        project.flow.stage = SearchStage.READY_RECORD
        project.flow.sections = [section(SectionType.CHORUS, start_time=10.0, end_time=40.0)]

        document = project.to_document()
        restored = ProjectData.model_validate(document)

        assert "project_id" not in document
        assert "status" not in document
        assert document["flow"]["mode"] == "search"
        assert isinstance(restored.flow, SearchFlowState)
        assert restored.flow.stage == SearchStage.READY_RECORD
        assert restored.sections[0].end_time == 40.0
        assert restored.playback_id == "pb-1"

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(ValidationError):
            ProjectData.model_validate({"flow": {"mode": "karaoke"}})

    def test_stage_must_belong_to_mode(self):
        with pytest.raises(ValidationError):
            ProjectData.model_validate({"flow": {"mode": "narration", "stage": "separating"}})

    def test_vocal_gender_is_validated(self):
        with pytest.raises(ValidationError):
            ProjectData(vocal_gender="x")


@pytest.mark.unit
class TestResolveStage:
    """Resume steps back to the latest stage whose inputs exist"""

    def test_stage_with_inputs_is_kept(self):
        project = ProjectData.new(FlowMode.SEARCH)
        project.flow.stage = SearchStage.READY_RECORD
        project.flow.sections = [section()]

        assert resolve_stage(project) == SearchStage.READY_RECORD

    def test_steps_back_when_assets_are_missing(self):
        project = ProjectData.new(FlowMode.SEARCH)
        project.flow.stage = SearchStage.PROCESSING
        project.generated_playback_url = "https://cdn.test/song.mp3"

        # No sections, no instrumental: only separation can run
        assert resolve_stage(project) == SearchStage.SEPARATING

    def test_falls_back_to_first_stage(self):
        project = ProjectData.new(FlowMode.UPLOAD)
        project.flow.stage = UploadStage.CREATING_PLAYBACK

        assert resolve_stage(project) == UploadStage.UPLOAD

    def test_ai_final_recording_needs_generated_instrumentals(self):
        project = ProjectData.new(FlowMode.AI)
        project.flow.stage = AiStage.FINAL_RECORDING
        project.flow.sections = [section(audio_url="https://cdn.test/take.wav")]

        assert resolve_stage(project) == AiStage.PROCESSING

        project.flow.sections[0].instrumental_url = "https://cdn.test/inst.mp3"
        assert resolve_stage(project) == AiStage.FINAL_RECORDING

    def test_finish_without_song_steps_back(self):
        project = ProjectData.new(FlowMode.NARRATION)
        project.flow.stage = NarrationStage.FINISH
        project.flow.recording_url = "https://cdn.test/narration.wav"

        assert resolve_stage(project) == NarrationStage.ENHANCING
