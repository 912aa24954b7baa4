"""
Pipeline State Model
Sections, per-flow stage machines and the serialized project document
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Optional, Union, Literal

from pydantic import BaseModel, Field

from ..core.config import get_settings

settings = get_settings()


class SectionType(str, Enum):
    INTRO = "intro"
    VERSE = "verse"
    CHORUS = "chorus"
    BRIDGE = "bridge"
    OUTRO = "outro"


# Sections the user sings over; intro/outro are instrumental
RECORDABLE_TYPES = {SectionType.VERSE, SectionType.CHORUS, SectionType.BRIDGE}


class ProjectStatus(str, Enum):
    OPEN = "open"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"


class FlowMode(str, Enum):
    SEARCH = "search"
    UPLOAD = "upload"
    AI = "ai"
    NARRATION = "narration"


class SectionRecording(BaseModel):
    """One take layered onto a section (harmonies, doubles)"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    audio_url: str
    label: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Section(BaseModel):
    """One lyrical unit of the song"""
    type: SectionType
    label: str
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    duration: Optional[float] = None

    # Initial take (AI metronome recording, narration)
    audio_url: Optional[str] = None
    # Take recorded over the catalog/uploaded playback
    user_recording_url: Optional[str] = None
    # Per-section backing track cut from the instrumental or generated for it
    segment_url: Optional[str] = None
    instrumental_url: Optional[str] = None
    # Take re-recorded over the generated instrumental
    final_recording_url: Optional[str] = None

    recordings: List[SectionRecording] = Field(default_factory=list)

    @property
    def recordable(self) -> bool:
        return self.type in RECORDABLE_TYPES

    @property
    def active_recording_url(self) -> Optional[str]:
        """Latest take for the recording stages"""
        if self.user_recording_url:
            return self.user_recording_url
        if self.audio_url:
            return self.audio_url
        if self.recordings:
            return self.recordings[-1].audio_url
        return None

    @property
    def backing_url(self) -> Optional[str]:
        return self.instrumental_url or self.segment_url


class SearchStage(str, Enum):
    SEARCH = "search"
    SEPARATING = "separating"
    ANALYZING = "analyzing"
    SPLITTING = "splitting"
    READY_RECORD = "ready-record"
    RECORDING = "recording"
    FREE_RECORDING = "free-recording"
    PROCESSING = "processing"
    FINISH = "finish"


class UploadStage(str, Enum):
    UPLOAD = "upload"
    PROCESSING = "processing"
    SPLITTING = "splitting"
    READY_RECORD = "ready-record"
    RECORDING = "recording"
    FREE_RECORDING = "free-recording"
    CREATING_PLAYBACK = "creating-playback"
    FINISH = "finish"


class AiStage(str, Enum):
    SELECT_TEMPO = "select-tempo"
    METRONOME_RECORDING = "metronome-recording"
    SELECT_STYLE = "select-style"
    PROCESSING = "processing"
    FINAL_RECORDING = "final-recording"
    GENERATING_INTRO_OUTRO = "generating-intro-outro"
    MERGING = "merging"
    FINISH = "finish"


class NarrationStage(str, Enum):
    RECORDING = "recording"
    ENHANCING = "enhancing"
    FINISH = "finish"


class SearchFlowState(BaseModel):
    mode: Literal["search"] = "search"
    stage: SearchStage = SearchStage.SEARCH
    sections: List[Section] = Field(default_factory=list)
    current_section_index: int = 0
    playback_title: Optional[str] = None
    playback_url: Optional[str] = None


class UploadFlowState(BaseModel):
    mode: Literal["upload"] = "upload"
    stage: UploadStage = UploadStage.UPLOAD
    sections: List[Section] = Field(default_factory=list)
    current_section_index: int = 0
    uploaded_file_url: Optional[str] = None


class AiFlowState(BaseModel):
    mode: Literal["ai"] = "ai"
    stage: AiStage = AiStage.SELECT_TEMPO
    sections: List[Section] = Field(default_factory=list)
    current_section_index: int = 0
    metronome_recording_url: Optional[str] = None


class NarrationFlowState(BaseModel):
    mode: Literal["narration"] = "narration"
    stage: NarrationStage = NarrationStage.RECORDING
    sections: List[Section] = Field(default_factory=list)
    current_section_index: int = 0
    recording_url: Optional[str] = None


FlowState = Annotated[
    Union[SearchFlowState, UploadFlowState, AiFlowState, NarrationFlowState],
    Field(discriminator="mode")
]

FLOW_STATES = {
    FlowMode.SEARCH: SearchFlowState,
    FlowMode.UPLOAD: UploadFlowState,
    FlowMode.AI: AiFlowState,
    FlowMode.NARRATION: NarrationFlowState,
}


class TempoSettings(BaseModel):
    bpm: int = Field(default=settings.DEFAULT_BPM, ge=30, le=300)
    time_signature: str = "4/4"


class MixSettings(BaseModel):
    vocal_volume: float = Field(default=1.0, ge=0.0, le=2.0)
    music_volume: float = Field(default=1.0, ge=0.0, le=2.0)
    voice_offset_ms: float = 0.0


class ProjectData(BaseModel):
    """
    In-memory project document.

    Everything except the identity fields is serialized into the
    `verses` column, so a project can be resumed from any stage.
    """
    project_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    status: ProjectStatus = ProjectStatus.OPEN

    project_name: str = settings.DEFAULT_SONG_NAME
    flow: FlowState = Field(default_factory=SearchFlowState)
    playback_id: Optional[str] = None

    # Shared assets
    generated_playback_url: Optional[str] = None
    instrumental_url: Optional[str] = None
    vocals_url: Optional[str] = None
    original_vocals_url: Optional[str] = None
    generated_song_url: Optional[str] = None
    intro_url: Optional[str] = None
    outro_url: Optional[str] = None

    # Generation parameters
    music_style: Optional[str] = None
    negative_tags: Optional[str] = None
    vocal_gender: str = Field(default="m", pattern=r"^(m|f)$")
    tempo: TempoSettings = Field(default_factory=TempoSettings)
    mix: MixSettings = Field(default_factory=MixSettings)
    song_duration: Optional[float] = None

    @classmethod
    def new(cls, mode: FlowMode, **kwargs) -> "ProjectData":
        return cls(flow=FLOW_STATES[FlowMode(mode)](), **kwargs)

    @property
    def mode(self) -> FlowMode:
        return FlowMode(self.flow.mode)

    @property
    def stage(self) -> str:
        return self.flow.stage.value

    @property
    def sections(self) -> List[Section]:
        return self.flow.sections

    def to_document(self) -> dict:
        """Plain JSON document for the `verses` column"""
        return self.model_dump(mode="json", exclude={"project_id", "user_id", "status"})


class SessionContext(BaseModel):
    """How a controller was entered: fresh, or resuming a saved project"""
    is_resuming: bool = False
    resume_project_id: Optional[uuid.UUID] = None


def all_recorded(sections: List[Section], stage: Optional[str] = None) -> bool:
    """
    True when every recordable section has a take for the active stage.

    During the AI final-recording stage only re-recorded takes count.
    A song with no recordable sections is never complete.
    """
    recordable = [section for section in sections if section.recordable]
    if not recordable:
        return False

    if stage == AiStage.FINAL_RECORDING.value:
        return all(section.final_recording_url for section in recordable)

    return all(section.active_recording_url for section in recordable)


def _has_recording(project: ProjectData) -> bool:
    return bool(project.vocals_url) or any(s.active_recording_url for s in project.sections)


def _has_sections(project: ProjectData) -> bool:
    return bool(project.sections)


# Inputs each persisted stage needs to be re-entered; stages not listed need none
STAGE_REQUIREMENTS = {
    FlowMode.SEARCH: {
        SearchStage.SEPARATING: lambda p: bool(p.generated_playback_url),
        SearchStage.ANALYZING: lambda p: bool(p.instrumental_url),
        SearchStage.SPLITTING: lambda p: bool(p.instrumental_url) and _has_sections(p),
        SearchStage.READY_RECORD: _has_sections,
        SearchStage.RECORDING: _has_sections,
        SearchStage.FREE_RECORDING: _has_sections,
        SearchStage.PROCESSING: _has_recording,
        SearchStage.FINISH: lambda p: bool(p.generated_song_url),
    },
    FlowMode.UPLOAD: {
        UploadStage.PROCESSING: lambda p: bool(p.flow.uploaded_file_url),
        UploadStage.SPLITTING: lambda p: bool(p.instrumental_url) and _has_sections(p),
        UploadStage.READY_RECORD: _has_sections,
        UploadStage.RECORDING: _has_sections,
        UploadStage.FREE_RECORDING: _has_sections,
        UploadStage.CREATING_PLAYBACK: _has_recording,
        UploadStage.FINISH: lambda p: bool(p.generated_song_url),
    },
    FlowMode.AI: {
        AiStage.METRONOME_RECORDING: _has_sections,
        AiStage.SELECT_STYLE: lambda p: all_recorded(p.sections),
        AiStage.PROCESSING: lambda p: all_recorded(p.sections),
        AiStage.FINAL_RECORDING: lambda p: _has_sections(p) and all(
            s.instrumental_url for s in p.sections if s.recordable
        ),
        AiStage.GENERATING_INTRO_OUTRO: lambda p: all_recorded(p.sections, AiStage.FINAL_RECORDING),
        AiStage.MERGING: lambda p: all_recorded(p.sections, AiStage.FINAL_RECORDING),
        AiStage.FINISH: lambda p: bool(p.generated_song_url),
    },
    FlowMode.NARRATION: {
        NarrationStage.ENHANCING: lambda p: bool(p.flow.recording_url),
        NarrationStage.FINISH: lambda p: bool(p.generated_song_url),
    },
}


def resolve_stage(project: ProjectData):
    """
    Latest stage at or before the persisted one whose inputs are present.

    Walks back through the flow's stage order, so a project saved at a
    stage whose assets were never written resumes where it can proceed.
    """
    requirements = STAGE_REQUIREMENTS[project.mode]
    stages = list(type(project.flow.stage))
    position = stages.index(project.flow.stage)

    for stage in reversed(stages[:position + 1]):
        check = requirements.get(stage)
        if check is None or check(project):
            return stage

    return stages[0]
