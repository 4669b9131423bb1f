"""
Pydantic models and enums for the training video pipeline.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ..presets import DEFAULT_BACKGROUND, NarratorVoice


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ── Generation Stage ─────────────────────────────────────────────────────────

class GenerationStage(str, Enum):
    IDLE = "idle"
    GENERATING_AUDIO = "generating_audio"
    GENERATING_VIDEO = "generating_video"
    APPLYING_LIPSYNC = "applying_lipsync"
    COMPLETE = "complete"
    ERROR = "error"


# Forward-only ordering. ERROR is reachable from any non-terminal stage.
STAGE_ORDER = [
    GenerationStage.IDLE,
    GenerationStage.GENERATING_AUDIO,
    GenerationStage.GENERATING_VIDEO,
    GenerationStage.APPLYING_LIPSYNC,
    GenerationStage.COMPLETE,
]

TERMINAL_STAGES = {GenerationStage.COMPLETE, GenerationStage.ERROR}


def can_transition(current: GenerationStage, target: GenerationStage) -> bool:
    if current in TERMINAL_STAGES:
        return False
    if target == GenerationStage.ERROR:
        return True
    return STAGE_ORDER.index(target) == STAGE_ORDER.index(current) + 1


# ── Inputs ───────────────────────────────────────────────────────────────────

class ImageSource(BaseModel):
    """An image given either as a URL or as an inline base64 payload."""
    model_config = ConfigDict(frozen=True)

    url: Optional[str] = None
    data: Optional[str] = None  # base64, no data: prefix
    mime_type: str = "image/png"

    @property
    def reference(self) -> Optional[str]:
        if self.url:
            return self.url
        if self.data:
            return f"data:{self.mime_type};base64,{self.data}"
        return None

    @property
    def inline_payload(self) -> Optional[str]:
        """Raw base64 when the image is inline (or embedded in a data: URL)."""
        if self.data:
            return self.data
        if self.url and self.url.startswith("data:") and "," in self.url:
            return self.url.split(",", 1)[1]
        return None


class GenerationRequest(BaseModel):
    """Immutable input to one pipeline run."""
    model_config = ConfigDict(frozen=True)

    script: str = ""
    voice: NarratorVoice = NarratorVoice.NOVA
    character_image: Optional[ImageSource] = None
    background: Optional[str] = DEFAULT_BACKGROUND
    custom_background: Optional[ImageSource] = None
    user_id: str
    title: Optional[str] = None
    description: Optional[str] = None


# ── Run State ────────────────────────────────────────────────────────────────

class AudioReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str  # http(s) URL or data: URI
    inline: bool = False


class GenerationJob(BaseModel):
    """Mutable state of a single run, owned by one controller call."""
    model_config = ConfigDict(validate_assignment=True)

    job_id: str
    user_id: str = ""
    stage: GenerationStage = GenerationStage.IDLE
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    audio_url: Optional[str] = None
    video_url: Optional[str] = None
    final_video_url: Optional[str] = None
    lipsync_applied: bool = False
    notices: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now_utc)
    updated_at: datetime = Field(default_factory=_now_utc)


class ProgressEvent(BaseModel):
    job_id: str
    stage: GenerationStage
    progress: int
    error: Optional[str] = None
    notice: Optional[str] = None
    final_video_url: Optional[str] = None


# ── Video Submission (sum type) ──────────────────────────────────────────────

class AsyncTaskHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    provider: str = "replicate"
    created_at: int = Field(default_factory=_now_ms)  # epoch ms


class ImmediateVideo(BaseModel):
    kind: Literal["immediate"] = "immediate"
    video_url: str


class DeferredVideo(BaseModel):
    kind: Literal["deferred"] = "deferred"
    handle: AsyncTaskHandle


VideoSubmission = Annotated[Union[ImmediateVideo, DeferredVideo], Field(discriminator="kind")]


class TaskOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskStatus(BaseModel):
    outcome: TaskOutcome
    video_url: Optional[str] = None
    error: Optional[str] = None
    raw_status: str = ""


# ── Compositing ──────────────────────────────────────────────────────────────

class CompositeResult(BaseModel):
    image_url: str
    method: str = "full_composite"


# ── Voice Cache ──────────────────────────────────────────────────────────────

class VoiceCacheEntry(BaseModel):
    """Stored value of a cached voice preview, serialized with camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    audio_url: str = Field(alias="audioUrl")
    timestamp: int  # epoch ms


class AudioHandle(BaseModel):
    voice_id: str
    audio_url: str
    cached: bool = False


class PreloadProgress(BaseModel):
    processed: int
    cached: int
    total: int
    failed: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return round(self.processed / self.total * 100)


# ── Persistence ──────────────────────────────────────────────────────────────

class PersistedVideoRecord(BaseModel):
    user_id: str
    title: str
    description: str = ""
    video_url: str
    voice: str
    background: str
    lipsync_applied: bool = False
    created_at: datetime = Field(default_factory=_now_utc)


# ── API Request / Response Models ────────────────────────────────────────────

class TrainingRunRequest(BaseModel):
    job_id: Optional[str] = None
    user_id: str
    script: str
    voice: NarratorVoice = NarratorVoice.NOVA
    character_image_url: Optional[str] = None
    character_image_base64: Optional[str] = None
    background: Optional[str] = DEFAULT_BACKGROUND
    custom_background_url: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    def to_generation_request(self) -> GenerationRequest:
        character = None
        if self.character_image_url or self.character_image_base64:
            character = ImageSource(url=self.character_image_url, data=self.character_image_base64)
        custom_bg = ImageSource(url=self.custom_background_url) if self.custom_background_url else None
        return GenerationRequest(
            script=self.script,
            voice=self.voice,
            character_image=character,
            background=self.background,
            custom_background=custom_bg,
            user_id=self.user_id,
            title=self.title,
            description=self.description,
        )


class VoicePreviewResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    voice_id: str = Field(alias="voiceId")
    audio_url: str = Field(alias="audioUrl")
    cached: bool
