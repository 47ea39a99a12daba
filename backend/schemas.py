from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from modules.tts_types import (
    DEFAULT_GEMINI_MODEL,
    AzureTtsParams,
    ElevenLabsTtsParams,
    GeminiTtsParams,
    TtsParams,
    WordTiming,
)
from segment_store import Segment


SegmentStatus = Literal["idle", "generating", "ready", "error"]
UploadStatus = Literal["pending", "uploading", "success", "failed"]


class AzureParamsModel(BaseModel):
    provider: Literal["azure"] = "azure"
    api_key: str = ""
    region: str = "eastus2"
    voice: str = "en-US-JennyNeural"
    rate: float = Field(default=1.0, ge=0.5, le=2.0)
    volume: float = Field(default=1.0, ge=0.0, le=1.0)
    pause_ms: int = Field(default=0, ge=0, le=5000)

    def to_params(self) -> TtsParams:
        return AzureTtsParams(**self.model_dump())


class ElevenLabsParamsModel(BaseModel):
    provider: Literal["elevenlabs"] = "elevenlabs"
    api_key: str = ""
    voice_id: str = ""
    model_id: str = "eleven_flash_v2_5"
    language_code: str | None = None
    output_format: str = "mp3_44100_128"
    stability: float | None = Field(default=None, ge=0.0, le=1.0)
    similarity_boost: float | None = Field(default=None, ge=0.0, le=1.0)
    style: float | None = Field(default=None, ge=0.0, le=1.0)
    use_speaker_boost: bool | None = None
    speed: float | None = Field(default=None, ge=0.7, le=1.2)
    seed: int | None = None
    apply_text_normalization: Literal["auto", "on", "off"] = "auto"
    enable_logging: bool = True
    optimize_streaming_latency: int | None = Field(default=None, ge=0, le=4)

    def to_params(self) -> TtsParams:
        return ElevenLabsTtsParams(**self.model_dump())


class GeminiParamsModel(BaseModel):
    provider: Literal["gemini"] = "gemini"
    api_key: str = ""
    model: str = DEFAULT_GEMINI_MODEL
    voice_name: str = "Kore"
    language_code: str | None = None
    style_prompt: str | None = None
    multi_speaker: bool = False
    speaker1_name: str | None = None
    speaker1_voice_name: str | None = None
    speaker2_name: str | None = None
    speaker2_voice_name: str | None = None

    def to_params(self) -> TtsParams:
        return GeminiTtsParams(**self.model_dump())


TtsParamsModel = Annotated[
    Union[AzureParamsModel, ElevenLabsParamsModel, GeminiParamsModel],
    Field(discriminator="provider"),
]


class TextRequest(BaseModel):
    text: str = Field(max_length=500_000)


class AudioUrlsRequest(BaseModel):
    audio_urls: list[str] = Field(default_factory=list)


class WordTimingsRequest(BaseModel):
    segment_word_timings: dict[str, Any] = Field(default_factory=dict)


class GenerateRequest(BaseModel):
    ids: list[str] = Field(min_length=1)
    priority: bool = False
    params: TtsParamsModel | None = None


class GenerateAllRequest(BaseModel):
    params: TtsParamsModel | None = None


class GenerateResponse(BaseModel):
    accepted: list[str]
    queued: list[str]
    in_flight: list[str]


class ConcurrencyRequest(BaseModel):
    tts: int | None = Field(default=None, ge=1)
    upload: int | None = Field(default=None, ge=1)


class ConcurrencyResponse(BaseModel):
    tts: int
    upload: int


class TtsSettingsRequest(BaseModel):
    params: TtsParamsModel


class SeekRequest(BaseModel):
    time: float = Field(ge=0.0)
    segment_id: str | None = None


class StepRequest(BaseModel):
    delta: float = 2.0


class WordTimingView(BaseModel):
    start: float
    end: float


class SegmentView(BaseModel):
    id: str
    text: str
    status: SegmentStatus
    error: str | None = None
    has_audio: bool = False
    mime_type: str | None = None
    duration: float | None = None
    word_timings: list[WordTimingView] | None = None
    upload_status: UploadStatus = "pending"
    upload_error: str | None = None
    upload_attempts: int = 0
    cloud_url: str | None = None

    @classmethod
    def from_segment(cls, segment: Segment) -> "SegmentView":
        audio = segment.audio
        return cls(
            id=segment.id,
            text=segment.text,
            status=segment.status,
            error=segment.error,
            has_audio=audio is not None,
            mime_type=audio.mime_type if audio is not None else None,
            duration=audio.duration if audio is not None else None,
            word_timings=_timing_views(segment.word_timings),
            upload_status=segment.upload_status,
            upload_error=segment.upload_error,
            upload_attempts=segment.upload_attempts,
            cloud_url=segment.cloud_url,
        )


def _timing_views(timings: tuple[WordTiming, ...] | None) -> list[WordTimingView] | None:
    if timings is None:
        return None
    return [WordTimingView(start=t.start, end=t.end) for t in timings]


class PlaybackView(BaseModel):
    active_segment_id: str | None = None
    is_playing: bool = False
    current_time: float = 0.0
    duration: float = 0.0
    sequence_mode: bool = False
    active_word_index: int | None = None
    last_error: str | None = None


class SessionStats(BaseModel):
    total: int
    ready: int
    generating: int
    error: int
    progress_percent: int


class SessionResponse(BaseModel):
    paragraph_key: str
    article_id: str | None = None
    segments: list[SegmentView]
    stats: SessionStats
    playback: PlaybackView
    notice: str | None = None
    tts_concurrency: int
    upload_concurrency: int


class ArticleCreateRequest(BaseModel):
    text: str = Field(min_length=1, max_length=500_000)
    title: str | None = Field(default=None, max_length=200)
    article_id: str | None = Field(default=None, max_length=128, pattern=r"^[A-Za-z0-9_-]+$")


class ArticleResponse(BaseModel):
    article_id: str
    title: str
    text: str
    created_at: datetime
    updated_at: datetime
    audio_urls: list[str] = Field(default_factory=list)
    segment_word_timings: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


class UploadAllResponse(BaseModel):
    article_id: str
    total: int
    success: int
    failed: int


class UploadSegmentResponse(BaseModel):
    article_id: str
    segment: SegmentView
    success: bool



class HydrateResponse(BaseModel):
    updated: list[str]
    session: SessionResponse
