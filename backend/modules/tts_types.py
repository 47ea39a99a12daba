from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union


TtsProviderName = Literal["azure", "elevenlabs", "gemini"]
ApplyTextNormalization = Literal["auto", "on", "off"]

GEMINI_TTS_MODELS = (
    "gemini-2.5-flash-preview-tts",
    "gemini-2.5-pro-preview-tts",
)
DEFAULT_GEMINI_MODEL = GEMINI_TTS_MODELS[0]


@dataclass(frozen=True)
class AzureTtsParams:
    api_key: str
    region: str = "eastus2"
    voice: str = "en-US-JennyNeural"
    rate: float = 1.0
    volume: float = 1.0
    pause_ms: int = 0
    provider: Literal["azure"] = "azure"


@dataclass(frozen=True)
class ElevenLabsTtsParams:
    api_key: str
    voice_id: str = ""
    model_id: str = "eleven_flash_v2_5"
    language_code: str | None = None
    output_format: str = "mp3_44100_128"
    stability: float | None = None
    similarity_boost: float | None = None
    style: float | None = None
    use_speaker_boost: bool | None = None
    speed: float | None = None
    seed: int | None = None
    apply_text_normalization: ApplyTextNormalization = "auto"
    enable_logging: bool = True
    optimize_streaming_latency: int | None = None
    provider: Literal["elevenlabs"] = "elevenlabs"


@dataclass(frozen=True)
class GeminiTtsParams:
    api_key: str
    model: str = DEFAULT_GEMINI_MODEL
    voice_name: str = "Kore"
    language_code: str | None = None
    style_prompt: str | None = None
    multi_speaker: bool = False
    speaker1_name: str | None = None
    speaker1_voice_name: str | None = None
    speaker2_name: str | None = None
    speaker2_voice_name: str | None = None
    provider: Literal["gemini"] = "gemini"


TtsParams = Union[AzureTtsParams, ElevenLabsTtsParams, GeminiTtsParams]


@dataclass(frozen=True)
class WordTiming:
    start: float
    end: float


@dataclass(frozen=True)
class SynthesisResult:
    audio: bytes
    mime_type: str = "audio/wav"
    word_timings: tuple[WordTiming, ...] | None = None
