from __future__ import annotations

import base64
from typing import Any

import requests

from modules.errors import SynthesisError
from modules.paragraphs import WORD_PATTERN
from modules.tts_base import TtsProvider, pcm_to_wav, request_timeout
from modules.tts_types import ElevenLabsTtsParams, SynthesisResult, WordTiming

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1/text-to-speech"


def _mime_for_format(output_format: str) -> str:
    codec = (output_format or "mp3").split("_", 1)[0]
    return {
        "mp3": "audio/mpeg",
        "pcm": "audio/wav",
        "ulaw": "audio/basic",
        "alaw": "audio/basic",
        "opus": "audio/ogg",
    }.get(codec, "audio/mpeg")


def _pcm_rate(output_format: str) -> int:
    try:
        return int(output_format.split("_")[1])
    except (IndexError, ValueError):
        return 24000


def alignment_to_word_timings(alignment: dict[str, Any] | None) -> tuple[WordTiming, ...] | None:
    """Fold per-character alignment into one interval per spoken word.

    Words are matched with the same pattern the reader uses to tokenize text,
    so the Nth timing lines up with the Nth highlighted word.
    """
    if not isinstance(alignment, dict):
        return None
    chars = alignment.get("characters") or []
    starts = alignment.get("character_start_times_seconds") or []
    ends = alignment.get("character_end_times_seconds") or []
    if not chars or len(chars) != len(starts) or len(chars) != len(ends):
        return None

    text = "".join(str(c) for c in chars)
    timings: list[WordTiming] = []
    for match in WORD_PATTERN.finditer(text):
        first, last = match.start(), match.end() - 1
        try:
            start, end = float(starts[first]), float(ends[last])
        except (TypeError, ValueError):
            continue
        if end < start:
            continue
        timings.append(WordTiming(start=start, end=end))
    return tuple(timings) or None


class ElevenLabsProvider(TtsProvider):
    name = "elevenlabs"

    def synthesize(self, text: str, params: ElevenLabsTtsParams) -> SynthesisResult:  # type: ignore[override]
        api_key = self.check_api_key(params.api_key)
        cleaned = self.check_text(text)
        voice_id = (params.voice_id or "").strip()
        if not voice_id:
            raise SynthesisError("elevenlabs: voice_id is required.")

        query: dict[str, Any] = {}
        if params.output_format:
            query["output_format"] = params.output_format
        if params.enable_logging is False:
            query["enable_logging"] = "false"
        if params.optimize_streaming_latency is not None:
            query["optimize_streaming_latency"] = params.optimize_streaming_latency

        voice_settings: dict[str, Any] = {}
        if params.stability is not None:
            voice_settings["stability"] = params.stability
        if params.similarity_boost is not None:
            voice_settings["similarity_boost"] = params.similarity_boost
        if params.style is not None:
            voice_settings["style"] = params.style
        if params.speed is not None:
            voice_settings["speed"] = params.speed
        if params.use_speaker_boost is not None:
            voice_settings["use_speaker_boost"] = params.use_speaker_boost

        body: dict[str, Any] = {
            "text": cleaned,
            "model_id": params.model_id,
            "language_code": params.language_code or None,
            "seed": params.seed,
            "apply_text_normalization": params.apply_text_normalization,
        }
        if voice_settings:
            body["voice_settings"] = voice_settings

        response = requests.post(
            f"{ELEVENLABS_BASE_URL}/{requests.utils.quote(voice_id, safe='')}/with-timestamps",
            params=query,
            headers={"xi-api-key": api_key, "Content-Type": "application/json"},
            json=body,
            timeout=request_timeout(),
        )
        if response.status_code == 422:
            raise SynthesisError(
                "elevenlabs: invalid request, check model, voice or output format.",
                status=422,
            )
        self.raise_for_response(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SynthesisError("elevenlabs: response is not JSON.", retryable=True) from exc

        audio_b64 = payload.get("audio_base64") if isinstance(payload, dict) else None
        if not audio_b64:
            raise SynthesisError("elevenlabs: no audio data received.", retryable=True)
        audio = base64.b64decode(audio_b64)
        mime_type = _mime_for_format(params.output_format)
        if mime_type == "audio/wav":
            audio = pcm_to_wav(audio, sample_rate=_pcm_rate(params.output_format))

        timings = alignment_to_word_timings(
            payload.get("alignment") or payload.get("normalized_alignment")
        )
        return SynthesisResult(audio=audio, mime_type=mime_type, word_timings=timings)
