from __future__ import annotations

import base64
from typing import Any

import requests

from modules.errors import SynthesisError
from modules.tts_base import TtsProvider, pcm_to_wav, request_timeout
from modules.tts_types import (
    DEFAULT_GEMINI_MODEL,
    GEMINI_TTS_MODELS,
    GeminiTtsParams,
    SynthesisResult,
)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

GEMINI_VOICES = frozenset(
    {
        "Zephyr", "Puck", "Charon", "Kore", "Fenrir", "Leda", "Orus", "Aoede",
        "Callirrhoe", "Autonoe", "Enceladus", "Iapetus", "Umbriel", "Algieba",
        "Despina", "Erinome", "Algenib", "Rasalgethi", "Laomedeia", "Achernar",
        "Alnilam", "Schedar", "Gacrux", "Pulcherrima", "Achird", "Zubenelgenubi",
        "Vindemiatrix", "Sadachbia", "Sadaltager", "Sulafat",
    }
)
_VOICE_LOOKUP = {v.lower(): v for v in GEMINI_VOICES}


def resolve_voice_name(value: str | None, default: str = "Kore") -> str:
    raw = (value or "").strip()
    if not raw:
        return default
    voice = _VOICE_LOOKUP.get(raw.lower())
    if voice is None:
        raise SynthesisError(f"gemini: unsupported voiceName {raw!r} (e.g. Kore / Puck).")
    return voice


def build_prompt(text: str, style_prompt: str | None) -> str:
    style = (style_prompt or "").strip()
    if not style:
        return text
    return f"{style}\n\n{text}"


def _speech_config(params: GeminiTtsParams) -> dict[str, Any]:
    if not params.multi_speaker:
        return {
            "voiceConfig": {
                "prebuiltVoiceConfig": {"voiceName": resolve_voice_name(params.voice_name)}
            }
        }
    speaker1 = (params.speaker1_name or "").strip() or "Speaker1"
    speaker2 = (params.speaker2_name or "").strip() or "Speaker2"
    if speaker1 == speaker2:
        raise SynthesisError("gemini: the two speaker names must differ.")
    voice1 = resolve_voice_name(params.speaker1_voice_name, default=params.voice_name or "Kore")
    voice2 = resolve_voice_name(params.speaker2_voice_name, default="Puck")
    return {
        "multiSpeakerVoiceConfig": {
            "speakerVoiceConfigs": [
                {"speaker": speaker1, "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice1}}},
                {"speaker": speaker2, "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice2}}},
            ]
        }
    }


def _extract_audio(payload: dict[str, Any]) -> str:
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise SynthesisError("gemini: response missing candidates.", retryable=True)
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    for part in parts or []:
        inline = part.get("inlineData") if isinstance(part, dict) else None
        if isinstance(inline, dict) and inline.get("data"):
            return str(inline["data"])
    raise SynthesisError("gemini: no audio data received.", retryable=True)


class GeminiProvider(TtsProvider):
    name = "gemini"

    def synthesize(self, text: str, params: GeminiTtsParams) -> SynthesisResult:  # type: ignore[override]
        api_key = self.check_api_key(params.api_key)
        prompt = self.check_text(build_prompt(self.check_text(text), params.style_prompt))
        model = params.model if params.model in GEMINI_TTS_MODELS else DEFAULT_GEMINI_MODEL
        if params.model and model != params.model:
            print(f"[tts_gemini] unsupported model={params.model} fallback={model}")

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": _speech_config(params),
            },
        }
        response = requests.post(
            f"{GEMINI_BASE_URL}/{model}:generateContent",
            headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
            json=body,
            timeout=request_timeout(),
        )
        self.raise_for_response(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SynthesisError("gemini: response is not JSON.", retryable=True) from exc

        pcm = base64.b64decode(_extract_audio(payload))
        return SynthesisResult(audio=pcm_to_wav(pcm), mime_type="audio/wav")
