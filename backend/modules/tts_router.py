from __future__ import annotations

import os

import requests

from modules.errors import SynthesisError
from modules.tts_azure import AzureProvider
from modules.tts_base import TtsProvider
from modules.tts_elevenlabs import ElevenLabsProvider
from modules.tts_gemini import GeminiProvider
from modules.tts_types import (
    AzureTtsParams,
    ElevenLabsTtsParams,
    GeminiTtsParams,
    SynthesisResult,
    TtsParams,
)
from modules.word_sync import normalize_word_timings


_AZURE = AzureProvider()
_ELEVENLABS = ElevenLabsProvider()
_GEMINI = GeminiProvider()

_PROVIDERS: dict[str, TtsProvider] = {
    _AZURE.name: _AZURE,
    _ELEVENLABS.name: _ELEVENLABS,
    _GEMINI.name: _GEMINI,
}


def get_default_provider() -> str:
    value = os.environ.get("TTS_DEFAULT_PROVIDER", "gemini").strip().lower()
    return value if value in _PROVIDERS else "gemini"


def get_tts_provider(name: str) -> TtsProvider:
    value = (name or "").strip().lower()
    provider = _PROVIDERS.get(value)
    if provider is None:
        raise SynthesisError(f"Unknown TTS provider: {name!r}")
    return provider


def default_params(provider: str | None = None) -> TtsParams:
    """Provider params seeded from the environment (API keys only)."""
    name = (provider or get_default_provider()).strip().lower()
    if name == "azure":
        return AzureTtsParams(
            api_key=os.environ.get("AZURE_TTS_API_KEY", ""),
            region=os.environ.get("AZURE_TTS_REGION", "eastus2"),
        )
    if name == "elevenlabs":
        return ElevenLabsTtsParams(
            api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
            voice_id=os.environ.get("ELEVENLABS_VOICE_ID", ""),
        )
    return GeminiTtsParams(api_key=os.environ.get("GEMINI_API_KEY", ""))


def synthesize(text: str, params: TtsParams) -> SynthesisResult:
    """Normalized gateway call: audio plus optional word timings, or SynthesisError."""
    provider = get_tts_provider(params.provider)
    try:
        result = provider.synthesize(text, params)
    except SynthesisError:
        raise
    except requests.Timeout as exc:
        raise SynthesisError(f"{provider.name}: request timed out.", retryable=True) from exc
    except requests.RequestException as exc:
        raise SynthesisError(f"{provider.name}: network error {exc}", retryable=True) from exc

    if not result.audio:
        raise SynthesisError(f"{provider.name}: empty audio payload.", retryable=True)
    return SynthesisResult(
        audio=result.audio,
        mime_type=result.mime_type,
        word_timings=normalize_word_timings(result.word_timings),
    )


__all__ = [
    "default_params",
    "get_default_provider",
    "get_tts_provider",
    "synthesize",
]
