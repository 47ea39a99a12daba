from __future__ import annotations

from xml.sax.saxutils import escape, quoteattr

import requests

from modules.errors import SynthesisError
from modules.tts_base import TtsProvider, request_timeout
from modules.tts_types import AzureTtsParams, SynthesisResult

AZURE_OUTPUT_FORMAT = "riff-24khz-16bit-mono-pcm"


def _percent(value: float) -> str:
    delta = round((float(value) - 1.0) * 100)
    return f"{delta:+d}%"


def build_ssml(text: str, params: AzureTtsParams) -> str:
    lang = "-".join(params.voice.split("-")[:2]) or "en-US"
    pause = max(0, int(params.pause_ms))
    tail = f'<break time="{pause}ms"/>' if pause else ""
    return (
        f'<speak version="1.0" xmlns="http://www.w3.org/2001/10/synthesis" xml:lang={quoteattr(lang)}>'
        f"<voice name={quoteattr(params.voice)}>"
        f'<prosody rate="{_percent(params.rate)}" volume="{_percent(params.volume)}">'
        f"{escape(text)}</prosody>{tail}</voice></speak>"
    )


class AzureProvider(TtsProvider):
    name = "azure"

    def synthesize(self, text: str, params: AzureTtsParams) -> SynthesisResult:  # type: ignore[override]
        api_key = self.check_api_key(params.api_key)
        cleaned = self.check_text(text)
        region = (params.region or "eastus2").strip()

        response = requests.post(
            f"https://{region}.tts.speech.microsoft.com/cognitiveservices/v1",
            headers={
                "Ocp-Apim-Subscription-Key": api_key,
                "Content-Type": "application/ssml+xml",
                "X-Microsoft-OutputFormat": AZURE_OUTPUT_FORMAT,
                "User-Agent": "reader-audio-backend",
            },
            data=build_ssml(cleaned, params).encode("utf-8"),
            timeout=request_timeout(),
        )
        self.raise_for_response(response)
        if not response.content:
            raise SynthesisError("azure: no audio data received.", retryable=True)
        return SynthesisResult(audio=response.content, mime_type="audio/wav")
