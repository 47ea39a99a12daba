from __future__ import annotations

import io
import os
from abc import ABC, abstractmethod
from typing import Any

import numpy as np
import requests
import soundfile as sf

from modules.errors import SynthesisError
from modules.tts_types import SynthesisResult, TtsParams

MAX_TEXT_CHARS = 5000
PCM_SAMPLE_RATE = 24000
PCM_CHANNELS = 1


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def request_timeout() -> tuple[float, float]:
    return (
        _env_float("TTS_CONNECT_TIMEOUT_SECONDS", 10.0),
        _env_float("TTS_REQUEST_TIMEOUT_SECONDS", 60.0),
    )


class TtsProvider(ABC):
    name: str

    @abstractmethod
    def synthesize(self, text: str, params: TtsParams) -> SynthesisResult:
        raise NotImplementedError

    def check_text(self, text: str) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise SynthesisError(f"{self.name}: text is empty.")
        if len(cleaned) > MAX_TEXT_CHARS:
            raise SynthesisError(
                f"{self.name}: text too long ({len(cleaned)} > {MAX_TEXT_CHARS} chars)."
            )
        return cleaned

    def check_api_key(self, api_key: str) -> str:
        key = (api_key or "").strip()
        if not key:
            raise SynthesisError(f"Missing API key for provider {self.name}.")
        return key

    def raise_for_response(self, response: requests.Response) -> None:
        if response.ok:
            return
        status = response.status_code
        if status in (401, 403):
            raise SynthesisError.from_status(
                status, f"{self.name}: API key is invalid or lacks permission."
            )
        detail = _error_detail(response)
        raise SynthesisError.from_status(
            status, f"{self.name}: request failed ({status}) {detail}".strip()
        )


def _error_detail(response: requests.Response) -> str:
    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "")[:300]
    if isinstance(payload, dict):
        error = payload.get("error") or payload.get("detail")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("status") or "")[:300]
        if error:
            return str(error)[:300]
    return ""


def pcm_to_wav(
    pcm: bytes,
    *,
    sample_rate: int = PCM_SAMPLE_RATE,
    channels: int = PCM_CHANNELS,
) -> bytes:
    samples = np.frombuffer(pcm[: len(pcm) - len(pcm) % 2], dtype="<i2")
    if channels > 1:
        samples = samples[: len(samples) - len(samples) % channels].reshape(-1, channels)
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def audio_duration(data: bytes) -> float | None:
    try:
        info = sf.info(io.BytesIO(data))
    except Exception:
        return None
    return float(info.duration)
