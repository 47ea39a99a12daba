from __future__ import annotations

import os
from dataclasses import dataclass

from modules.scheduler import DEFAULT_TTS_CONCURRENCY
from modules.uploader import (
    DEFAULT_UPLOAD_CONCURRENCY,
    MAX_UPLOAD_ATTEMPTS,
    UPLOAD_BACKOFF_BASE_SECONDS,
    UPLOAD_TIMEOUT_SECONDS,
)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ReaderConfig:
    tts_concurrency: int = DEFAULT_TTS_CONCURRENCY
    upload_concurrency: int = DEFAULT_UPLOAD_CONCURRENCY
    upload_max_attempts: int = MAX_UPLOAD_ATTEMPTS
    upload_timeout_seconds: float = UPLOAD_TIMEOUT_SECONDS
    upload_backoff_base_seconds: float = UPLOAD_BACKOFF_BASE_SECONDS
    audio_dir: str = os.path.join(BASE_DIR, "audio_output")
    audio_public_prefix: str = "/audio"
    upload_remote_base_url: str | None = None
    use_firestore: bool = False

    @classmethod
    def from_env(cls) -> "ReaderConfig":
        remote = os.environ.get("UPLOAD_REMOTE_BASE_URL", "").strip()
        return cls(
            tts_concurrency=_env_int("TTS_CONCURRENCY", DEFAULT_TTS_CONCURRENCY),
            upload_concurrency=_env_int("UPLOAD_CONCURRENCY", DEFAULT_UPLOAD_CONCURRENCY),
            upload_max_attempts=_env_int("UPLOAD_MAX_ATTEMPTS", MAX_UPLOAD_ATTEMPTS),
            upload_timeout_seconds=_env_float("UPLOAD_TIMEOUT_SECONDS", UPLOAD_TIMEOUT_SECONDS),
            upload_backoff_base_seconds=_env_float(
                "UPLOAD_BACKOFF_BASE_SECONDS", UPLOAD_BACKOFF_BASE_SECONDS
            ),
            audio_dir=os.environ.get("AUDIO_DIR", "").strip()
            or os.path.join(BASE_DIR, "audio_output"),
            audio_public_prefix=os.environ.get("AUDIO_PUBLIC_PREFIX", "/audio").strip() or "/audio",
            upload_remote_base_url=remote or None,
            use_firestore=_env_bool("USE_FIRESTORE", False),
        )
