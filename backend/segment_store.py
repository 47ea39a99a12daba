from __future__ import annotations

import re
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any, Callable, Iterable, Literal, Mapping

from modules.errors import SegmentNotFoundError
from modules.tts_base import audio_duration
from modules.tts_types import SynthesisResult, WordTiming
from modules.word_sync import normalize_word_timings


SegmentStatus = Literal["idle", "generating", "ready", "error"]
UploadStatus = Literal["pending", "uploading", "success", "failed"]


class AudioRef:
    """Playable audio held by one ready segment.

    Either in-memory bytes from a generation, or a remote URL for segments
    hydrated from a saved article. Released when the segment list is replaced.
    """

    def __init__(
        self,
        *,
        data: bytes | None = None,
        url: str | None = None,
        mime_type: str = "audio/wav",
        duration: float | None = None,
    ) -> None:
        if data is None and not url:
            raise ValueError("AudioRef needs data or url.")
        self._data = data
        self.url = url
        self.mime_type = mime_type
        self.duration = duration
        self.released = False

    @classmethod
    def from_result(cls, result: SynthesisResult) -> "AudioRef":
        return cls(
            data=result.audio,
            mime_type=result.mime_type,
            duration=audio_duration(result.audio),
        )

    @property
    def data(self) -> bytes | None:
        return None if self.released else self._data

    @property
    def is_local(self) -> bool:
        return self._data is not None

    def release(self) -> None:
        self.released = True
        self._data = None

    def __repr__(self) -> str:
        kind = "local" if self.is_local else "remote"
        return f"AudioRef({kind}, mime_type={self.mime_type!r}, released={self.released})"


@dataclass(frozen=True)
class Segment:
    id: str
    text: str
    status: SegmentStatus = "idle"
    audio: AudioRef | None = None
    error: str | None = None
    word_timings: tuple[WordTiming, ...] | None = None
    upload_status: UploadStatus = "pending"
    upload_error: str | None = None
    upload_attempts: int = 0
    cloud_url: str | None = None


def segment_id_for(index: int) -> str:
    return f"seg-{index}"


def _url_matches_segment(url: str, segment_id: str) -> bool:
    return re.search(rf"/{re.escape(segment_id)}\.[A-Za-z0-9]+(?:$|[?#])", url) is not None


Listener = Callable[[Segment], None]


class SegmentStore:
    """Single source of truth for segment state.

    Every mutation happens under one lock and replaces the whole Segment in one
    step. Async work is tagged with the session token taken at dispatch;
    transitions carrying a stale token are dropped.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._segments: list[Segment] = []
        self._index: dict[str, int] = {}
        self._token = 0
        self._listeners: list[Listener] = []

    @property
    def token(self) -> int:
        with self._lock:
            return self._token

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, changed: Iterable[Segment]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for segment in changed:
            for listener in listeners:
                try:
                    listener(segment)
                except Exception as exc:
                    print(f"[segment_store] listener failed segment={segment.id} error={exc}")

    # -- reads -------------------------------------------------------------

    def snapshot(self) -> list[Segment]:
        with self._lock:
            return list(self._segments)

    def find(self, segment_id: str) -> Segment | None:
        with self._lock:
            idx = self._index.get(segment_id)
            return None if idx is None else self._segments[idx]

    def get(self, segment_id: str) -> Segment:
        segment = self.find(segment_id)
        if segment is None:
            raise SegmentNotFoundError(segment_id)
        return segment

    def index_of(self, segment_id: str) -> int:
        with self._lock:
            idx = self._index.get(segment_id)
        if idx is None:
            raise SegmentNotFoundError(segment_id)
        return idx

    def __len__(self) -> int:
        with self._lock:
            return len(self._segments)

    def stats(self) -> dict[str, int]:
        segments = self.snapshot()
        total = len(segments)
        ready = sum(1 for s in segments if s.status == "ready")
        return {
            "total": total,
            "ready": ready,
            "generating": sum(1 for s in segments if s.status == "generating"),
            "error": sum(1 for s in segments if s.status == "error"),
            "progress_percent": round(ready * 100 / total) if total else 0,
        }

    # -- list replacement ---------------------------------------------------

    def replace(self, paragraphs: list[str]) -> int:
        """Discard every segment (releasing audio) and start a fresh idle list."""
        fresh = [Segment(id=segment_id_for(i), text=p) for i, p in enumerate(paragraphs)]
        with self._lock:
            old = self._segments
            self._segments = fresh
            self._index = {s.id: i for i, s in enumerate(fresh)}
            self._token += 1
            token = self._token
        for segment in old:
            if segment.audio is not None:
                segment.audio.release()
        self._publish(fresh)
        return token

    # -- transitions ---------------------------------------------------------

    def _apply(
        self,
        segment_id: str,
        token: int | None,
        update: Callable[[Segment], Segment | None],
    ) -> Segment | None:
        """Apply ``update`` atomically. Returns the new segment, or None if skipped."""
        with self._lock:
            if token is not None and token != self._token:
                return None
            idx = self._index.get(segment_id)
            if idx is None:
                raise SegmentNotFoundError(segment_id)
            updated = update(self._segments[idx])
            if updated is None:
                return None
            self._segments[idx] = updated
        self._publish([updated])
        return updated

    def begin_generation(self, segment_id: str) -> bool:
        def update(seg: Segment) -> Segment | None:
            if seg.status in ("generating", "ready"):
                return None
            return replace(seg, status="generating", error=None, audio=None)

        return self._apply(segment_id, None, update) is not None

    def complete_generation(
        self,
        segment_id: str,
        token: int,
        audio: AudioRef,
        word_timings: Any = None,
    ) -> bool:
        timings = normalize_word_timings(word_timings)

        def update(seg: Segment) -> Segment | None:
            if seg.status != "generating":
                return None
            return replace(
                seg,
                status="ready",
                audio=audio,
                error=None,
                word_timings=timings,
                upload_status="pending",
                upload_error=None,
                upload_attempts=0,
                cloud_url=None,
            )

        applied = self._safe_apply(segment_id, token, update) is not None
        if not applied:
            audio.release()
        return applied

    def fail_generation(self, segment_id: str, token: int, message: str) -> bool:
        def update(seg: Segment) -> Segment | None:
            if seg.status != "generating":
                return None
            return replace(seg, status="error", error=message or "Generation failed.", audio=None)

        return self._safe_apply(segment_id, token, update) is not None

    def _safe_apply(
        self,
        segment_id: str,
        token: int,
        update: Callable[[Segment], Segment | None],
    ) -> Segment | None:
        # Async results may arrive for an id that no longer exists after a reset.
        try:
            return self._apply(segment_id, token, update)
        except SegmentNotFoundError:
            return None

    # -- upload transitions ---------------------------------------------------

    def begin_upload(self, segment_id: str, token: int, audio: AudioRef) -> Segment | None:
        def update(seg: Segment) -> Segment | None:
            if seg.status != "ready" or seg.audio is not audio or audio.data is None:
                return None
            if seg.upload_status in ("uploading", "success"):
                return None
            return replace(seg, upload_status="uploading", upload_error=None, upload_attempts=0)

        return self._safe_apply(segment_id, token, update)

    def record_upload_attempt(self, segment_id: str, token: int, audio: AudioRef) -> Segment | None:
        def update(seg: Segment) -> Segment | None:
            if seg.audio is not audio or seg.upload_status != "uploading":
                return None
            return replace(seg, upload_attempts=seg.upload_attempts + 1)

        return self._safe_apply(segment_id, token, update)

    def note_upload_error(
        self, segment_id: str, token: int, audio: AudioRef, message: str
    ) -> Segment | None:
        def update(seg: Segment) -> Segment | None:
            if seg.audio is not audio or seg.upload_status != "uploading":
                return None
            return replace(seg, upload_error=message)

        return self._safe_apply(segment_id, token, update)

    def complete_upload(
        self, segment_id: str, token: int, audio: AudioRef, url: str
    ) -> Segment | None:
        def update(seg: Segment) -> Segment | None:
            if seg.audio is not audio or seg.upload_status != "uploading":
                return None
            return replace(seg, upload_status="success", upload_error=None, cloud_url=url)

        return self._safe_apply(segment_id, token, update)

    def fail_upload(
        self, segment_id: str, token: int, audio: AudioRef, message: str
    ) -> Segment | None:
        def update(seg: Segment) -> Segment | None:
            if seg.audio is not audio or seg.upload_status != "uploading":
                return None
            return replace(seg, upload_status="failed", upload_error=message)

        return self._safe_apply(segment_id, token, update)

    # -- hydration from a saved article ---------------------------------------

    def hydrate_audio_urls(self, audio_urls: Iterable[str]) -> list[str]:
        """Mark segments with a stored cloud URL as ready, without generating."""
        urls = [u for u in audio_urls or [] if isinstance(u, str) and u]
        changed: list[Segment] = []
        with self._lock:
            for idx, seg in enumerate(self._segments):
                if seg.status in ("ready", "generating"):
                    continue
                url = next((u for u in urls if _url_matches_segment(u, seg.id)), None)
                if url is None:
                    continue
                updated = replace(
                    seg,
                    status="ready",
                    audio=AudioRef(url=url, mime_type=_mime_for_url(url)),
                    error=None,
                    upload_status="success",
                    upload_error=None,
                    cloud_url=url,
                )
                self._segments[idx] = updated
                changed.append(updated)
        self._publish(changed)
        return [s.id for s in changed]

    def hydrate_word_timings(self, mapping: Mapping[str, Any] | None) -> list[str]:
        changed: list[Segment] = []
        with self._lock:
            for segment_id, raw in (mapping or {}).items():
                idx = self._index.get(segment_id)
                timings = normalize_word_timings(raw)
                if idx is None or timings is None:
                    continue
                updated = replace(self._segments[idx], word_timings=timings)
                self._segments[idx] = updated
                changed.append(updated)
        self._publish(changed)
        return [s.id for s in changed]


def _mime_for_url(url: str) -> str:
    path = url.split("?", 1)[0].lower()
    if path.endswith(".mp3"):
        return "audio/mpeg"
    if path.endswith(".ogg"):
        return "audio/ogg"
    return "audio/wav"
