from __future__ import annotations

import asyncio
import io
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable

import requests
import soundfile as sf

from modules.errors import PlaybackError, SegmentNotReadyError
from modules.word_sync import find_word_index_at_time
from segment_store import AudioRef, Segment, SegmentStore

SEEK_STEP_SECONDS = 2.0
SYNC_INTERVAL_SECONDS = 0.05


class AudioOutput(ABC):
    """The single audio resource a PlaybackController drives."""

    def __init__(self) -> None:
        self.on_ended: Callable[[], None] | None = None
        self.on_error: Callable[[str], None] | None = None

    def needs_prepare(self, audio: AudioRef) -> bool:
        return False

    def prepare(self, audio: AudioRef) -> None:
        """Resolve whatever ``load`` would otherwise block on. Called from a worker thread."""

    @abstractmethod
    def load(self, audio: AudioRef) -> None:
        """Make ``audio`` the current source at position 0. Raises PlaybackError."""

    @abstractmethod
    def play(self) -> None:
        """Start or resume. Raises PlaybackError."""

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def seek(self, position: float) -> None: ...

    @abstractmethod
    def unload(self) -> None: ...

    @property
    @abstractmethod
    def current_time(self) -> float: ...

    @property
    @abstractmethod
    def duration(self) -> float: ...

    @property
    @abstractmethod
    def paused(self) -> bool: ...

    def _emit_ended(self) -> None:
        if self.on_ended is not None:
            self.on_ended()

    def _emit_error(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)


class ClockAudioOutput(AudioOutput):
    """Server-side media clock.

    Decodes the source with soundfile to learn its duration, then follows a
    monotonic clock while playing. End of media is signalled through the
    running event loop. Remote sources are only fetched by ``prepare``, never
    by ``load``.
    """

    def __init__(
        self,
        *,
        fetch_timeout: float = 30.0,
        local_dir: str | None = None,
        public_prefix: str = "/audio",
    ) -> None:
        super().__init__()
        self._fetch_timeout = fetch_timeout
        self._local_dir = local_dir
        self._public_prefix = public_prefix.rstrip("/") + "/"
        self._source: AudioRef | None = None
        self._duration = 0.0
        self._position = 0.0
        self._started_at: float | None = None
        self._end_handle: asyncio.TimerHandle | None = None
        self._fetch_errors: dict[str, str] = {}

    def _is_remote(self, audio: AudioRef) -> bool:
        if audio.data is not None or not audio.url:
            return False
        return not (self._local_dir and audio.url.startswith(self._public_prefix))

    def needs_prepare(self, audio: AudioRef) -> bool:
        if audio.duration is not None or audio.released:
            return False
        return self._is_remote(audio) and audio.url not in self._fetch_errors

    def _read_bytes(self, audio: AudioRef) -> bytes:
        if audio.data is not None:
            return audio.data
        if audio.released or not audio.url:
            raise PlaybackError("Audio resource has been released.")
        if not self._is_remote(audio):
            relative = audio.url[len(self._public_prefix) :].split("?", 1)[0]
            path = os.path.join(self._local_dir, *relative.split("/"))
            try:
                with open(path, "rb") as fh:
                    return fh.read()
            except OSError as exc:
                raise PlaybackError(f"Could not read audio: {exc}") from exc
        try:
            response = requests.get(audio.url, timeout=self._fetch_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise PlaybackError(f"Could not fetch audio: {exc}") from exc
        return response.content

    def _read_duration(self, audio: AudioRef) -> float:
        try:
            info = sf.info(io.BytesIO(self._read_bytes(audio)))
        except PlaybackError:
            raise
        except Exception as exc:
            raise PlaybackError(f"Could not decode audio: {exc}") from exc
        return float(info.duration)

    def prepare(self, audio: AudioRef) -> None:
        if audio.duration is not None:
            return
        try:
            audio.duration = self._read_duration(audio)
        except PlaybackError as exc:
            if audio.url:
                self._fetch_errors[audio.url] = str(exc)
            print(f"[playback] prepare failed url={audio.url} error={exc}")
            return
        if audio.url:
            self._fetch_errors.pop(audio.url, None)

    def load(self, audio: AudioRef) -> None:
        self.pause()
        duration = audio.duration
        if duration is None:
            if self._is_remote(audio):
                raise PlaybackError(
                    self._fetch_errors.get(audio.url or "", "Audio has not been fetched yet.")
                )
            duration = self._read_duration(audio)
            audio.duration = duration
        self._source = audio
        self._duration = max(0.0, duration)
        self._position = 0.0

    def play(self) -> None:
        if self._source is None:
            raise PlaybackError("No audio source loaded.")
        if self._source.released:
            raise PlaybackError("Audio resource has been released.")
        if self._started_at is not None:
            return
        self._started_at = time.monotonic()
        self._schedule_end()

    def pause(self) -> None:
        if self._started_at is not None:
            self._position = self.current_time
            self._started_at = None
        self._cancel_end()

    def seek(self, position: float) -> None:
        self._position = max(0.0, min(float(position), self._duration))
        if self._started_at is not None:
            self._started_at = time.monotonic()
            self._schedule_end()

    def unload(self) -> None:
        self.pause()
        self._source = None
        self._duration = 0.0
        self._position = 0.0

    @property
    def current_time(self) -> float:
        if self._started_at is None:
            return self._position
        elapsed = time.monotonic() - self._started_at
        return min(self._duration, self._position + elapsed)

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def paused(self) -> bool:
        return self._started_at is None

    def _schedule_end(self) -> None:
        self._cancel_end()
        if self._duration <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        remaining = max(0.0, self._duration - self.current_time)
        self._end_handle = loop.call_later(remaining, self._finish)

    def _cancel_end(self) -> None:
        if self._end_handle is not None:
            self._end_handle.cancel()
            self._end_handle = None

    def _finish(self) -> None:
        self._end_handle = None
        self._position = self._duration
        self._started_at = None
        self._emit_ended()


@dataclass
class PlaybackSession:
    active_segment_id: str | None = None
    is_playing: bool = False
    current_time: float = 0.0
    duration: float = 0.0
    sequence_mode: bool = False
    active_word_index: int | None = None
    last_error: str | None = None


class PlaybackController:
    def __init__(
        self,
        store: SegmentStore,
        output: AudioOutput | None = None,
        *,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._output = output or ClockAudioOutput()
        self._output.on_ended = self.handle_ended
        self._output.on_error = self.handle_error
        self._on_notice = on_notice
        self._session = PlaybackSession()
        self._sync_task: asyncio.Task[None] | None = None
        self._prepare_task: asyncio.Task[None] | None = None

    @property
    def session(self) -> PlaybackSession:
        return self._session

    def snapshot(self) -> PlaybackSession:
        return replace(self._session)

    def is_segment_playing(self, segment_id: str) -> bool:
        return self._session.active_segment_id == segment_id and self._session.is_playing

    def prepare(self, segment_id: str) -> None:
        """Blocking: resolve the audio of ``segment_id`` so that starting it never
        waits on I/O. Run it in a worker thread before a play, seek or sequence
        command. Later segments of a sequence are resolved as playback reaches them.
        """
        segment = self._store.find(segment_id)
        if segment is not None and segment.status == "ready" and segment.audio is not None:
            self._output.prepare(segment.audio)

    # -- commands ------------------------------------------------------------

    def play(self, segment_id: str, *, restart: bool = False) -> None:
        segment = self._ready_segment(segment_id)
        ended = self._start(segment, restart=restart)
        if ended:
            self.handle_ended()

    def pause(self) -> None:
        if self._session.active_segment_id is None:
            return
        self._output.pause()
        self._session.is_playing = False
        self.tick()
        self._stop_sync_loop()

    def resume(self) -> None:
        if self._session.active_segment_id is None:
            return
        if 0 < self._output.duration <= self._output.current_time:
            self._output.seek(0.0)
        try:
            self._output.play()
        except PlaybackError as exc:
            self._report_start_failure(str(exc))
            raise
        self._session.is_playing = True
        self._start_sync_loop()

    def toggle_play_pause(self) -> None:
        if self._session.active_segment_id is None:
            return
        if self._session.is_playing:
            self.pause()
        else:
            self.resume()

    def stop(self) -> None:
        self._stop_sync_loop()
        self._output.pause()
        self._output.seek(0.0)
        self._output.unload()
        last_error = self._session.last_error
        self._session = PlaybackSession(last_error=last_error)

    def reset(self) -> None:
        self.stop()
        self._session.last_error = None

    def seek(self, time_sec: float, segment_id: str | None = None) -> None:
        target = segment_id or self._session.active_segment_id
        if target is None:
            return
        if target != self._session.active_segment_id:
            segment = self._ready_segment(target)
            self._output.pause()
            self._stop_sync_loop()
            self._load(segment)
            self._session.is_playing = False
        position = max(0.0, min(float(time_sec), self._output.duration))
        self._output.seek(position)
        self.tick()

    def step_time(self, delta: float = SEEK_STEP_SECONDS) -> None:
        if self._session.active_segment_id is None:
            return
        self.seek(self._output.current_time + float(delta))

    def start_sequence_from(self, segment_id: str) -> None:
        segment = self._ready_segment(segment_id)
        self._session.sequence_mode = True
        try:
            ended = self._start(segment, restart=True)
        except PlaybackError:
            self._session.sequence_mode = False
            raise
        if ended:
            self.handle_ended()

    # -- media events --------------------------------------------------------

    def handle_ended(self) -> None:
        """Natural end of the current segment; advances when in sequence mode."""
        self._stop_sync_loop()
        self._session.is_playing = False
        self._session.current_time = self._output.duration
        self._session.active_word_index = None
        if not self._session.sequence_mode:
            return

        self._continue_sequence(self._session.active_segment_id)

    def _continue_sequence(self, current_id: str | None) -> None:
        segments = self._store.snapshot()
        start_idx = next((i for i, s in enumerate(segments) if s.id == current_id), -1) + 1
        for segment in segments[start_idx:]:
            if segment.status != "ready" or segment.audio is None:
                continue
            if self._output.needs_prepare(segment.audio) and self._defer_start(
                segment, self._session.active_segment_id
            ):
                return
            try:
                ended = self._start(segment, restart=True)
            except PlaybackError as exc:
                print(f"[playback] sequence stopped segment={segment.id} error={exc}")
                return
            if not ended:
                return
            self._session.is_playing = False
        print("[playback] sequence finished")
        self.stop()

    def handle_error(self, message: str) -> None:
        """Resource-level failure of the audio output."""
        failed_id = self._session.active_segment_id
        self.stop()
        self._session.last_error = message or "Audio playback failed."
        print(f"[playback] error segment={failed_id} error={self._session.last_error}")
        self._notice("Audio playback failed, play again or regenerate the audio.")

    def tick(self) -> None:
        segment_id = self._session.active_segment_id
        if segment_id is None:
            return
        t = self._output.current_time
        self._session.current_time = t
        self._session.duration = self._output.duration
        segment = self._store.find(segment_id)
        timings = segment.word_timings if segment is not None else None
        self._session.active_word_index = find_word_index_at_time(timings, t)

    # -- internals -----------------------------------------------------------

    def _ready_segment(self, segment_id: str) -> Segment:
        segment = self._store.get(segment_id)
        if segment.status != "ready" or segment.audio is None:
            self._notice("Generate the audio before playing this segment.")
            raise SegmentNotReadyError(segment_id)
        return segment

    def _load(self, segment: Segment) -> None:
        assert segment.audio is not None
        try:
            self._output.load(segment.audio)
        except PlaybackError as exc:
            self._report_start_failure(str(exc))
            raise
        self._session.active_segment_id = segment.id
        self._session.current_time = 0.0
        self._session.duration = self._output.duration
        self._session.active_word_index = None

    def _start(self, segment: Segment, *, restart: bool) -> bool:
        """Load (unless resuming in place) and play. Returns True if it ended at once."""
        if restart or self._session.active_segment_id != segment.id:
            self._output.pause()
            self._load(segment)
        try:
            self._output.play()
        except PlaybackError as exc:
            self._report_start_failure(str(exc))
            raise
        self._session.active_segment_id = segment.id
        self._session.last_error = None
        if self._output.duration <= 0:
            self._output.pause()
            return True
        self._session.is_playing = True
        self.tick()
        self._start_sync_loop()
        return False

    def _defer_start(self, segment: Segment, ended_id: str | None) -> bool:
        """Fetch ``segment`` off the loop, then pick the sequence up again."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._prepare_task = loop.create_task(self._prepare_then_continue(segment, ended_id))
        return True

    async def _prepare_then_continue(self, segment: Segment, ended_id: str | None) -> None:
        assert segment.audio is not None
        await asyncio.to_thread(self._output.prepare, segment.audio)
        session = self._session
        # Anything the user did while the fetch ran wins over the sequence.
        if not session.sequence_mode or session.is_playing or session.active_segment_id != ended_id:
            return
        self._continue_sequence(ended_id)

    def _report_start_failure(self, message: str) -> None:
        self._session.is_playing = False
        self._session.last_error = message
        if self._session.sequence_mode:
            self._session.sequence_mode = False
            self._session.active_segment_id = None
            self._output.unload()
        print(f"[playback] start failed error={message}")
        self._notice("Playback failed, check the audio or try again later.")

    def _notice(self, message: str) -> None:
        if self._on_notice is not None:
            self._on_notice(message)

    def _start_sync_loop(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sync_task = loop.create_task(self._sync_loop())

    def _stop_sync_loop(self) -> None:
        task, self._sync_task = self._sync_task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def _sync_loop(self) -> None:
        while self._session.is_playing and not self._output.paused:
            self.tick()
            await asyncio.sleep(SYNC_INTERVAL_SECONDS)


def _current_task() -> asyncio.Task[object] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
