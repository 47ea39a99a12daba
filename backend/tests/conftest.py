"""Shared fixtures and fakes for reader backend tests."""

import io
import threading
import time

import numpy as np
import pytest
import soundfile as sf

from article_store import Storage
from modules.errors import PlaybackError, SynthesisError, UploadError
from modules.playback import AudioOutput
from modules.tts_types import SynthesisResult, WordTiming
from segment_store import AudioRef


def make_wav(seconds=0.2, sample_rate=8000):
    """Silent mono WAV of the given length."""
    buf = io.BytesIO()
    samples = np.zeros(int(seconds * sample_rate), dtype="int16")
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


class FakeGateway:
    """Synthesis gateway stand-in, called from worker threads."""

    def __init__(self, delay=0.0, fail_texts=(), timings=None, seconds=0.2):
        self.delay = delay
        self.fail_texts = set(fail_texts)
        self.timings = timings
        self.seconds = seconds
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, text, params):
        with self._lock:
            self.calls.append(text)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if text in self.fail_texts:
                raise SynthesisError("boom", retryable=True, status=503)
            return SynthesisResult(
                audio=make_wav(self.seconds),
                mime_type="audio/wav",
                word_timings=self.timings,
            )
        finally:
            with self._lock:
                self.active -= 1


class FakeOutput(AudioOutput):
    """Audio output driven by hand; tests decide when media ends."""

    def __init__(self):
        super().__init__()
        self.source = None
        self.position = 0.0
        self.playing = False
        self.loads = []
        self.fail_play = False

    def load(self, audio):
        if audio.released:
            raise PlaybackError("Audio resource has been released.")
        self.source = audio
        self.position = 0.0
        self.playing = False
        self.loads.append(audio)

    def play(self):
        if self.source is None:
            raise PlaybackError("No audio source loaded.")
        if self.fail_play:
            raise PlaybackError("decode failed")
        self.playing = True

    def pause(self):
        self.playing = False

    def seek(self, position):
        self.position = max(0.0, min(float(position), self.duration))

    def unload(self):
        self.source = None
        self.position = 0.0
        self.playing = False

    @property
    def current_time(self):
        return self.position

    @property
    def duration(self):
        if self.source is None:
            return 0.0
        return float(self.source.duration or 0.0)

    @property
    def paused(self):
        return not self.playing

    def finish(self):
        self.position = self.duration
        self.playing = False
        self._emit_ended()


class FakeUploader:
    """Replays scripted outcomes: an exception instance is raised, a str is the URL."""

    def __init__(self, outcomes=None, delay=0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.deleted = []
        self._lock = threading.Lock()

    def upload(self, article_id, segment_id, audio, mime_type):
        with self._lock:
            self.calls.append((article_id, segment_id))
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or f"https://cdn.example.com/articles/{article_id}/{segment_id}.wav"

    def delete_article_audio(self, article_id):
        self.deleted.append(article_id)


def ready_audio(seconds=1.0, data=b"RIFF"):
    return AudioRef(data=data, mime_type="audio/wav", duration=seconds)


@pytest.fixture
def wav_bytes():
    return make_wav(0.25)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def output():
    return FakeOutput()


@pytest.fixture
def storage():
    return Storage(use_firestore=False)


@pytest.fixture
def sample_timings():
    return (WordTiming(0.0, 0.5), WordTiming(0.6, 1.0))


@pytest.fixture
def http_503():
    return UploadError("Service Unavailable", status=503)
