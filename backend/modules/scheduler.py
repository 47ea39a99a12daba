from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Iterable

from modules.errors import SynthesisError
from modules.tts_types import SynthesisResult, TtsParams
from segment_store import AudioRef, SegmentStore

DEFAULT_TTS_CONCURRENCY = 4
MAX_CONCURRENCY = 128

Gateway = Callable[[str, TtsParams], SynthesisResult]


def clamp_concurrency(value: int, minimum: int = 1, maximum: int = MAX_CONCURRENCY) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        value = minimum
    return max(minimum, min(maximum, value))


class GenerationScheduler:
    """Bounded FIFO of pending generations.

    ``enqueue`` flips segments to ``generating`` synchronously, then the
    dispatcher starts at most ``concurrency_limit`` gateway calls at a time.
    Calls detached by ``reset`` keep their slot until the worker thread
    returns; their results are dropped by the store's token check.
    Must be driven from the event loop thread.
    """

    def __init__(
        self,
        store: SegmentStore,
        gateway: Gateway,
        *,
        concurrency: int = DEFAULT_TTS_CONCURRENCY,
        params: TtsParams | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._limit = clamp_concurrency(concurrency)
        self.params = params
        self._queue: deque[tuple[str, TtsParams | None]] = deque()
        self._queued: set[str] = set()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._draining: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def draining_count(self) -> int:
        return len(self._draining)

    @property
    def queued_ids(self) -> list[str]:
        return [segment_id for segment_id, _ in self._queue]

    @property
    def in_flight_ids(self) -> list[str]:
        return list(self._in_flight)

    def set_concurrency_limit(self, limit: int) -> int:
        self._limit = clamp_concurrency(limit)
        print(f"[scheduler] concurrency_limit={self._limit}")
        self._pump()
        return self._limit

    def enqueue(
        self,
        ids: Iterable[str],
        params: TtsParams | None = None,
        *,
        priority: bool = False,
    ) -> list[str]:
        accepted: list[str] = []
        head: list[tuple[str, TtsParams | None]] = []
        for segment_id in ids:
            self._store.get(segment_id)
            if segment_id in self._in_flight:
                continue
            if segment_id in self._queued:
                # A priority request moves an already queued id to the head.
                if priority:
                    head.extend(e for e in self._queue if e[0] == segment_id)
                    self._queue = deque(e for e in self._queue if e[0] != segment_id)
                continue
            if not self._store.begin_generation(segment_id):
                continue
            self._queued.add(segment_id)
            accepted.append(segment_id)
            head.append((segment_id, params))

        if priority:
            self._queue.extendleft(reversed(head))
        else:
            self._queue.extend(head)

        if accepted:
            self._idle.clear()
            print(f"[scheduler] enqueued={len(accepted)} priority={priority} queued={len(self._queue)}")
            self._pump()
        return accepted

    def generate_all(self, params: TtsParams | None = None) -> list[str]:
        pending = [s.id for s in self._store.snapshot() if s.status != "ready"]
        return self.enqueue(pending, params)

    def reset(self) -> None:
        """Drop queued work and detach in-flight calls from the current list."""
        self._queue.clear()
        self._queued.clear()
        self._draining.update(self._in_flight.values())
        self._in_flight.clear()
        if self._draining:
            print(f"[scheduler] reset draining={len(self._draining)}")
        self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def _pump(self) -> None:
        while len(self._in_flight) + len(self._draining) < self._limit and self._queue:
            segment_id, params = self._queue.popleft()
            self._queued.discard(segment_id)
            segment = self._store.find(segment_id)
            if segment is None or segment.status != "generating":
                continue
            use_params = params or self.params
            token = self._store.token
            task = asyncio.get_running_loop().create_task(
                self._generate(segment_id, segment.text, use_params, token)
            )
            self._in_flight[segment_id] = task
            task.add_done_callback(lambda t, sid=segment_id: self._on_done(sid, t))
        if not self._queue and not self._in_flight:
            self._idle.set()

    def _on_done(self, segment_id: str, task: asyncio.Task[None]) -> None:
        if self._in_flight.get(segment_id) is task:
            del self._in_flight[segment_id]
        self._draining.discard(task)
        self._pump()

    async def _generate(
        self,
        segment_id: str,
        text: str,
        params: TtsParams | None,
        token: int,
    ) -> None:
        try:
            if params is None:
                raise SynthesisError("No TTS provider configured.")
            result = await asyncio.to_thread(self._gateway, text, params)
            if not isinstance(result, SynthesisResult) or not result.audio:
                raise SynthesisError("Invalid response from TTS provider.", retryable=True)
            audio = AudioRef.from_result(result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            applied = self._store.fail_generation(segment_id, token, message)
            print(f"[scheduler] segment={segment_id} status=error applied={applied} error={message}")
            return

        applied = self._store.complete_generation(segment_id, token, audio, result.word_timings)
        print(f"[scheduler] segment={segment_id} status=ready applied={applied}")
