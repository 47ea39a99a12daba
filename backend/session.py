from __future__ import annotations

from typing import Any, Callable, Iterable

from article_store import ArticleRecord, Storage
from config import ReaderConfig
from modules.errors import ArticleNotFoundError
from modules.paragraphs import build_paragraph_key, build_paragraphs
from modules.playback import AudioOutput, ClockAudioOutput, PlaybackController
from modules.scheduler import Gateway, GenerationScheduler
from modules.tts_router import default_params, synthesize
from modules.tts_types import TtsParams
from modules.uploader import (
    AudioUploader,
    HttpAudioUploader,
    LocalAudioUploader,
    UploadAllResult,
    UploadPipeline,
)
from segment_store import Segment, SegmentStore


def build_uploader(config: ReaderConfig) -> AudioUploader:
    if config.upload_remote_base_url:
        return HttpAudioUploader(
            config.upload_remote_base_url, timeout=config.upload_timeout_seconds
        )
    return LocalAudioUploader(config.audio_dir, config.audio_public_prefix)


class ReaderSession:
    """One reading session: the segment list and everything that works on it.

    Owns exactly one store, scheduler, playback controller and upload
    pipeline. Build a fresh instance per application (or per test).
    """

    def __init__(
        self,
        config: ReaderConfig | None = None,
        *,
        gateway: Gateway | None = None,
        storage: Storage | None = None,
        uploader: AudioUploader | None = None,
        output: AudioOutput | None = None,
        params: TtsParams | None = None,
        on_notice: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or ReaderConfig()
        self.store = SegmentStore()
        self.storage = storage or Storage(use_firestore=self.config.use_firestore)
        self.scheduler = GenerationScheduler(
            self.store,
            gateway or synthesize,
            concurrency=self.config.tts_concurrency,
            params=params if params is not None else default_params(),
        )
        self.notice: str | None = None
        self._on_notice = on_notice
        self.playback = PlaybackController(
            self.store,
            output
            or ClockAudioOutput(
                local_dir=self.config.audio_dir,
                public_prefix=self.config.audio_public_prefix,
            ),
            on_notice=self._record_notice,
        )
        self.uploads = UploadPipeline(
            self.store,
            self.storage,
            uploader or build_uploader(self.config),
            concurrency=self.config.upload_concurrency,
            max_attempts=self.config.upload_max_attempts,
            timeout_seconds=self.config.upload_timeout_seconds,
            backoff_base_seconds=self.config.upload_backoff_base_seconds,
        )
        self.paragraph_key = build_paragraph_key([])
        self.article_id: str | None = None

    def _record_notice(self, message: str) -> None:
        self.notice = message
        if self._on_notice is not None:
            self._on_notice(message)

    # -- segment list ------------------------------------------------------

    def load_text(self, text: str) -> list[Segment]:
        """Re-segment ``text``. Always starts a new session token, even for equal text."""
        paragraphs = build_paragraphs(text)
        self.playback.reset()
        self.scheduler.reset()
        token = self.store.replace(paragraphs)
        self.paragraph_key = build_paragraph_key(paragraphs)
        self.article_id = None
        print(f"[session] resegmented segments={len(paragraphs)} key={self.paragraph_key} token={token}")
        return self.store.snapshot()

    def load_article(self, article_id: str) -> list[Segment]:
        record = self.storage.get_article(article_id)
        if record is None:
            raise ArticleNotFoundError(article_id)
        self.load_text(record.text)
        self.article_id = article_id
        hydrated = self.store.hydrate_audio_urls(record.audio_urls)
        self.store.hydrate_word_timings(record.segment_word_timings)
        print(f"[session] article={article_id} hydrated={len(hydrated)}")
        return self.store.snapshot()

    def load_audio_urls(self, audio_urls: Iterable[str]) -> list[str]:
        return self.store.hydrate_audio_urls(audio_urls)

    def load_segment_word_timings(self, mapping: dict[str, Any]) -> list[str]:
        return self.store.hydrate_word_timings(mapping)

    # -- generation --------------------------------------------------------

    def set_tts_params(self, params: TtsParams) -> None:
        self.scheduler.params = params

    def generate(
        self,
        ids: Iterable[str],
        params: TtsParams | None = None,
        *,
        priority: bool = False,
    ) -> list[str]:
        return self.scheduler.enqueue(ids, params, priority=priority)

    def generate_all(self, params: TtsParams | None = None) -> list[str]:
        return self.scheduler.generate_all(params)

    def set_concurrency(self, *, tts: int | None = None, upload: int | None = None) -> dict[str, int]:
        if tts is not None:
            self.scheduler.set_concurrency_limit(tts)
        if upload is not None:
            self.uploads.set_concurrency_limit(upload)
        return {
            "tts": self.scheduler.concurrency_limit,
            "upload": self.uploads.concurrency_limit,
        }

    # -- articles ----------------------------------------------------------

    def save_article(
        self,
        text: str,
        title: str | None = None,
        article_id: str | None = None,
    ) -> ArticleRecord:
        if article_id and self.storage.get_article(article_id) is not None:
            record = self.storage.update_article(article_id, title=title, text=text)
        else:
            record = self.storage.create_article(text, title, article_id)
        self.article_id = record.article_id
        return record

    async def upload_all(self, article_id: str) -> UploadAllResult:
        return await self.uploads.upload_all(article_id)

    async def upload_segment(self, article_id: str, segment_id: str) -> bool:
        return await self.uploads.upload_segment(article_id, segment_id)

    async def delete_article(self, article_id: str) -> None:
        if not await self.uploads.delete_article(article_id):
            raise ArticleNotFoundError(article_id)
        if self.article_id == article_id:
            self.article_id = None

    def list_articles(self, limit: int = 100) -> list[ArticleRecord]:
        return self.storage.list_recent_articles(limit)

    def snapshot(self) -> dict[str, Any]:
        return {
            "paragraph_key": self.paragraph_key,
            "article_id": self.article_id,
            "segments": self.store.snapshot(),
            "stats": self.store.stats(),
            "playback": self.playback.snapshot(),
            "notice": self.notice,
            "tts_concurrency": self.scheduler.concurrency_limit,
            "upload_concurrency": self.uploads.concurrency_limit,
        }
