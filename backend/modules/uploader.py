from __future__ import annotations

import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable

import requests

from article_store import Storage
from modules.errors import ArticleNotFoundError, UploadError
from modules.scheduler import MAX_CONCURRENCY, clamp_concurrency
from modules.word_sync import timings_to_dicts
from segment_store import AudioRef, Segment, SegmentStore

DEFAULT_UPLOAD_CONCURRENCY = 6
MIN_UPLOAD_CONCURRENCY = 2
MAX_UPLOAD_ATTEMPTS = 3
UPLOAD_TIMEOUT_SECONDS = 45.0
UPLOAD_BACKOFF_BASE_SECONDS = 1.0
ARTICLE_DELETED = "Article was deleted."

_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/basic": "au",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get((mime_type or "").lower(), "wav")


class AudioUploader(ABC):
    @abstractmethod
    def upload(self, article_id: str, segment_id: str, audio: bytes, mime_type: str) -> str:
        """Store ``audio`` durably and return its public URL. Raises UploadError."""
        raise NotImplementedError

    def delete_article_audio(self, article_id: str) -> None:
        """Remove stored audio for a deleted article, where the backend can."""


class LocalAudioUploader(AudioUploader):
    """Writes into the directory the API serves under ``public_prefix``."""

    def __init__(self, base_dir: str, public_prefix: str = "/audio") -> None:
        self.base_dir = base_dir
        self.public_prefix = public_prefix.rstrip("/")

    def _folder(self, article_id: str) -> str:
        if not article_id or article_id in (".", "..") or os.path.basename(article_id) != article_id:
            raise UploadError(f"Invalid article id: {article_id!r}", status=400)
        return os.path.join(self.base_dir, article_id)

    def upload(self, article_id: str, segment_id: str, audio: bytes, mime_type: str) -> str:
        if not audio:
            raise UploadError("Missing audio payload.", status=400)
        filename = f"{segment_id}.{extension_for(mime_type)}"
        folder = self._folder(article_id)
        path = os.path.join(folder, filename)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(folder, exist_ok=True)
            with open(tmp_path, "wb") as fh:
                fh.write(audio)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise UploadError(f"Could not write audio: {exc}", status=500) from exc
        return f"{self.public_prefix}/{article_id}/{filename}"

    def delete_article_audio(self, article_id: str) -> None:
        try:
            shutil.rmtree(self._folder(article_id))
        except (FileNotFoundError, UploadError):
            return
        except OSError as exc:
            print(f"[uploader] article={article_id} audio not removed error={exc}")


class HttpAudioUploader(AudioUploader):
    """Posts audio to a remote articles API (``POST /api/articles/<id>/audio``)."""

    def __init__(self, base_url: str, *, timeout: float = UPLOAD_TIMEOUT_SECONDS) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def upload(self, article_id: str, segment_id: str, audio: bytes, mime_type: str) -> str:
        filename = f"{segment_id}.{extension_for(mime_type)}"
        try:
            response = self._session.post(
                f"{self.base_url}/api/articles/{article_id}/audio",
                files={"audio": (filename, audio, mime_type)},
                data={"segmentId": segment_id},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise UploadError("Upload timed out.", status=408) from exc
        except requests.RequestException as exc:
            raise UploadError(f"Upload failed: {exc}") from exc

        if not response.ok:
            message = "Upload failed."
            try:
                message = str(response.json().get("error") or message)
            except (ValueError, AttributeError):
                pass
            raise UploadError(message, status=response.status_code)
        try:
            url = response.json().get("url")
        except (ValueError, AttributeError):
            url = None
        if not url:
            raise UploadError("Upload response missing url.", status=response.status_code)
        return str(url)


@dataclass
class UploadAllResult:
    total: int = 0
    success: int = 0
    failed: int = 0


class _Limiter:
    """Counting limiter whose bound can change while waiters are queued."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.active = 0
        self._cond = asyncio.Condition()

    async def __aenter__(self) -> "_Limiter":
        async with self._cond:
            await self._cond.wait_for(lambda: self.active < self.limit)
            self.active += 1
        return self

    async def __aexit__(self, *exc: object) -> None:
        async with self._cond:
            self.active -= 1
            self._cond.notify_all()

    async def wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()


class UploadPipeline:
    def __init__(
        self,
        store: SegmentStore,
        storage: Storage,
        uploader: AudioUploader,
        *,
        concurrency: int = DEFAULT_UPLOAD_CONCURRENCY,
        max_attempts: int = MAX_UPLOAD_ATTEMPTS,
        timeout_seconds: float = UPLOAD_TIMEOUT_SECONDS,
        backoff_base_seconds: float = UPLOAD_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._storage = storage
        self._uploader = uploader
        self._limit = clamp_concurrency(concurrency, MIN_UPLOAD_CONCURRENCY, MAX_CONCURRENCY)
        self._limiter: _Limiter | None = None
        self.max_attempts = max(1, int(max_attempts))
        self.timeout_seconds = timeout_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    def set_concurrency_limit(self, limit: int) -> int:
        self._limit = clamp_concurrency(limit, MIN_UPLOAD_CONCURRENCY, MAX_CONCURRENCY)
        if self._limiter is not None:
            self._limiter.limit = self._limit
            try:
                asyncio.get_running_loop().create_task(self._limiter.wake())
            except RuntimeError:
                pass
        print(f"[uploader] concurrency_limit={self._limit}")
        return self._limit

    def _get_limiter(self) -> _Limiter:
        if self._limiter is None:
            self._limiter = _Limiter(self._limit)
        return self._limiter

    async def _require_article(self, article_id: str) -> None:
        if not article_id:
            raise ArticleNotFoundError(article_id)
        record = await asyncio.to_thread(self._storage.get_article, article_id)
        if record is None:
            raise ArticleNotFoundError(article_id)

    @staticmethod
    def _needs_upload(segment: Segment) -> bool:
        return (
            segment.status == "ready"
            and segment.audio is not None
            and segment.audio.data is not None
            and segment.upload_status not in ("success", "uploading")
        )

    def _claim(self, segment: Segment, token: int) -> AudioRef | None:
        if not self._needs_upload(segment):
            return None
        audio = segment.audio
        assert audio is not None
        if self._store.begin_upload(segment.id, token, audio) is None:
            return None
        return audio

    async def upload_all(self, article_id: str) -> UploadAllResult:
        await self._require_article(article_id)
        token = self._store.token
        # Claimed before the first await, so overlapping runs never count a segment twice.
        claimed: list[tuple[str, AudioRef]] = []
        for segment in self._store.snapshot():
            audio = self._claim(segment, token)
            if audio is not None:
                claimed.append((segment.id, audio))
        if not claimed:
            return UploadAllResult()

        print(f"[uploader] article={article_id} start total={len(claimed)}")
        outcomes = await asyncio.gather(
            *(self._upload_one(article_id, sid, audio, token) for sid, audio in claimed)
        )
        result = UploadAllResult(
            total=len(claimed),
            success=sum(1 for ok in outcomes if ok),
            failed=sum(1 for ok in outcomes if not ok),
        )
        print(
            f"[uploader] article={article_id} done total={result.total} "
            f"success={result.success} failed={result.failed}"
        )
        return result

    async def upload_segment(self, article_id: str, segment_id: str) -> bool:
        await self._require_article(article_id)
        segment = self._store.get(segment_id)
        if segment.upload_status == "success":
            return True
        token = self._store.token
        audio = self._claim(segment, token)
        if audio is None:
            return False
        return await self._upload_one(article_id, segment_id, audio, token)

    async def _upload_one(
        self, article_id: str, segment_id: str, audio: AudioRef, token: int
    ) -> bool:
        try:
            async with self._get_limiter():
                return await self._upload_with_retries(article_id, segment_id, audio, token)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            print(f"[uploader] segment={segment_id} unexpected error={message}")
            self._store.fail_upload(segment_id, token, audio, message)
            return False

    async def _upload_with_retries(
        self, article_id: str, segment_id: str, audio: AudioRef, token: int
    ) -> bool:
        last_error = "Upload failed."
        for attempt in range(1, self.max_attempts + 1):
            if not self._storage.has_article(article_id):
                last_error = ARTICLE_DELETED
                break
            data = audio.data
            if data is None or self._store.record_upload_attempt(segment_id, token, audio) is None:
                print(f"[uploader] segment={segment_id} stale, result discarded")
                return False
            try:
                url = await asyncio.wait_for(
                    asyncio.to_thread(
                        self._uploader.upload, article_id, segment_id, data, audio.mime_type
                    ),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = UploadError(
                    f"Upload timed out after {self.timeout_seconds:g}s.", status=408
                )
            except UploadError as exc:
                error = exc
            except Exception as exc:
                error = UploadError(str(exc) or "Upload failed.")
            else:
                return await self._finish_success(article_id, segment_id, token, audio, url)

            last_error = error.message
            self._store.note_upload_error(segment_id, token, audio, last_error)
            print(
                f"[uploader] segment={segment_id} attempt={attempt}/{self.max_attempts} "
                f"status={error.status} retryable={error.retryable} error={last_error}"
            )
            if not error.retryable or attempt >= self.max_attempts:
                break
            await self._sleep(self.backoff_base_seconds * (2 ** (attempt - 1)))

        self._store.fail_upload(segment_id, token, audio, last_error)
        return False

    async def _finish_success(
        self,
        article_id: str,
        segment_id: str,
        token: int,
        audio: AudioRef,
        url: str,
    ) -> bool:
        if not self._storage.has_article(article_id):
            self._store.fail_upload(segment_id, token, audio, ARTICLE_DELETED)
            print(f"[uploader] article={article_id} removed, segment={segment_id} discarded")
            return False
        updated = self._store.complete_upload(segment_id, token, audio, url)
        if updated is None:
            print(f"[uploader] segment={segment_id} stale, result discarded")
            return False
        try:
            await asyncio.to_thread(
                self._storage.record_segment_audio,
                article_id,
                segment_id,
                url,
                word_timings=timings_to_dicts(updated.word_timings) or None,
            )
        except KeyError:
            print(f"[uploader] article={article_id} removed, url not recorded")
        return True

    async def delete_article(self, article_id: str) -> bool:
        """Remove the article and its stored audio.

        Uploads still running for it end as failed instead of recording a URL.
        """
        record = await asyncio.to_thread(self._storage.get_article, article_id)
        if record is None:
            return False
        removed = await asyncio.to_thread(self._storage.delete_article, article_id)
        await asyncio.to_thread(self._uploader.delete_article_audio, article_id)
        print(f"[uploader] article={article_id} deleted removed={removed}")
        return True
