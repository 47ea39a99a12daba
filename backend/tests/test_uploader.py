"""Tests for the upload pipeline and uploaders."""

import asyncio
import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FakeUploader, ready_audio
from modules.errors import ArticleNotFoundError, UploadError
from modules.uploader import (
    ARTICLE_DELETED,
    HttpAudioUploader,
    LocalAudioUploader,
    UploadPipeline,
    extension_for,
)
from segment_store import SegmentStore


def _ready_store(count=1, timings=None):
    store = SegmentStore()
    store.replace([f"paragraph {i}" for i in range(count)])
    token = store.token
    for i in range(count):
        store.begin_generation(f"seg-{i}")
        store.complete_generation(f"seg-{i}", token, ready_audio(1.0), timings)
    return store


def _pipeline(store, storage, uploader, **kwargs):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    kwargs.setdefault("sleep", fake_sleep)
    pipeline = UploadPipeline(store, storage, uploader, **kwargs)
    return pipeline, sleeps


# --- retries ---

def test_three_503s_end_in_failed(storage, http_503):
    store = _ready_store()
    article = storage.create_article("paragraph 0")
    uploader = FakeUploader([http_503, http_503, http_503])
    pipeline, sleeps = _pipeline(store, storage, uploader)

    result = asyncio.run(pipeline.upload_all(article.article_id))

    assert (result.total, result.success, result.failed) == (1, 0, 1)
    segment = store.get("seg-0")
    assert segment.upload_status == "failed"
    assert segment.upload_attempts == 3
    assert segment.upload_error == "Service Unavailable"
    assert segment.cloud_url is None
    assert sleeps == [1.0, 2.0]
    assert storage.get_article(article.article_id).audio_urls == []


def test_503_then_success_records_url(storage, http_503, sample_timings):
    store = _ready_store(timings=sample_timings)
    article = storage.create_article("paragraph 0")
    url = f"https://cdn.example.com/articles/{article.article_id}/seg-0.wav"
    uploader = FakeUploader([http_503, url])
    pipeline, sleeps = _pipeline(store, storage, uploader)

    result = asyncio.run(pipeline.upload_all(article.article_id))

    assert (result.total, result.success, result.failed) == (1, 1, 0)
    segment = store.get("seg-0")
    assert segment.upload_status == "success"
    assert segment.cloud_url == url
    assert segment.upload_attempts == 2
    assert segment.upload_error is None
    assert sleeps == [1.0]
    record = storage.get_article(article.article_id)
    assert record.audio_urls == [url]
    assert record.segment_word_timings["seg-0"] == [
        {"start": 0.0, "end": 0.5},
        {"start": 0.6, "end": 1.0},
    ]


def test_client_error_is_not_retried(storage):
    store = _ready_store()
    article = storage.create_article("paragraph 0")
    uploader = FakeUploader([UploadError("Bad request", status=400)])
    pipeline, sleeps = _pipeline(store, storage, uploader)

    asyncio.run(pipeline.upload_all(article.article_id))

    segment = store.get("seg-0")
    assert segment.upload_status == "failed"
    assert segment.upload_attempts == 1
    assert len(uploader.calls) == 1
    assert sleeps == []


def test_network_error_without_status_is_retried(storage):
    store = _ready_store()
    article = storage.create_article("paragraph 0")
    uploader = FakeUploader([UploadError("connection reset"), "https://cdn/x/seg-0.wav"])
    pipeline, _ = _pipeline(store, storage, uploader)

    asyncio.run(pipeline.upload_all(article.article_id))

    assert store.get("seg-0").upload_status == "success"
    assert len(uploader.calls) == 2


def test_timeout_counts_as_retryable_failure(storage):
    store = _ready_store()
    article = storage.create_article("paragraph 0")
    uploader = FakeUploader(delay=0.3)
    pipeline, _ = _pipeline(store, storage, uploader, timeout_seconds=0.05, max_attempts=2)

    asyncio.run(pipeline.upload_all(article.article_id))

    segment = store.get("seg-0")
    assert segment.upload_status == "failed"
    assert segment.upload_attempts == 2
    assert "timed out" in segment.upload_error


# --- idempotence and scope ---

def test_upload_all_skips_uploaded_and_unready_segments(storage):
    store = SegmentStore()
    store.replace(["a", "b", "c"])
    token = store.token
    store.begin_generation("seg-0")
    store.complete_generation("seg-0", token, ready_audio())
    store.begin_generation("seg-1")
    article = storage.create_article("a\n\nb\n\nc")
    uploader = FakeUploader()
    pipeline, _ = _pipeline(store, storage, uploader)

    first = asyncio.run(pipeline.upload_all(article.article_id))
    second = asyncio.run(pipeline.upload_all(article.article_id))

    assert (first.total, first.success) == (1, 1)
    assert (second.total, second.success, second.failed) == (0, 0, 0)
    assert uploader.calls == [(article.article_id, "seg-0")]


def test_upload_all_runs_segments_concurrently(storage):
    store = _ready_store(count=4)
    article = storage.create_article("text")
    uploader = FakeUploader()
    pipeline, _ = _pipeline(store, storage, uploader, concurrency=2)

    result = asyncio.run(pipeline.upload_all(article.article_id))

    assert result.success == 4
    assert sorted(sid for _, sid in uploader.calls) == ["seg-0", "seg-1", "seg-2", "seg-3"]
    assert len(storage.get_article(article.article_id).audio_urls) == 4


def test_upload_segment_single_and_repeat(storage):
    store = _ready_store(count=2)
    article = storage.create_article("text")
    uploader = FakeUploader()
    pipeline, _ = _pipeline(store, storage, uploader)

    assert asyncio.run(pipeline.upload_segment(article.article_id, "seg-1")) is True
    assert asyncio.run(pipeline.upload_segment(article.article_id, "seg-1")) is True
    assert uploader.calls == [(article.article_id, "seg-1")]
    assert store.get("seg-0").upload_status == "pending"


def test_unknown_article_is_rejected(storage):
    store = _ready_store()
    pipeline, _ = _pipeline(store, storage, FakeUploader())
    with pytest.raises(ArticleNotFoundError):
        asyncio.run(pipeline.upload_all("missing"))
    with pytest.raises(ArticleNotFoundError):
        asyncio.run(pipeline.upload_segment("", "seg-0"))


def test_resegment_during_upload_discards_result(storage):
    store = _ready_store()
    article = storage.create_article("text")
    uploader = FakeUploader(delay=0.1)
    pipeline, _ = _pipeline(store, storage, uploader)

    async def main():
        task = asyncio.create_task(pipeline.upload_all(article.article_id))
        await asyncio.sleep(0.02)
        store.replace(["other"])
        return await task

    result = asyncio.run(main())
    assert result.success == 0
    assert store.get("seg-0").upload_status == "pending"
    assert storage.get_article(article.article_id).audio_urls == []


def test_overlapping_runs_count_each_segment_once(storage):
    store = _ready_store(count=6)
    article = storage.create_article("text")
    uploader = FakeUploader(delay=0.01)
    pipeline, _ = _pipeline(store, storage, uploader, concurrency=2)

    async def main():
        return await asyncio.gather(
            pipeline.upload_all(article.article_id),
            pipeline.upload_all(article.article_id),
        )

    first, second = asyncio.run(main())

    assert (first.total, first.success, first.failed) == (6, 6, 0)
    assert (second.total, second.success, second.failed) == (0, 0, 0)
    assert len(uploader.calls) == 6
    assert all(s.upload_status == "success" for s in store.snapshot())


def test_unexpected_error_leaves_segment_retryable(storage, http_503):
    store = _ready_store()
    article = storage.create_article("text")
    uploader = FakeUploader([http_503])

    async def broken_sleep(seconds):
        raise RuntimeError("clock broken")

    pipeline, _ = _pipeline(store, storage, uploader, sleep=broken_sleep)

    first = asyncio.run(pipeline.upload_all(article.article_id))
    assert (first.total, first.failed) == (1, 1)
    segment = store.get("seg-0")
    assert segment.upload_status == "failed"
    assert segment.upload_error == "clock broken"

    second = asyncio.run(pipeline.upload_all(article.article_id))
    assert (second.total, second.success) == (1, 1)
    assert store.get("seg-0").upload_status == "success"


def test_deleting_article_discards_in_flight_upload(storage):
    store = _ready_store()
    article = storage.create_article("text")
    uploader = FakeUploader(delay=0.1)
    pipeline, _ = _pipeline(store, storage, uploader)

    async def main():
        task = asyncio.create_task(pipeline.upload_all(article.article_id))
        await asyncio.sleep(0.03)
        removed = await pipeline.delete_article(article.article_id)
        return removed, await task

    removed, result = asyncio.run(main())

    assert removed is True
    assert (result.total, result.success, result.failed) == (1, 0, 1)
    segment = store.get("seg-0")
    assert segment.upload_status == "failed"
    assert segment.upload_error == ARTICLE_DELETED
    assert segment.cloud_url is None
    assert storage.get_article(article.article_id) is None
    assert uploader.deleted == [article.article_id]


def test_deleting_unknown_article(storage):
    pipeline, _ = _pipeline(SegmentStore(), storage, FakeUploader())
    assert asyncio.run(pipeline.delete_article("missing")) is False


def test_concurrency_limit_has_floor_of_two(storage):
    pipeline, _ = _pipeline(SegmentStore(), storage, FakeUploader(), concurrency=1)
    assert pipeline.concurrency_limit == 2
    assert pipeline.set_concurrency_limit(9) == 9
    assert pipeline.set_concurrency_limit(0) == 2


# --- uploaders ---

def test_extension_for():
    assert extension_for("audio/mpeg") == "mp3"
    assert extension_for("audio/wav") == "wav"
    assert extension_for("application/octet-stream") == "wav"


def test_local_uploader_writes_file(tmp_path, wav_bytes):
    uploader = LocalAudioUploader(str(tmp_path), "/audio/")
    url = uploader.upload("art-1", "seg-3", wav_bytes, "audio/wav")
    assert url == "/audio/art-1/seg-3.wav"
    path = tmp_path / "art-1" / "seg-3.wav"
    assert path.read_bytes() == wav_bytes
    assert not os.path.exists(f"{path}.tmp")


def test_local_uploader_deletes_article_folder(tmp_path, wav_bytes):
    uploader = LocalAudioUploader(str(tmp_path))
    uploader.upload("art-1", "seg-0", wav_bytes, "audio/wav")
    uploader.delete_article_audio("art-1")
    assert not (tmp_path / "art-1").exists()
    uploader.delete_article_audio("art-1")


def test_local_uploader_rejects_unsafe_article_id(tmp_path, wav_bytes):
    uploader = LocalAudioUploader(str(tmp_path / "audio"))
    with pytest.raises(UploadError) as info:
        uploader.upload("..", "seg-0", wav_bytes, "audio/wav")
    assert info.value.status == 400
    uploader.delete_article_audio("..")
    assert tmp_path.exists()


def test_local_uploader_rejects_empty_payload(tmp_path):
    with pytest.raises(UploadError) as info:
        LocalAudioUploader(str(tmp_path)).upload("a", "seg-0", b"", "audio/wav")
    assert info.value.status == 400
    assert not info.value.retryable


def _response(status, payload):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = payload
    return response


def test_http_uploader_success():
    uploader = HttpAudioUploader("https://reader.example.com/")
    with patch.object(uploader._session, "post") as post:
        post.return_value = _response(200, {"url": "https://cdn/a/seg-0.mp3"})
        url = uploader.upload("a", "seg-0", b"ID3", "audio/mpeg")
    assert url == "https://cdn/a/seg-0.mp3"
    args, kwargs = post.call_args
    assert args[0] == "https://reader.example.com/api/articles/a/audio"
    assert kwargs["files"]["audio"][0] == "seg-0.mp3"
    assert kwargs["data"] == {"segmentId": "seg-0"}


def test_http_uploader_maps_status_and_message():
    uploader = HttpAudioUploader("https://reader.example.com")
    with patch.object(uploader._session, "post") as post:
        post.return_value = _response(503, {"error": "Storage busy"})
        with pytest.raises(UploadError) as info:
            uploader.upload("a", "seg-0", b"RIFF", "audio/wav")
    assert info.value.status == 503
    assert info.value.message == "Storage busy"
    assert info.value.retryable


def test_http_uploader_timeout_is_retryable():
    uploader = HttpAudioUploader("https://reader.example.com")
    with patch.object(uploader._session, "post", side_effect=requests.Timeout()):
        with pytest.raises(UploadError) as info:
            uploader.upload("a", "seg-0", b"RIFF", "audio/wav")
    assert info.value.status == 408
    assert info.value.retryable


def test_http_uploader_missing_url():
    uploader = HttpAudioUploader("https://reader.example.com")
    with patch.object(uploader._session, "post") as post:
        post.return_value = _response(200, {})
        with pytest.raises(UploadError):
            uploader.upload("a", "seg-0", b"RIFF", "audio/wav")
