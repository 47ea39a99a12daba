"""HTTP API tests through FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from config import ReaderConfig
from conftest import FakeGateway, FakeOutput, FakeUploader
from main import create_app
from modules.errors import UploadError
from modules.tts_types import GeminiTtsParams
from session import ReaderSession

TEXT = "Alpha paragraph.\n\nBeta paragraph."


@pytest.fixture
def reader(tmp_path, storage):
    return ReaderSession(
        ReaderConfig(audio_dir=str(tmp_path)),
        gateway=FakeGateway(timings=[{"start": 0.0, "end": 0.3}]),
        storage=storage,
        uploader=FakeUploader(),
        output=FakeOutput(),
        params=GeminiTtsParams(api_key="k"),
    )


@pytest.fixture
def client(reader):
    with TestClient(create_app(reader)) as c:
        yield c


def _wait_until_idle(client, attempts=50):
    for _ in range(attempts):
        body = client.get("/session").json()
        if body["stats"]["generating"] == 0:
            return body
        time.sleep(0.02)
    raise AssertionError("generation did not finish")


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "storage": "in-memory"}


def test_text_generate_and_play_in_sequence(client, reader):
    r = client.post("/session/text", json={"text": TEXT})
    assert r.status_code == 200
    body = r.json()
    assert [s["id"] for s in body["segments"]] == ["seg-0", "seg-1"]
    assert all(s["status"] == "idle" for s in body["segments"])

    r = client.post("/playback/play/seg-0")
    assert r.status_code == 409

    r = client.post("/segments/generate-all", json={})
    assert r.status_code == 200
    assert r.json()["accepted"] == ["seg-0", "seg-1"]

    body = _wait_until_idle(client)
    assert body["stats"]["ready"] == 2
    assert body["segments"][0]["has_audio"]
    assert body["segments"][0]["word_timings"] == [{"start": 0.0, "end": 0.3}]

    r = client.post("/playback/sequence/seg-0")
    assert r.status_code == 200
    assert r.json()["active_segment_id"] == "seg-0"
    assert r.json()["sequence_mode"] is True

    r = client.post("/playback/seek", json={"time": 0.1})
    assert r.json()["current_time"] == pytest.approx(0.1)
    assert r.json()["active_word_index"] == 0

    r = client.post("/playback/pause")
    assert r.json()["is_playing"] is False
    r = client.post("/playback/toggle")
    assert r.json()["is_playing"] is True

    r = client.post("/playback/stop")
    assert r.json()["active_segment_id"] is None


def test_generate_unknown_segment_is_404(client):
    client.post("/session/text", json={"text": TEXT})
    r = client.post("/segments/generate", json={"ids": ["seg-9"]})
    assert r.status_code == 404


def test_generate_with_invalid_provider_is_422(client):
    client.post("/session/text", json={"text": TEXT})
    r = client.post(
        "/segments/generate",
        json={"ids": ["seg-0"], "params": {"provider": "polly", "api_key": "k"}},
    )
    assert r.status_code == 422


def test_settings(client, reader):
    r = client.put("/settings/concurrency", json={"tts": 6, "upload": 1})
    assert r.status_code == 200
    assert r.json() == {"tts": 6, "upload": 2}

    r = client.put(
        "/settings/tts",
        json={"params": {"provider": "elevenlabs", "api_key": "k", "voice_id": "v"}},
    )
    assert r.status_code == 200
    assert reader.scheduler.params.provider == "elevenlabs"
    assert reader.scheduler.params.voice_id == "v"


def test_article_upload_and_reload(client, reader):
    r = client.post("/articles", json={"text": TEXT, "title": "Greek letters"})
    assert r.status_code == 200
    article_id = r.json()["article_id"]

    client.post("/session/text", json={"text": TEXT})
    client.post("/segments/generate-all", json={})
    _wait_until_idle(client)

    r = client.post(f"/articles/{article_id}/upload/seg-1")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["segment"]["upload_status"] == "success"

    r = client.post(f"/articles/{article_id}/upload")
    assert r.json() == {"article_id": article_id, "total": 1, "success": 1, "failed": 0}

    r = client.get(f"/articles/{article_id}")
    assert len(r.json()["audio_urls"]) == 2
    assert set(r.json()["segment_word_timings"]) == {"seg-0", "seg-1"}

    calls_before = len(reader.scheduler._gateway.calls)
    r = client.post(f"/articles/{article_id}/load")
    assert r.status_code == 200
    body = r.json()
    assert body["article_id"] == article_id
    assert all(s["status"] == "ready" and s["cloud_url"] for s in body["segments"])
    assert len(reader.scheduler._gateway.calls) == calls_before


def test_upload_failure_is_reported(client, reader):
    reader.uploads._uploader = FakeUploader([UploadError("Bad request", status=400)])
    article_id = client.post("/articles", json={"text": "Only one."}).json()["article_id"]
    client.post("/session/text", json={"text": "Only one."})
    client.post("/segments/generate-all", json={})
    _wait_until_idle(client)

    r = client.post(f"/articles/{article_id}/upload")
    assert r.json()["failed"] == 1
    segment = client.get("/session").json()["segments"][0]
    assert segment["upload_status"] == "failed"
    assert segment["upload_error"] == "Bad request"


def test_unknown_article_routes(client):
    assert client.get("/articles/missing").status_code == 404
    assert client.post("/articles/missing/load").status_code == 404
    assert client.post("/articles/missing/upload").status_code == 404


def test_list_and_delete_articles(client, reader):
    first = client.post("/articles", json={"text": "One.", "article_id": "first"}).json()
    client.post("/articles", json={"text": "Two.", "article_id": "second"})

    r = client.get("/articles")
    assert r.status_code == 200
    assert [a["article_id"] for a in r.json()] == ["second", "first"]
    assert [a["article_id"] for a in client.get("/articles?limit=1").json()] == ["second"]

    r = client.delete(f"/articles/{first['article_id']}")
    assert r.status_code == 204
    assert reader.uploads._uploader.deleted == ["first"]
    assert client.get("/articles/first").status_code == 404
    assert client.delete("/articles/first").status_code == 404
    assert [a["article_id"] for a in client.get("/articles").json()] == ["second"]


def test_article_id_must_be_a_single_path_segment(client):
    r = client.post("/articles", json={"text": "One.", "article_id": "../escape"})
    assert r.status_code == 422


def test_hydrate_routes(client):
    client.post("/session/text", json={"text": TEXT})
    r = client.post(
        "/session/audio-urls",
        json={"audio_urls": ["https://cdn.example.com/articles/a1/seg-1.wav"]},
    )
    assert r.status_code == 200
    assert r.json()["updated"] == ["seg-1"]
    segment = r.json()["session"]["segments"][1]
    assert segment["status"] == "ready"
    assert segment["cloud_url"] == "https://cdn.example.com/articles/a1/seg-1.wav"

    r = client.post(
        "/session/word-timings",
        json={"segment_word_timings": {"seg-1": [{"start": 0.1, "end": 0.5}]}},
    )
    assert r.json()["updated"] == ["seg-1"]
    assert r.json()["session"]["segments"][1]["word_timings"] == [{"start": 0.1, "end": 0.5}]
