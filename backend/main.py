from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

load_dotenv()

from article_store import ArticleRecord
from config import ReaderConfig
from modules.errors import (
    ArticleNotFoundError,
    PlaybackError,
    SegmentNotFoundError,
)
from schemas import (
    ArticleCreateRequest,
    ArticleResponse,
    AudioUrlsRequest,
    ConcurrencyRequest,
    ConcurrencyResponse,
    GenerateAllRequest,
    GenerateRequest,
    GenerateResponse,
    HydrateResponse,
    PlaybackView,
    SeekRequest,
    SegmentView,
    SessionResponse,
    SessionStats,
    StepRequest,
    TextRequest,
    TtsSettingsRequest,
    UploadAllResponse,
    UploadSegmentResponse,
    WordTimingsRequest,
)
from session import ReaderSession


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _allow_origins() -> list[str]:
    cors_origins_raw = os.environ.get("CORS_ALLOW_ORIGINS", "*").strip()
    if cors_origins_raw == "*":
        return ["*"]
    return [o.strip() for o in cors_origins_raw.split(",") if o.strip()] or ["*"]


def _session(request: Request) -> ReaderSession:
    return request.app.state.session


def _session_response(session: ReaderSession) -> SessionResponse:
    snap = session.snapshot()
    return SessionResponse(
        paragraph_key=snap["paragraph_key"],
        article_id=snap["article_id"],
        segments=[SegmentView.from_segment(s) for s in snap["segments"]],
        stats=SessionStats(**snap["stats"]),
        playback=_playback_view(session),
        notice=snap["notice"],
        tts_concurrency=snap["tts_concurrency"],
        upload_concurrency=snap["upload_concurrency"],
    )


def _playback_view(session: ReaderSession) -> PlaybackView:
    session.playback.tick()
    snap = session.playback.snapshot()
    return PlaybackView(
        active_segment_id=snap.active_segment_id,
        is_playing=snap.is_playing,
        current_time=snap.current_time,
        duration=snap.duration,
        sequence_mode=snap.sequence_mode,
        active_word_index=snap.active_word_index,
        last_error=snap.last_error,
    )


def _article_response(record: ArticleRecord) -> ArticleResponse:
    return ArticleResponse(
        article_id=record.article_id,
        title=record.title,
        text=record.text,
        created_at=record.created_at,
        updated_at=record.updated_at,
        audio_urls=list(record.audio_urls),
        segment_word_timings=dict(record.segment_word_timings),
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (SegmentNotFoundError, ArticleNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc) or "Playback failed.")


def create_app(session: ReaderSession | None = None) -> FastAPI:
    config = session.config if session is not None else ReaderConfig.from_env()
    os.makedirs(config.audio_dir, exist_ok=True)

    app = FastAPI(
        title="Reader Audio API",
        description="Backend for the paragraph reader: per-segment TTS, playback and uploads",
        version="0.1.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allow_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.session = session or ReaderSession(config)
    app.mount(config.audio_public_prefix, StaticFiles(directory=config.audio_dir), name="audio")

    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        return {"status": "ok", "storage": _session(request).storage.backend}

    # -- segments ----------------------------------------------------------

    @app.post("/session/text", response_model=SessionResponse)
    async def load_text(req: TextRequest, request: Request) -> SessionResponse:
        session = _session(request)
        session.load_text(req.text)
        print(f"[{_utc_now_iso()}] session stage=resegmented key={session.paragraph_key}")
        return _session_response(session)

    @app.post("/session/audio-urls", response_model=HydrateResponse)
    async def load_audio_urls(req: AudioUrlsRequest, request: Request) -> HydrateResponse:
        session = _session(request)
        updated = session.load_audio_urls(req.audio_urls)
        print(f"[{_utc_now_iso()}] session stage=audio_urls updated={len(updated)}")
        return HydrateResponse(updated=updated, session=_session_response(session))

    @app.post("/session/word-timings", response_model=HydrateResponse)
    async def load_word_timings(req: WordTimingsRequest, request: Request) -> HydrateResponse:
        session = _session(request)
        updated = session.load_segment_word_timings(req.segment_word_timings)
        print(f"[{_utc_now_iso()}] session stage=word_timings updated={len(updated)}")
        return HydrateResponse(updated=updated, session=_session_response(session))

    @app.get("/session", response_model=SessionResponse)
    async def get_session(request: Request) -> SessionResponse:
        return _session_response(_session(request))

    @app.post("/segments/generate", response_model=GenerateResponse)
    async def generate(req: GenerateRequest, request: Request) -> GenerateResponse:
        session = _session(request)
        params = req.params.to_params() if req.params is not None else None
        try:
            accepted = session.generate(req.ids, params, priority=req.priority)
        except SegmentNotFoundError as exc:
            raise _http_error(exc) from exc
        print(f"[{_utc_now_iso()}] generate accepted={len(accepted)} priority={req.priority}")
        return GenerateResponse(
            accepted=accepted,
            queued=session.scheduler.queued_ids,
            in_flight=session.scheduler.in_flight_ids,
        )

    @app.post("/segments/generate-all", response_model=GenerateResponse)
    async def generate_all(req: GenerateAllRequest, request: Request) -> GenerateResponse:
        session = _session(request)
        params = req.params.to_params() if req.params is not None else None
        accepted = session.generate_all(params)
        print(f"[{_utc_now_iso()}] generate_all accepted={len(accepted)}")
        return GenerateResponse(
            accepted=accepted,
            queued=session.scheduler.queued_ids,
            in_flight=session.scheduler.in_flight_ids,
        )

    # -- settings ----------------------------------------------------------

    @app.put("/settings/concurrency", response_model=ConcurrencyResponse)
    async def set_concurrency(req: ConcurrencyRequest, request: Request) -> ConcurrencyResponse:
        limits = _session(request).set_concurrency(tts=req.tts, upload=req.upload)
        return ConcurrencyResponse(**limits)

    @app.put("/settings/tts")
    async def set_tts(req: TtsSettingsRequest, request: Request) -> dict[str, str]:
        _session(request).set_tts_params(req.params.to_params())
        return {"status": "ok", "provider": req.params.provider}

    # -- playback ----------------------------------------------------------

    @app.get("/playback", response_model=PlaybackView)
    async def get_playback(request: Request) -> PlaybackView:
        return _playback_view(_session(request))

    @app.post("/playback/play/{segment_id}", response_model=PlaybackView)
    async def play(segment_id: str, request: Request, restart: bool = False) -> PlaybackView:
        session = _session(request)
        await asyncio.to_thread(session.playback.prepare, segment_id)
        try:
            session.playback.play(segment_id, restart=restart)
        except (SegmentNotFoundError, PlaybackError) as exc:
            raise _http_error(exc) from exc
        return _playback_view(session)

    @app.post("/playback/sequence/{segment_id}", response_model=PlaybackView)
    async def play_sequence(segment_id: str, request: Request) -> PlaybackView:
        session = _session(request)
        await asyncio.to_thread(session.playback.prepare, segment_id)
        try:
            session.playback.start_sequence_from(segment_id)
        except (SegmentNotFoundError, PlaybackError) as exc:
            raise _http_error(exc) from exc
        return _playback_view(session)

    @app.post("/playback/pause", response_model=PlaybackView)
    async def pause(request: Request) -> PlaybackView:
        session = _session(request)
        session.playback.pause()
        return _playback_view(session)

    @app.post("/playback/toggle", response_model=PlaybackView)
    async def toggle(request: Request) -> PlaybackView:
        session = _session(request)
        try:
            session.playback.toggle_play_pause()
        except PlaybackError as exc:
            raise _http_error(exc) from exc
        return _playback_view(session)

    @app.post("/playback/stop", response_model=PlaybackView)
    async def stop(request: Request) -> PlaybackView:
        session = _session(request)
        session.playback.stop()
        return _playback_view(session)

    @app.post("/playback/seek", response_model=PlaybackView)
    async def seek(req: SeekRequest, request: Request) -> PlaybackView:
        session = _session(request)
        if req.segment_id is not None:
            await asyncio.to_thread(session.playback.prepare, req.segment_id)
        try:
            session.playback.seek(req.time, req.segment_id)
        except (SegmentNotFoundError, PlaybackError) as exc:
            raise _http_error(exc) from exc
        return _playback_view(session)

    @app.post("/playback/step", response_model=PlaybackView)
    async def step(req: StepRequest, request: Request) -> PlaybackView:
        session = _session(request)
        session.playback.step_time(req.delta)
        return _playback_view(session)

    # -- articles ----------------------------------------------------------

    @app.post("/articles", response_model=ArticleResponse)
    async def create_article(req: ArticleCreateRequest, request: Request) -> ArticleResponse:
        record = _session(request).save_article(req.text, req.title, req.article_id)
        print(f"[{_utc_now_iso()}] article={record.article_id} stage=saved")
        return _article_response(record)

    @app.get("/articles", response_model=list[ArticleResponse])
    async def list_articles(
        request: Request, limit: int = Query(default=100, ge=1, le=500)
    ) -> list[ArticleResponse]:
        records = await asyncio.to_thread(_session(request).list_articles, limit)
        return [_article_response(r) for r in records]

    @app.get("/articles/{article_id}", response_model=ArticleResponse)
    async def get_article(article_id: str, request: Request) -> ArticleResponse:
        record = _session(request).storage.get_article(article_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Article not found")
        return _article_response(record)

    @app.delete("/articles/{article_id}", status_code=204)
    async def delete_article(article_id: str, request: Request) -> Response:
        try:
            await _session(request).delete_article(article_id)
        except ArticleNotFoundError as exc:
            raise _http_error(exc) from exc
        print(f"[{_utc_now_iso()}] article={article_id} stage=deleted")
        return Response(status_code=204)

    @app.post("/articles/{article_id}/load", response_model=SessionResponse)
    async def load_article(article_id: str, request: Request) -> SessionResponse:
        session = _session(request)
        try:
            session.load_article(article_id)
        except ArticleNotFoundError as exc:
            raise _http_error(exc) from exc
        print(f"[{_utc_now_iso()}] article={article_id} stage=loaded")
        return _session_response(session)

    @app.post("/articles/{article_id}/upload", response_model=UploadAllResponse)
    async def upload_all(article_id: str, request: Request) -> UploadAllResponse:
        try:
            result = await _session(request).upload_all(article_id)
        except ArticleNotFoundError as exc:
            raise _http_error(exc) from exc
        print(
            f"[{_utc_now_iso()}] article={article_id} stage=uploaded "
            f"success={result.success} failed={result.failed}"
        )
        return UploadAllResponse(
            article_id=article_id,
            total=result.total,
            success=result.success,
            failed=result.failed,
        )

    @app.post("/articles/{article_id}/upload/{segment_id}", response_model=UploadSegmentResponse)
    async def upload_segment(
        article_id: str, segment_id: str, request: Request
    ) -> UploadSegmentResponse:
        session = _session(request)
        try:
            ok = await session.upload_segment(article_id, segment_id)
            segment = session.store.get(segment_id)
        except (ArticleNotFoundError, SegmentNotFoundError) as exc:
            raise _http_error(exc) from exc
        return UploadSegmentResponse(
            article_id=article_id,
            segment=SegmentView.from_segment(segment),
            success=ok,
        )

    return app


app = create_app()
