import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from lectern import normalize, runtime, status, transcribe, types as t, upload
from lectern.errors import InputError, PersistenceError, TransitionError
from lectern.queue import TranscriptQueue
from lectern.store import JsonFileStore, TranscriptStore

logger = logging.getLogger(__name__)

API_PREFIX = "/api"


class EnqueueRequest(BaseModel):
    source_url: str | None = None
    priority: str = "medium"


class RegenerateRequest(BaseModel):
    source_url: str | None = None
    priority: str = "high"


class EnqueueResponse(BaseModel):
    video_id: str
    queued: bool


class UploadRequest(BaseModel):
    video_id: str
    content: Any
    format: str | None = None
    filename: str | None = None
    duration: float | None = None
    language: str = runtime.DEFAULT_LANGUAGE


class VideoItem(BaseModel):
    video_id: str
    source_url: str | None = None
    duration: float | None = None


class QueueAllRequest(BaseModel):
    videos: list[VideoItem]


class CountResponse(BaseModel):
    count: int


class ConfigStatus(BaseModel):
    provider: str
    configured: bool
    errors: list[str]
    warnings: list[str]


def create_app(
    settings: runtime.Settings | None = None,
    store: TranscriptStore | None = None,
    provider: transcribe.TranscriptionProvider | None = None,
) -> FastAPI:
    """
    The app owns the one `TranscriptQueue`. It is built at startup, after the
    provider, and shut down with the app. Pass `store`/`provider` to replace
    the configured ones.
    """
    settings = settings or runtime.Settings.from_env()
    if store is None:
        store = JsonFileStore(runtime.data_dir(settings) / "transcripts")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = provider is None
        prov = transcribe.select_provider(settings) if owned else provider
        app.state.queue = TranscriptQueue(
            store, prov,
            max_concurrent=settings.max_concurrent,
            batch_pause=settings.batch_pause,
        )
        logger.info(
            "server.started provider=%s max_concurrent=%d", prov.name, settings.max_concurrent,
        )
        try:
            yield
        finally:
            await app.state.queue.shutdown()
            if owned:
                await prov.aclose()

    app = FastAPI(title="Lectern Transcript Pipeline", lifespan=lifespan)
    app.state.store = store

    @app.exception_handler(InputError)
    async def handle_input_error(_, exc: InputError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(TransitionError)
    async def handle_transition_error(_, exc: TransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def handle_persistence_error(_, exc: PersistenceError) -> JSONResponse:
        logger.error("server.persistence_error error=%s", exc)
        return JSONResponse(status_code=500, content={"detail": "Transcript storage failed"})

    def _queue() -> TranscriptQueue:
        return app.state.queue

    @app.post(f"{API_PREFIX}/videos/{{video_id}}/transcript", response_model=EnqueueResponse, status_code=202)
    async def generate(video_id: str, body: EnqueueRequest):
        queued = await _queue().enqueue(video_id, body.source_url, body.priority)
        return EnqueueResponse(video_id=video_id, queued=queued)

    @app.post(
        f"{API_PREFIX}/videos/{{video_id}}/transcript/regenerate",
        response_model=EnqueueResponse, status_code=202,
    )
    async def regenerate(video_id: str, body: RegenerateRequest | None = None):
        body = body or RegenerateRequest()
        queued = await _queue().regenerate(video_id, body.source_url, body.priority)
        return EnqueueResponse(video_id=video_id, queued=queued)

    @app.get(f"{API_PREFIX}/videos/{{video_id}}/transcript")
    async def get_transcript(video_id: str, format: str | None = Query(default=None)):
        transcript = await store.find_transcript(video_id)
        if transcript is None:
            raise HTTPException(status_code=404, detail="Transcript not found")
        if format == "vtt":
            return PlainTextResponse(normalize.to_vtt(transcript.segments), media_type="text/vtt")
        if format == "text":
            return PlainTextResponse(normalize.format_with_timestamps(transcript.segments))
        if format:
            raise HTTPException(status_code=400, detail=f"Unknown export format {format!r}")
        return status.transcript_view(video_id, transcript)

    @app.post(f"{API_PREFIX}/transcripts/upload", response_model=status.TranscriptView)
    async def upload_transcript(body: UploadRequest):
        transcript = await upload.ingest(
            store, body.video_id, body.content,
            fmt=body.format, filename=body.filename,
            duration=body.duration, language=body.language,
        )
        return status.transcript_view(body.video_id, transcript)

    @app.get(f"{API_PREFIX}/transcripts/status", response_model=status.TranscriptStatistics)
    async def transcripts_status():
        return await status.transcript_statistics(store)

    @app.get(f"{API_PREFIX}/transcript-queue/status", response_model=status.QueueStatus)
    async def queue_status():
        return status.queue_status(_queue())

    @app.post(f"{API_PREFIX}/transcript-queue/queue-all", response_model=CountResponse)
    async def queue_all(body: QueueAllRequest):
        videos = [t.VideoRef(v.video_id, v.source_url or "", v.duration) for v in body.videos]
        return CountResponse(count=await _queue().queue_missing(videos))

    @app.post(f"{API_PREFIX}/transcript-queue/retry-failed", response_model=CountResponse)
    async def retry_failed():
        return CountResponse(count=await _queue().retry_failed())

    @app.post(f"{API_PREFIX}/transcript-queue/clear-failed", response_model=CountResponse)
    async def clear_failed():
        return CountResponse(count=await _queue().clear_failed())

    @app.post(f"{API_PREFIX}/transcript-queue/clear-all", response_model=CountResponse)
    async def clear_all():
        return CountResponse(count=await _queue().clear_all())

    @app.get(f"{API_PREFIX}/transcript-config", response_model=ConfigStatus)
    def transcript_config():
        errors, warnings = runtime.check(settings)
        return ConfigStatus(
            provider=settings.provider,
            configured=not errors,
            errors=errors,
            warnings=warnings,
        )

    return app
