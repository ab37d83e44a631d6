"""
Ask Franklin FastAPI backend.

Endpoints:
  POST /question                  — submit a question, get back a jobId immediately (202)
  GET  /question/{job_id}/status  — poll status: processing | completed | failed
  GET  /question/{job_id}/result  — answer text + audio/video URLs once completed
  GET  /question/{job_id}/events  — Server-Sent Events progress stream
  WS   /ws                        — push channel: send {type: join|leave, jobId}
  GET  /media/{filename}          — generated audio (public URL for the video provider)
  GET  /debug/jobs, /debug/config — diagnostics
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel

from cleanup import cleanup_loop
from config import Settings
from errors import InputError, JobStoreError
from jobs import STATUS_COMPLETED, STATUS_FAILED, TERMINAL_STATUSES, JobStore, get_job_store
from notify import ProgressChannel, build_event
from pipeline import Orchestrator
from providers import Providers

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0
STORE_UNAVAILABLE = "Job state is temporarily unavailable, please retry"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class QuestionRequest(BaseModel):
    question: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_job(store: JobStore, job_id: str) -> dict:
    """Read a job or raise the matching HTTP error (404 unknown, 503 store failure)."""
    try:
        job = store.get(job_id)
    except JobStoreError as exc:
        logger.error("[Store] Read failed for job %s: %s", job_id, exc.message)
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _status_payload(job: dict) -> dict:
    payload = {k: v for k, v in job.items() if k not in ("id", "result")}
    payload["jobId"] = job["id"]
    payload["resultReady"] = job.get("status") == STATUS_COMPLETED
    return payload


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/", tags=["health"])
def health(request: Request):
    settings: Settings = request.app.state.settings
    return {
        "status": "ok",
        "service": request.app.title,
        "stubProviders": settings.use_stub_providers,
    }


@router.post("/question", status_code=202)
async def submit_question(request: Request, body: Optional[QuestionRequest] = None):
    """Create a job for the question and return its ID immediately."""
    orchestrator: Orchestrator = request.app.state.orchestrator
    try:
        job_id = await orchestrator.submit(body.question if body else None)
    except InputError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except JobStoreError as exc:
        logger.error("[Store] Could not create job: %s", exc.message)
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE)
    except Exception:
        logger.exception("[API] Submission failed")
        raise HTTPException(status_code=500, detail="An error occurred while processing your request")

    return {
        "jobId": job_id,
        "status": "processing",
        "message": "Your question is being processed",
        "statusUrl": f"/question/{job_id}/status",
        "resultUrl": f"/question/{job_id}/result",
        "eventsUrl": f"/question/{job_id}/events",
    }


@router.get("/question/{job_id}/status")
def get_job_status(job_id: str, request: Request):
    """Current job state without the result payload."""
    return _status_payload(_load_job(request.app.state.store, job_id))


@router.get("/question/{job_id}/result")
def get_job_result(job_id: str, request: Request):
    job = _load_job(request.app.state.store, job_id)

    if job.get("status") != STATUS_COMPLETED:
        content = {
            "error": "Result not yet available",
            "jobId": job_id,
            "status": job.get("status"),
            "stage": job.get("stage"),
            "progress": job.get("progress"),
        }
        if job.get("status") == STATUS_FAILED:
            content["error"] = "Job failed"
            content["jobError"] = job.get("error")
        return JSONResponse(status_code=400, content=content)

    return {"jobId": job_id, "status": STATUS_COMPLETED, **(job.get("result") or {})}


@router.get("/question/{job_id}/events")
async def stream_job_events(job_id: str, request: Request):
    """
    Server-Sent Events: the current snapshot, then every update until the job
    is terminal. Subscribes before reading the snapshot so no update slips
    between the two.
    """
    state = request.app.state
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = state.channel.subscribe(job_id, queue.put_nowait)

    try:
        job = await asyncio.to_thread(_load_job, state.store, job_id)
    except HTTPException:
        unsubscribe()
        raise

    async def event_stream():
        try:
            event = build_event(job)
            yield _sse(event)
            while event["status"] not in TERMINAL_STATUSES:
                try:
                    update = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    # The job may be running in another process: re-check the store
                    try:
                        latest = await asyncio.to_thread(state.store.get, job_id)
                    except JobStoreError:
                        latest = None
                    if latest is not None and latest.get("status") in TERMINAL_STATUSES:
                        update = build_event(latest)
                    else:
                        yield ": keep-alive\n\n"
                        continue
                # Updates queued before the snapshot was read are older than it
                if (update.get("progress") or 0) < (event.get("progress") or 0):
                    continue
                event = update
                yield _sse(event)
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/ws")
async def progress_socket(websocket: WebSocket):
    """
    Push channel. Clients send ``{"type": "join", "jobId": ...}`` or
    ``{"type": "leave", "jobId": ...}`` and receive ``{"type": "update", ...}``
    events for every joined job. One socket can follow many jobs.
    """
    await websocket.accept()
    channel: ProgressChannel = websocket.app.state.channel
    outbox: asyncio.Queue = asyncio.Queue()
    subscriptions: Dict[str, Callable[[], None]] = {}

    async def forward() -> None:
        while True:
            message = await outbox.get()
            await websocket.send_json(message)

    sender = asyncio.create_task(forward())
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                action = message.get("type")
                job_id = message.get("jobId")
            except (ValueError, AttributeError):
                outbox.put_nowait({"type": "error", "message": "Messages must be JSON objects"})
                continue

            if not isinstance(job_id, str) or not job_id:
                outbox.put_nowait({"type": "error", "message": "jobId is required"})
            elif action == "join":
                if job_id not in subscriptions:
                    subscriptions[job_id] = channel.subscribe(
                        job_id, lambda event: outbox.put_nowait({"type": "update", **event})
                    )
                outbox.put_nowait({"type": "joined", "jobId": job_id})
            elif action == "leave":
                unsubscribe = subscriptions.pop(job_id, None)
                if unsubscribe is not None:
                    unsubscribe()
                outbox.put_nowait({"type": "left", "jobId": job_id})
            else:
                outbox.put_nowait({"type": "error", "message": f"Unknown message type {action!r}"})
    except WebSocketDisconnect:
        pass
    finally:
        for unsubscribe in subscriptions.values():
            unsubscribe()
        sender.cancel()


@router.get("/media/{filename}")
def serve_media(filename: str, request: Request):
    """Serve a generated audio file from the temp directory."""
    settings: Settings = request.app.state.settings
    # Prevent path traversal attacks
    safe_name = Path(filename).name
    file_path = Path(settings.temp_dir) / safe_name

    if not file_path.exists() or not file_path.is_file():
        raise HTTPException(status_code=404, detail="Media not found")

    return FileResponse(str(file_path), media_type="audio/mpeg")


@router.get("/debug/jobs", tags=["debug"])
def debug_jobs(request: Request):
    """Every job in the store, without result payloads."""
    try:
        jobs = request.app.state.store.list_all()
    except JobStoreError as exc:
        logger.error("[Store] Listing failed: %s", exc.message)
        raise HTTPException(status_code=503, detail=STORE_UNAVAILABLE)

    return {
        "totalJobs": len(jobs),
        "jobs": {
            job["id"]: {**_status_payload(job), "resultAvailable": job.get("result") is not None}
            for job in jobs
        },
    }


@router.get("/debug/config", tags=["debug"])
def debug_config(request: Request):
    """Which providers are configured. Never returns secret values."""
    settings: Settings = request.app.state.settings
    orchestrator: Orchestrator = request.app.state.orchestrator
    providers = orchestrator.providers
    return {
        "stubProviders": settings.use_stub_providers,
        "jobStore": request.app.state.store.name,
        "stages": list(providers.stages) if providers else [],
        "speechProvider": settings.speech_provider if settings.speech_enabled else None,
        "configured": {
            "openai": bool(settings.openai_api_key),
            "elevenlabs": bool(settings.elevenlabs_api_key and settings.elevenlabs_voice_id),
            "did": bool(settings.did_api_key and settings.franklin_image_url),
            "publicBaseUrl": bool(settings.public_base_url),
        },
        "missing": settings.missing_credentials(),
        "ready": not orchestrator.config_errors,
        "pendingTasks": orchestrator.pending_tasks,
    }


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[JobStore] = None,
    providers: Optional[Providers] = None,
) -> FastAPI:
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or get_job_store(settings)
    channel = ProgressChannel()
    orchestrator = Orchestrator.from_settings(settings, store, channel, providers=providers)

    # App lifespan: create temp dir + start cleanup background task
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(settings.temp_dir).mkdir(parents=True, exist_ok=True)

        cleanup_task = asyncio.create_task(
            cleanup_loop(
                store,
                settings.temp_dir,
                interval=settings.cleanup_interval,
                max_file_age=settings.max_file_age,
                retention_seconds=settings.job_retention_seconds,
                stale_after=settings.stale_job_seconds(),
            )
        )

        yield  # application runs

        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await orchestrator.shutdown()

    app = FastAPI(title="Ask Franklin API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.channel = channel
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn (``ask-franklin-api``)."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
