"""FastAPI entry point for the run tracker service.

Serves the operator API for one race session, pushes live snapshots over
WebSocket, and publishes finished races to the content store.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tracker.archive import get_archive_counters
from tracker.checkpoint import CheckpointStore
from tracker.config import get_settings
from tracker.lifecycle import TransitionError
from tracker.live_feed import LiveFeed
from tracker.models import (
    AddParticipantRequest,
    AdjustTimeRequest,
    LiveParticipant,
    LoopAdjustRequest,
    PromotionRequest,
    PublishRequest,
    StartRaceRequest,
)
from tracker.publish import PublishError, PublishValidationError
from tracker.service import TrackerService
from tracker.session import SessionError
from tracker.store_client import ContentStoreClient, StoreError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------

settings = get_settings()
store = ContentStoreClient(
    base_url=settings.store_api_url,
    owner=settings.store_owner,
    repo=settings.store_repo,
    branch=settings.store_branch,
    token=settings.store_token,
    timeout_s=settings.store_timeout_s,
)
service = TrackerService(settings, store, CheckpointStore(settings.checkpoint_path))
live_feed = LiveFeed()

_start_time = time.time()


def _participant_view(p: LiveParticipant) -> dict:
    return p.model_dump(by_alias=True, mode="json")


async def _push_snapshot() -> None:
    """Send the current session view to every connected screen."""
    await live_feed.broadcast(service.snapshot())


# ---------------------------------------------------------------------------
# Live feed task
# ---------------------------------------------------------------------------

async def _tick_task() -> None:
    """Refresh connected screens so the running clock keeps moving."""
    while True:
        await asyncio.sleep(settings.tick_interval_s)

        if live_feed.client_count == 0:
            continue

        await _push_snapshot()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Startup and shutdown logic for the FastAPI app."""
    logger.info("Tracker service starting...")

    await store.start()

    if service.restore():
        logger.warning("Unfinished race recovered from %s", settings.checkpoint_path)

    runners = await service.refresh_roster()
    logger.info("Roster loaded: %d selectable runners", len(runners))
    seeds = await service.refresh_seed_times()
    logger.info("Seed times loaded for %d runners", len(seeds))

    ticker = asyncio.create_task(_tick_task())

    logger.info("Tracker service ready, listening on %s:%d", settings.host, settings.port)
    yield

    # Shutdown
    logger.info("Tracker service shutting down...")
    ticker.cancel()
    await store.stop()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Run Club Race Tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(TransitionError)
@app.exception_handler(SessionError)
async def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": str(exc)})


@app.exception_handler(KeyError)
async def _not_found(request: Request, exc: KeyError) -> JSONResponse:
    missing = exc.args[0] if exc.args else ""
    return JSONResponse(status_code=404, content={"error": f"'{missing}' not found"})


@app.exception_handler(PublishValidationError)
async def _invalid_publish(request: Request, exc: PublishValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(PublishError)
async def _publish_failed(request: Request, exc: PublishError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": str(exc)})


@app.exception_handler(StoreError)
async def _store_failed(request: Request, exc: StoreError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": "Content store unavailable"})


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Live session feed for operator screens."""
    await live_feed.connect(websocket)
    try:
        await live_feed.send_snapshot(websocket, service.snapshot())
        while True:
            data = await websocket.receive_text()
            logger.debug("Received client message: %s", data[:100])
    except WebSocketDisconnect:
        live_feed.disconnect(websocket)
    except Exception:
        live_feed.disconnect(websocket)


# ---------------------------------------------------------------------------
# HTTP endpoints: health & roster
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    return {
        "status": "healthy",
        "uptime_s": int(time.time() - _start_time),
        "phase": service.session.phase.value,
        "ws_clients": live_feed.client_count,
        "messages_sent": live_feed.messages_sent,
        "runners_loaded": service.roster.count,
        "checkpoint_saves": service.checkpoints.save_count,
        "store_requests": store.requests_sent,
        "store_retries": store.retries,
        "store_errors": store.errors,
        "archive_counters": get_archive_counters(),
    }


@app.get("/api/roster")
async def list_roster(refresh: bool = False) -> dict:
    """Selectable runners (the shared guest entry is excluded)."""
    if refresh:
        await service.refresh_roster()
    runners = service.roster.selectable()
    return {
        "runners": [r.model_dump(by_alias=True, mode="json") for r in runners],
        "seed_times": service.seed_times,
    }


# ---------------------------------------------------------------------------
# HTTP endpoints: race session
# ---------------------------------------------------------------------------

@app.get("/api/session")
async def get_session() -> dict:
    return service.snapshot()


@app.post("/api/session/start")
async def start_race(req: StartRaceRequest) -> dict:
    try:
        snap = service.start_race(req.participant_ids, req.guests)
    except ValueError as exc:
        return JSONResponse(status_code=422, content={"error": str(exc)})
    await _push_snapshot()
    return snap


@app.post("/api/session/pause")
async def pause_race() -> dict:
    snap = service.pause()
    await _push_snapshot()
    return snap


@app.post("/api/session/resume")
async def resume_race() -> dict:
    snap = service.resume()
    await _push_snapshot()
    return snap


@app.post("/api/session/end")
async def end_race() -> dict:
    snap = service.end_race()
    await _push_snapshot()
    return snap


@app.post("/api/session/back")
async def back_to_tracking() -> dict:
    snap = service.back_to_tracking()
    await _push_snapshot()
    return snap


@app.post("/api/session/cancel")
async def cancel_race() -> dict:
    snap = service.cancel()
    await _push_snapshot()
    return snap


@app.post("/api/session/acknowledge-recovery")
async def acknowledge_recovery() -> dict:
    return service.acknowledge_recovery()


# ---------------------------------------------------------------------------
# HTTP endpoints: participants
# ---------------------------------------------------------------------------

@app.post("/api/session/participants")
async def add_participant(req: AddParticipantRequest) -> dict:
    try:
        p = service.add_participant(req.participant_id, req.guest_nickname)
    except ValueError as exc:
        if isinstance(exc, TransitionError):
            raise
        return JSONResponse(status_code=422, content={"error": str(exc)})
    await _push_snapshot()
    return _participant_view(p)


@app.delete("/api/session/participants/{participant_id}")
async def remove_participant(participant_id: str) -> dict:
    p = service.remove_participant(participant_id)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/loops")
async def adjust_loops(participant_id: str, req: LoopAdjustRequest) -> dict:
    p = service.adjust_loops(participant_id, req.kind, req.delta)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/finish")
async def finish_participant(participant_id: str) -> dict:
    p = service.finish(participant_id)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/complete")
async def complete_participant(participant_id: str) -> dict:
    p = service.complete(participant_id)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/undo-complete")
async def undo_complete_participant(participant_id: str) -> dict:
    p = service.undo_complete(participant_id)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/resume")
async def resume_participant(participant_id: str) -> dict:
    p = service.resume_participant(participant_id)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/adjust-time")
async def adjust_finish_time(participant_id: str, req: AdjustTimeRequest) -> dict:
    p = service.adjust_finish_time(participant_id, req.steps)
    await _push_snapshot()
    return _participant_view(p)


@app.post("/api/session/participants/{participant_id}/promotion")
async def set_promotion(participant_id: str, req: PromotionRequest) -> dict:
    p = service.set_promotion(participant_id, req.convert, req.name)
    await _push_snapshot()
    return _participant_view(p)


# ---------------------------------------------------------------------------
# HTTP endpoints: publish & staged runs
# ---------------------------------------------------------------------------

def _decode_photo(photo_base64: Optional[str]) -> Optional[bytes]:
    if not photo_base64:
        return None
    # Accept data URLs straight from a browser file reader
    if photo_base64.startswith("data:"):
        photo_base64 = photo_base64.split(",", 1)[-1]
    try:
        return base64.b64decode(photo_base64, validate=True)
    except binascii.Error:
        raise PublishValidationError("Photo is not valid base64") from None


def _race_date(date: Optional[str]) -> Optional[datetime]:
    if not date:
        return None
    try:
        day = datetime.strptime(date, "%Y-%m-%d").date()
    except ValueError:
        raise PublishValidationError(f"Invalid race date: {date!r}") from None
    now = datetime.now(timezone.utc)
    return datetime.combine(day, now.timetz())


@app.post("/api/session/publish")
async def publish_race(req: PublishRequest) -> dict:
    result = await service.publish(
        photo=_decode_photo(req.photo_base64),
        title=req.title,
        body=req.body,
        race_date=_race_date(req.date),
    )
    await _push_snapshot()
    return {"status": "published", **result.as_dict()}


@app.get("/api/staged-runs")
async def list_staged_runs() -> dict:
    runs = await service.list_staged_runs()
    return {
        "runs": [
            {
                "date": run.date,
                "title": run.record.title,
                "participants": len(run.record.participants),
            }
            for run in runs
        ]
    }


@app.post("/api/staged-runs/{date}/load")
async def load_staged_run(date: str) -> dict:
    snap = await service.load_staged_run(date)
    await _push_snapshot()
    return snap


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tracker.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
