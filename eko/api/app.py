from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from eko.errors import StoreUnavailable
from eko.logging_config import api_logger as logger
from eko.models import PARTITIONS
from eko.runtime import EkoRuntime

# ---- Pydantic Models ------------------------------------------------------


class LiveMessageIn(BaseModel):
    content: str = Field(min_length=1)
    author: str
    room: str
    timestamp: Optional[datetime] = None
    messageId: Optional[str] = None
    authorId: Optional[str] = None
    roomId: Optional[str] = None


class TriggerIn(BaseModel):
    roomId: Optional[str] = None
    dryRun: bool = False


# ---- Helpers --------------------------------------------------------------


def _check_partition(partition: str) -> None:
    if partition not in PARTITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown partition '{partition}'")


ENDPOINTS = [
    {"path": "/health", "desc": "Liveness and per-partition counts", "example": "/health"},
    {"path": "/digest", "desc": "Force a digest of the live buffer (POST)", "example": "POST /digest"},
    {"path": "/live", "desc": "Live buffer count and preview", "example": "/live?limit=10"},
    {"path": "/live/stats", "desc": "Live buffer count and time range", "example": "/live/stats"},
    {"path": "/memory/counts", "desc": "Record counts per partition", "example": "/memory/counts"},
    {"path": "/memory/{partition}", "desc": "List records of a partition", "example": "/memory/facts?limit=20"},
    {"path": "/memory/purge", "desc": "Purge expired records (POST)", "example": "POST /memory/purge"},
    {"path": "/reflection/trigger", "desc": "Run one reflection cycle (POST)", "example": "POST /reflection/trigger"},
    {"path": "/reflection/status", "desc": "Reflection stats, history and rate window", "example": "/reflection/status"},
    {"path": "/reflection/state", "desc": "Current reflection state", "example": "/reflection/state"},
]


def create_app(runtime: EkoRuntime) -> FastAPI:
    """Create the admin API around a runtime instance."""
    app = FastAPI(title="Eko Admin API", version="0.1.0")
    app.state.runtime = runtime

    @app.exception_handler(StoreUnavailable)
    def _store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(f"{request.method} {request.url.path}: memory store unavailable: {exc}")
        return JSONResponse(status_code=503, content={"detail": f"Memory store unavailable: {exc}"})

    # ---- Probes -----------------------------------------------------------

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "db": runtime.store.path,
            "counts": runtime.store.counts(),
            "status": runtime.reflection.public_status,
        }

    @app.get("/endpoints")
    def endpoints() -> dict:
        """Curated list of admin endpoints with short descriptions and examples."""
        return {"items": ENDPOINTS}

    # ---- Digest & live buffer ---------------------------------------------

    @app.post("/digest")
    def force_digest():
        logger.info("Manual digest requested")
        result = runtime.digest.run_digest()
        if result.busy:
            raise HTTPException(status_code=409, detail="Digest already running")
        return {"success": result.ok, "result": result.to_dict()}

    @app.get("/digest/status")
    def digest_status():
        return runtime.digest.status()

    @app.get("/live")
    def live_preview(limit: int = Query(10, ge=1, le=100)):
        return {"count": runtime.live.count(), "preview": runtime.live.preview(limit)}

    @app.get("/live/stats")
    def live_stats():
        return runtime.live.stats()

    @app.post("/live")
    def append_live(msg: LiveMessageIn):
        entry_id = runtime.append_live_message(
            msg.content,
            msg.author,
            msg.room,
            timestamp=msg.timestamp,
            message_id=msg.messageId,
            author_id=msg.authorId,
            room_id=msg.roomId,
        )
        return {"success": entry_id is not None, "id": entry_id}

    @app.delete("/live")
    def clear_live():
        return {"success": True, "cleared": runtime.live.clear()}

    @app.delete("/live/{entry_id}")
    def delete_live(entry_id: str):
        if not runtime.live.delete(entry_id):
            raise HTTPException(status_code=404, detail=f"Live entry {entry_id} not found")
        return {"success": True, "deleted": entry_id}

    # ---- Durable memory ---------------------------------------------------

    @app.get("/memory/counts")
    def memory_counts():
        return runtime.store.counts()

    @app.post("/memory/purge")
    def purge():
        return {"success": True, "removed": runtime.purge_expired()}

    @app.get("/memory/{partition}")
    def list_memories(partition: str, limit: int = Query(50, ge=1, le=500)):
        _check_partition(partition)
        records = runtime.store.list(partition, limit=limit)
        return {
            "partition": partition,
            "count": runtime.store.count(partition),
            "items": [r.to_dict() for r in records],
        }

    @app.get("/memory/{partition}/{record_id}")
    def get_memory(partition: str, record_id: str):
        _check_partition(partition)
        record = runtime.store.get(partition, record_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Record {record_id} not found in {partition}")
        return record.to_dict()

    @app.delete("/memory/{partition}/{record_id}")
    def delete_memory(partition: str, record_id: str):
        _check_partition(partition)
        if not runtime.store.delete(partition, record_id):
            raise HTTPException(status_code=404, detail=f"Record {record_id} not found in {partition}")
        logger.info(f"Deleted {partition}/{record_id}")
        return {"success": True, "deleted": record_id}

    # ---- Reflection -------------------------------------------------------

    @app.post("/reflection/trigger")
    def trigger_reflection(body: Optional[TriggerIn] = None):
        body = body or TriggerIn()
        result = runtime.reflection.trigger(body.roomId, manual=True, dry_run=body.dryRun)
        if result.skipped == "no-room":
            raise HTTPException(status_code=400, detail="No roomId given and no default room configured")
        if result.skipped == "busy":
            raise HTTPException(status_code=409, detail=f"Reflection already running in {result.room_id}")
        return {"success": True, **result.to_dict()}

    @app.get("/reflection/status")
    def reflection_status():
        return runtime.reflection.status()

    @app.post("/reflection/reset-cooldown")
    def reset_cooldown():
        runtime.reflection.reset_cooldown()
        return {"success": True}

    @app.get("/reflection/state")
    def reflection_state():
        return {
            "state": runtime.reflection.state.value,
            "status": runtime.reflection.public_status,
        }

    return app


if __name__ == "__main__":
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Eko Admin API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument(
        "--no-jobs", action="store_true", help="Do not start digest/reflection/purge jobs"
    )
    args = parser.parse_args()

    runtime = EkoRuntime.from_config()
    if not args.no_jobs:
        runtime.start()
    logger.info(f"Starting Eko admin API on http://{args.host}:{args.port}")
    try:
        uvicorn.run(create_app(runtime), host=args.host, port=args.port)
    finally:
        runtime.close()
