"""
Status surface for the sync engine.

Small FastAPI app exposing connectivity, queue and failure state, plus
manual sync triggers. Served by uvicorn from main.py.
"""

import logging

import uvicorn
from fastapi import FastAPI, HTTPException

from ..services.errors import LocalStoreError
from ..services.hybrid_db import HybridDatabase

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("StatusApp")


def create_app(db: HybridDatabase) -> FastAPI:
    app = FastAPI(title="Orderbook Sync Status")

    @app.get("/health")
    async def health():
        return {"status": "ok", "initialized": db.initialized}

    @app.get("/api/status")
    async def status():
        return {
            "connectivity": db.monitor.get_status().to_dict(),
            "sync": db.queue_status(),
        }

    @app.post("/api/sync")
    async def sync_now():
        return await db.sync_now()

    @app.post("/api/pull")
    async def pull_remote():
        try:
            return await db.pull_remote()
        except LocalStoreError as e:
            logger.error(f"Pull failed on local store: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    @app.post("/api/push")
    async def push_local():
        return await db.push_local()

    @app.get("/api/failures")
    async def failures():
        entries = db.failures()
        return {"count": len(entries), "failures": entries}

    @app.post("/api/failures/requeue")
    async def requeue_failures():
        count = db.requeue_failures()
        if count and db.coordinator is not None:
            db.coordinator.request_drain()
        return {"status": "success", "requeued_count": count}

    @app.get("/api/logs")
    async def logs(limit: int = 50):
        if limit < 1 or limit > 500:
            raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
        return {"logs": db.store.get_recent_logs(limit)}

    return app


async def serve_status_app(db: HybridDatabase, port: int = 8001, host: str = "0.0.0.0"):
    """Run the status app on the current event loop."""
    config = uvicorn.Config(create_app(db), host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    logger.info(f"Status surface listening on http://{host}:{port}")
    await server.serve()
