import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router, search_router
from runtime_state import runtime_state

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the index runtime before serving and close it afterwards."""
    print("Memory search index starting...")
    try:
        engine = await runtime_state.ensure_started()
        print(
            "Search index initialized "
            f"(fts_available={engine.client.fts_available})."
        )
    except Exception as e:
        print(f"Failed to initialize search index: {e}")
        raise RuntimeError("Failed to initialize search index during startup") from e

    yield

    print("Closing search index...")
    await runtime_state.shutdown()


app = FastAPI(
    title="Memory Search Index API",
    description="Hybrid keyword/full-text search over memory records",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Memory Search Index API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Index capabilities, counts and cache stats; degraded instead of failing."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    try:
        index_payload = await runtime_state.engine.status()
        payload["index"] = index_payload
        payload["runtime"] = {
            "maintenance_lane": await runtime_state.maintenance_lane.status(),
        }
        if not index_payload["capabilities"]["fts_available"]:
            payload["status"] = "degraded"
            index_payload["reason"] = "FTS5 unavailable; keyword retrieval only."
    except Exception as e:
        logger.warning("Health check degraded: %s", e)
        payload["status"] = "degraded"
        payload["index"] = {
            "index_available": False,
            "reason": str(e),
        }
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
