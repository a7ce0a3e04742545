import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import ingest_router, machines_router, overview_router
from db import create_sqlite_client
from runtime_state import RuntimeState

logger = logging.getLogger("status_ledger")

API_VERSION = "1.0.0"


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Status ledger API starting...")
    client = create_sqlite_client()
    try:
        await client.init_db()
        runtime = RuntimeState(client)
        await runtime.ensure_started()
    except Exception as exc:
        logger.exception("Failed to initialize SQLite")
        await client.close()
        raise RuntimeError("Failed to initialize SQLite during startup") from exc
    app.state.runtime = runtime
    logger.info("SQLite database initialized.")

    yield

    logger.info("Closing database connections...")
    app.state.runtime = None
    await runtime.shutdown()
    await client.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Status Ledger API",
        description="Machine status intervals from device heartbeats",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(ingest_router, prefix="/api")
    app.include_router(machines_router, prefix="/api")
    app.include_router(overview_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "message": "Status Ledger API",
            "version": API_VERSION,
            "docs": "/docs",
            "timestamp": _utc_iso_now(),
        }

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
