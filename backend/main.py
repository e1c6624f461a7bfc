"""FastAPI application entry point."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure backend/ is on sys.path for absolute imports
_backend_dir = str(Path(__file__).resolve().parent)
if _backend_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _backend_dir)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import api_router
from api.health import router as health_router
from config import settings
from database import Base, engine
from ws import ws_router

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging()

    import logging
    logger = logging.getLogger(__name__)

    import models  # noqa: F401  register all models with Base

    # Startup: create tables if they don't exist
    Base.metadata.create_all(bind=engine)

    from ws.gateway import build_gateway, init_gateway, reset_gateway

    gateway = init_gateway(build_gateway(settings))
    await gateway.start()
    logger.info("Chat gateway ready (rooms=%s, provider=%s)", settings.ROOM_BACKEND, type(gateway.provider).__name__)

    try:
        yield
    finally:
        await gateway.shutdown()
        reset_gateway()
        logger.info("Chat gateway stopped")


app = FastAPI(title="Relaychat API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [settings.FRONTEND_URL],
    allow_credentials=not settings.CORS_ALLOW_ALL_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(api_router)
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=3000, reload=True, log_config=None)
