from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from unibox.api.conversations import router as conversations_router
from unibox.api.events import router as events_router
from unibox.api.ingest import router as ingest_router
from unibox.api.messages import router as messages_router
from unibox.api.platforms import router as platforms_router
from unibox.api.webhooks import router as webhooks_router
from unibox.config import settings
from unibox.core import Core, build_core
from unibox.database import init_db

logger = logging.getLogger(__name__)


def create_app(core: Core | None = None) -> FastAPI:
    """Build the API; tests pass a prebuilt ``core``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if core is None:
            logging.basicConfig(
                level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )
            init_db()
            app.state.core = build_core(settings)
        else:
            app.state.core = core
        app.state.core.start()
        logger.info("unibox started")
        try:
            yield
        finally:
            app.state.core.stop()

    app = FastAPI(title="Unibox API", version="0.1.0", lifespan=lifespan)

    app.include_router(ingest_router)
    app.include_router(messages_router)
    app.include_router(conversations_router)
    app.include_router(platforms_router)
    app.include_router(webhooks_router)
    app.include_router(events_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
