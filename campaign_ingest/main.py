from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from campaign_ingest.config import settings
from campaign_ingest.pipeline import IngestionPipeline
from campaign_ingest.routers import (
    admin,
    campaign_events,
    super_admin,
)


def create_app(pipeline: IngestionPipeline | None = None, *, start_background: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = app.state.pipeline or IngestionPipeline.build(settings)
        app.state.pipeline = active
        if start_background:
            active.start()
        try:
            yield
        finally:
            if start_background:
                active.stop()

    app = FastAPI(title="Campaign Event Ingestion", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def attach_request_id(request: Request, call_next):
        request_id = (
            request.headers.get("X-Request-ID")
            or request.headers.get("X-Correlation-ID")
            or str(uuid4())
        )
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(campaign_events.router)
    app.include_router(admin.router)
    app.include_router(super_admin.router)

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "campaign-event-ingestion"}

    @app.get("/health")
    def health(request: Request):
        queue = request.app.state.pipeline.orphan_queue.status()
        return {
            "status": "healthy" if queue["healthy"] else "degraded",
            "orphan_queue": {
                "size": queue["size"],
                "stale": queue["stale"],
                "ready_for_retry": queue["ready_for_retry"],
                "processing": queue["processing"],
                "healthy": queue["healthy"],
            },
        }

    return app


app = create_app()
