from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from ..observability.metrics import metrics_middleware_factory
from ..services.assistant_session import AssistantSession
from .routers.mode import router as mode_router
from .routers.stream import router as stream_router

load_dotenv()  # Load ASSISTANT_STREAM_* and REDIS_URL from .env if present

VERSION = "0.1.0"


def create_app(session: Optional[AssistantSession] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.session.close()

    app = FastAPI(title="Assistant Stream API", version=VERSION, lifespan=lifespan)
    app.state.session = session or AssistantSession()

    # Observability: request latency histogram
    app.middleware("http")(metrics_middleware_factory())

    app.include_router(stream_router)
    app.include_router(mode_router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"name": "Assistant Stream API", "version": VERSION}

    @app.get("/health")
    def health():
        current = app.state.session
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "components": {
                "api": "ok",
                "mode": current.modes.current,
                "mode_healthy": current.modes.is_healthy(),
                "connection": current.driver.connection_health,
            },
        }

    @app.get("/metrics")
    def metrics() -> Response:
        # Expose Prometheus metrics
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
