"""FastAPI application entrypoint for the Speechmatics transcription relay."""
from pathlib import Path
import sys

# Ensure the project root (parent of this file's directory) is on sys.path
_THIS_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _THIS_DIR.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

import functools
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from app.config import Settings, settings as default_settings
from app.models import schemas
from app.routers import realtime, transcription
from app.services.session_registry import SessionRegistry
from app.services.speechmatics_realtime import SpeechmaticsRealtimeClient
from app.services.realtime_session import UpstreamFactory
from app.services.transcription import BatchTranscriptionService

logging.basicConfig(
    level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Client libraries log every request/frame at INFO/DEBUG.
for _noisy_logger in ("httpx", "httpcore", "websockets"):
    logging.getLogger(_noisy_logger).setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[SessionRegistry] = None,
    upstream_factory: Optional[UpstreamFactory] = None,
    transcription_service: Optional[BatchTranscriptionService] = None,
) -> FastAPI:
    """Instantiate and configure the FastAPI application."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.speechmatics_api_key:
            logger.error("Speechmatics API key missing")
            raise RuntimeError("SPEECHMATICS_API_KEY is required")
        logger.info(
            "Relay ready (max sessions=%d, default language=%s)",
            app.state.session_registry.capacity,
            settings.default_language,
        )
        yield

    application = FastAPI(
        title="Speechmatics Transcription Relay",
        description="Relays realtime audio and batch files to Speechmatics for transcription.",
        version="0.1.0",
        lifespan=lifespan,
    )

    if transcription_service is None and settings.speechmatics_api_key:
        transcription_service = BatchTranscriptionService.from_settings(settings)

    application.state.settings = settings
    application.state.session_registry = (
        registry if registry is not None else SessionRegistry(settings.max_concurrent_sessions)
    )
    application.state.upstream_factory = upstream_factory or functools.partial(
        SpeechmaticsRealtimeClient.from_settings, settings
    )
    application.state.transcription_service = transcription_service

    application.include_router(transcription.router)
    application.include_router(realtime.router)

    @application.get("/")
    async def root() -> dict[str, str]:
        """Lightweight banner for service discovery."""
        return {"service": "speechmatics-relay", "status": "ok"}

    @application.get("/api/health", response_model=schemas.HealthResponse)
    async def health() -> schemas.HealthResponse:
        session_registry: SessionRegistry = application.state.session_registry
        return schemas.HealthResponse(
            status="ok",
            activeSessions=session_registry.size(),
            maxSessions=session_registry.capacity,
        )

    return application


app = create_app()


def main() -> None:
    import uvicorn

    if not default_settings.speechmatics_api_key:
        logger.error("Speechmatics API key missing")
        sys.exit(1)

    uvicorn.run(
        app,
        host=default_settings.host,
        port=default_settings.port,
        # Protocol-level pings are the client keepalive; sessions only check socket state.
        ws_ping_interval=default_settings.keepalive_interval,
    )


if __name__ == "__main__":
    main()
