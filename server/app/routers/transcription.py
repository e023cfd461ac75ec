"""Batch transcription endpoint."""
from __future__ import annotations

import logging
import time
from typing import Optional

import httpx
from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse

from ..models import schemas
from ..services.languages import resolve_language
from ..services.transcription import BatchTranscriptionService, TranscriptionJobError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["transcription"])


def _error(status_code: int, message: str, details: object = None) -> JSONResponse:
    body = schemas.ErrorResponse(error=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _is_audio(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    return content_type.startswith("audio/") or content_type == "application/octet-stream"


@router.post(
    "/transcribe",
    response_model=schemas.TranscribeResponse,
    responses={400: {"model": schemas.ErrorResponse}, 500: {"model": schemas.ErrorResponse}},
)
async def transcribe_file(
    request: Request,
    file: Optional[UploadFile] = File(default=None),
    language: Optional[str] = Form(default=None),
):
    """Transcribe a complete audio file via a Speechmatics batch job."""

    if file is None:
        return _error(400, "No file uploaded")
    if not _is_audio(file.content_type):
        return _error(400, "Only audio files are allowed!", {"content_type": file.content_type})

    settings = request.app.state.settings
    audio = await file.read()
    if len(audio) > settings.max_upload_bytes:
        return _error(413, "File too large", {"max_bytes": settings.max_upload_bytes, "size": len(audio)})

    service: Optional[BatchTranscriptionService] = request.app.state.transcription_service
    if service is None:
        return _error(500, "Speechmatics API key missing")

    resolved = resolve_language(language, settings.default_language)
    filename = file.filename or f"audio_{int(time.time() * 1000)}"
    try:
        transcript = await service.transcribe(
            audio=audio,
            filename=filename,
            content_type=file.content_type or "audio/mpeg",
            language=resolved,
        )
    except TranscriptionJobError as exc:
        logger.error("Transcription error: %s", exc)
        return _error(exc.status_code, str(exc), exc.details)
    except httpx.HTTPError as exc:
        logger.exception("Transcription error")
        status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else 500
        return _error(status, str(exc))

    return schemas.TranscribeResponse(transcript=transcript)
