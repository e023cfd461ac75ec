"""Pydantic models describing REST request and response payloads."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Liveness plus realtime session occupancy."""

    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(default="ok")
    active_sessions: int = Field(..., alias="activeSessions", description="Sessions currently registered")
    max_sessions: int = Field(..., alias="maxSessions", description="Admission cap for realtime sessions")


class TranscribeResponse(BaseModel):
    """Finished batch transcript, passed through from Speechmatics untouched."""

    transcript: Any


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
