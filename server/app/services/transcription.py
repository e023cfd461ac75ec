"""Batch transcription against the Speechmatics job API."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

try:
    from ..config import Settings, settings as default_settings
except ImportError:  # pragma: no cover - script-style execution fallback
    from app.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TranscriptionJobError(RuntimeError):
    """A batch job could not produce a transcript.

    ``status_code`` is the upstream HTTP status when one is known, else 500.
    """

    def __init__(self, message: str, *, status_code: int = 500, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class TranscriptionTimeoutError(TranscriptionJobError):
    """The job never reached ``done`` or ``failed`` within the poll budget."""


def _response_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _error_from_http(prefix: str, exc: httpx.HTTPError) -> TranscriptionJobError:
    if isinstance(exc, httpx.HTTPStatusError):
        return TranscriptionJobError(
            f"{prefix}{exc}",
            status_code=exc.response.status_code,
            details=_response_details(exc.response),
        )
    return TranscriptionJobError(f"{prefix}{exc}")


def _json_object(response: httpx.Response) -> dict[str, Any]:
    """Decode a response body that must be a JSON object; raises ValueError otherwise."""
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class BatchTranscriptionService:
    """Submits an audio file as a job, polls it to completion, returns the transcript."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        poll_attempts: int = 30,
        poll_base_delay: float = 3.0,
        poll_max_delay: float = 30.0,
        create_timeout: float = 120.0,
        poll_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        key = api_key or default_settings.speechmatics_api_key
        if not key:
            raise RuntimeError("SPEECHMATICS_API_KEY missing; batch transcription disabled")
        raw_base = (base_url or default_settings.speechmatics_api_url or "").strip()
        if not raw_base.startswith(("http://", "https://")):
            raise RuntimeError("SPEECHMATICS_API_URL must include http/https scheme")
        self._base_url = raw_base.rstrip("/")
        self._api_key = key
        self._poll_attempts = poll_attempts
        self._poll_base_delay = poll_base_delay
        self._poll_max_delay = poll_max_delay
        self._create_timeout = create_timeout
        self._poll_timeout = poll_timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "BatchTranscriptionService":
        return cls(
            base_url=settings.speechmatics_api_url,
            api_key=settings.speechmatics_api_key,
            poll_attempts=settings.batch_poll_attempts,
            poll_base_delay=settings.batch_poll_base_delay,
            poll_max_delay=settings.batch_poll_max_delay,
            create_timeout=settings.batch_create_timeout,
            poll_timeout=settings.batch_poll_timeout,
            transport=transport,
        )

    def poll_delay(self, attempt: int) -> float:
        """Delay before poll ``attempt`` (0-based): exponential, capped."""
        return min(self._poll_base_delay * (2 ** attempt), self._poll_max_delay)

    async def transcribe(
        self,
        *,
        audio: bytes,
        filename: str,
        content_type: str,
        language: str,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self._api_key}"}
        async with httpx.AsyncClient(headers=headers, transport=self._transport) as client:
            job_id = await self._create_job(
                client, audio=audio, filename=filename, content_type=content_type, language=language
            )
            return await self._wait_for_transcript(client, job_id)

    async def _create_job(
        self,
        client: httpx.AsyncClient,
        *,
        audio: bytes,
        filename: str,
        content_type: str,
        language: str,
    ) -> str:
        config = {
            "type": "transcription",
            "transcription_config": {
                "language": language,
                "operating_point": "enhanced",
                "enable_entities": True,
                "diarization": "speaker",
            },
        }
        files = {
            "config": (None, json.dumps(config), "application/json"),
            "data_file": (filename, audio, content_type),
        }
        logger.info("Creating Speechmatics job (%d bytes, language=%s)", len(audio), language)
        try:
            resp = await client.post(f"{self._base_url}/jobs", files=files, timeout=self._create_timeout)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise _error_from_http("Failed to create job: ", exc) from exc

        try:
            job_id = _json_object(resp).get("id")
        except ValueError as exc:
            raise TranscriptionJobError(
                f"Invalid job response from Speechmatics: {exc}", details=resp.text or None
            ) from exc
        if not job_id:
            raise TranscriptionJobError("Speechmatics did not return a job id", details=_response_details(resp))
        logger.info("Created job %s", job_id)
        return str(job_id)

    async def _wait_for_transcript(self, client: httpx.AsyncClient, job_id: str) -> Any:
        for attempt in range(self._poll_attempts):
            await asyncio.sleep(self.poll_delay(attempt))
            body_text: Optional[str] = None
            try:
                status_resp = await client.get(f"{self._base_url}/jobs/{job_id}", timeout=self._poll_timeout)
                status_resp.raise_for_status()
                body_text = status_resp.text
                payload = _json_object(status_resp)
                job = payload.get("job")
                job_status = job.get("status") if isinstance(job, dict) else None
                logger.info("Job %s status: %s", job_id, job_status)

                if job_status == "done":
                    transcript_resp = await client.get(
                        f"{self._base_url}/jobs/{job_id}/transcript",
                        params={"format": "json-v2"},
                        timeout=self._poll_timeout,
                    )
                    transcript_resp.raise_for_status()
                    body_text = transcript_resp.text
                    return transcript_resp.json()
                if job_status == "failed":
                    detail = payload.get("detail") or job.get("errors") or "Transcription failed"
                    logger.error("Job %s failed: %s", job_id, detail)
                    raise TranscriptionJobError(str(detail), details=payload)
            except httpx.HTTPError as exc:
                logger.warning("Polling attempt %d for job %s failed: %s", attempt + 1, job_id, exc)
                if attempt == self._poll_attempts - 1:
                    raise _error_from_http("Failed to get job status: ", exc) from exc
            except ValueError as exc:
                logger.warning("Polling attempt %d for job %s returned an invalid body: %s", attempt + 1, job_id, exc)
                if attempt == self._poll_attempts - 1:
                    raise TranscriptionJobError(
                        f"Failed to get job status: invalid response ({exc})", details=body_text or None
                    ) from exc

        raise TranscriptionTimeoutError(f"Failed to get transcript for job {job_id} (timed out)")
