"""
Client for the external audio separation engine.

The engine runs jobs asynchronously: a file is submitted, the returned task
id is polled until the task completes, then every output file is downloaded
individually.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from stemflow.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


class EngineError(Exception):
    """Base class for separation engine failures."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class EngineUnavailable(EngineError):
    """Submission did not reach the engine or was rejected by it."""


class PollTransient(EngineError):
    """A single status poll failed; the task may still be running."""


class TaskUnknown(EngineError):
    """The engine has no record of the task id."""


class FetchFailed(EngineError):
    """One output file could not be downloaded."""


@dataclass
class SubmitResult:
    """Engine response to a job submission."""

    engine_task_id: str
    status: str
    message: str = ""


@dataclass
class PollResult:
    """Engine response to a status poll."""

    status: str
    message: str = ""
    progress: float = 0.0
    output_files: list[str] = field(default_factory=list)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


def _body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    text = response.text or response.reason_phrase
    return text[:limit]


class EngineClient:
    """
    Stateless HTTP adapter for the separation engine.

    Every call opens its own client with the timeout that fits the call:
    uploads are slow, polls should fail fast, and stem downloads can be large.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        submit_timeout: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        fetch_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.engine_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.engine_api_key
        self.submit_timeout = submit_timeout or settings.engine_submit_timeout
        self.poll_timeout = poll_timeout or settings.engine_poll_timeout
        self.fetch_timeout = fetch_timeout or settings.engine_fetch_timeout
        self._transport = transport

        self._headers = {}
        if self.api_key:
            self._headers["X-API-Key"] = self.api_key

    def _get_client(self, timeout: float) -> httpx.AsyncClient:
        """Get an async HTTP client with configured defaults."""
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=timeout,
            transport=self._transport,
        )

    async def submit(
        self,
        file_bytes: bytes,
        filename: str,
        mime_type: str,
        model: str,
        stems: str,
        sound_source: Optional[str] = None,
    ) -> SubmitResult:
        """
        Submit a separation job using the engine's queue mode.

        Raises:
            EngineUnavailable: the engine could not be reached or answered
                with a non-2xx status. No task can be assumed to exist.
        """
        if not file_bytes:
            raise ValueError("file_bytes must not be empty")

        params = {
            "use_queue": "true",
            "model": model,
            "stems": stems,
            "mp3": "false",
        }
        if sound_source:
            params["sound_source"] = sound_source

        try:
            async with self._get_client(self.submit_timeout) as client:
                response = await client.post(
                    "/separate",
                    params=params,
                    files={"file": (filename, file_bytes, mime_type)},
                )
        except httpx.HTTPError as e:
            raise EngineUnavailable(f"Failed to submit task: {e}", detail=str(e)) from e

        if not response.is_success:
            detail = _body_excerpt(response)
            raise EngineUnavailable(
                f"Failed to submit task: HTTP {response.status_code} {detail}",
                detail=detail,
            )

        try:
            data = response.json()
            return SubmitResult(
                engine_task_id=str(data["task_id"]),
                status=data.get("status") or "submitted",
                message=data.get("message") or "",
            )
        except (ValueError, KeyError) as e:
            detail = _body_excerpt(response)
            raise EngineUnavailable(
                f"Failed to submit task: malformed response {detail}", detail=detail
            ) from e

    async def poll(self, engine_task_id: str) -> PollResult:
        """
        Get the current status of a task.

        Raises:
            TaskUnknown: the engine answered 404.
            PollTransient: any other failure; the caller may poll again.
        """
        try:
            async with self._get_client(self.poll_timeout) as client:
                response = await client.get(f"/task/{engine_task_id}")
        except httpx.HTTPError as e:
            raise PollTransient(f"Failed to poll task {engine_task_id}: {e}", detail=str(e)) from e

        if response.status_code == 404:
            raise TaskUnknown(
                f"Engine has no task {engine_task_id}", detail=_body_excerpt(response)
            )
        if not response.is_success:
            detail = _body_excerpt(response)
            raise PollTransient(
                f"Failed to poll task {engine_task_id}: HTTP {response.status_code}",
                detail=detail,
            )

        try:
            data = response.json()
            return PollResult(
                status=data["status"],
                message=data.get("message") or "",
                progress=float(data.get("progress") or 0.0),
                output_files=list(data.get("output_files") or []),
                created_at=data.get("created_at"),
                completed_at=data.get("completed_at"),
                error=data.get("error"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise PollTransient(
                f"Malformed poll response for task {engine_task_id}",
                detail=_body_excerpt(response),
            ) from e

    async def fetch_output(self, engine_task_id: str, filename: str) -> bytes:
        """
        Download one output file of a completed task.

        Raises:
            FetchFailed: transport error or non-2xx status.
        """
        try:
            async with self._get_client(self.fetch_timeout) as client:
                response = await client.get(f"/download/{engine_task_id}/{filename}")
        except httpx.HTTPError as e:
            raise FetchFailed(f"Failed to download {filename}: {e}", detail=str(e)) from e

        if not response.is_success:
            raise FetchFailed(
                f"Failed to download {filename}: HTTP {response.status_code}",
                detail=_body_excerpt(response),
            )
        return response.content

    async def health(self) -> bool:
        """Check if the engine answers its health endpoint."""
        try:
            async with self._get_client(self.poll_timeout) as client:
                response = await client.get("/health")
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Engine health check failed: {e}")
            return False


# Global client instance
engine_client = EngineClient()


def get_engine_client() -> EngineClient:
    """FastAPI dependency returning the engine client."""
    return engine_client
