"""httpx client for a REST batch-transcription service.

:class:`SpeechServiceClient` implements the three remote collaborators the
scheduler needs on top of one :class:`httpx.AsyncClient`:

* :class:`~transcribeflow.gateway.base.SubmissionGateway`:
  ``POST /transcriptions``
* :class:`~transcribeflow.gateway.base.StatusQuery`:
  ``GET /transcriptions/{id}``
* :class:`~transcribeflow.gateway.base.ResultFetch`:
  ``GET /transcriptions/{id}/files`` and a plain ``GET`` of each file's
  content URL.

Every public method performs exactly **one** HTTP request.  Retries,
backoff, admission control and circuit breaking live in the orchestration
core; this client only maps outcomes onto the exception taxonomy:

* HTTP 429 -> :class:`~transcribeflow.core.exceptions.GatewayRateLimitError`
  with ``Retry-After`` honoured.
* Other non-2xx -> :class:`~transcribeflow.core.exceptions.GatewayError`
  carrying ``status_code`` and the body's ``error.code`` as ``service_code``.
* :class:`httpx.TimeoutException` ->
  :class:`~transcribeflow.core.exceptions.GatewayTimeoutError`.
* Other :class:`httpx.TransportError` ->
  :class:`~transcribeflow.core.exceptions.GatewayConnectionError`.

The subscription key is sent only to the API host; content URLs usually
point at pre-signed blob storage and are fetched without it.

Typical usage::

    async with SpeechServiceClient(endpoint, api_key) as client:
        receipt = await client.submit(request)
        report = await client.query_status(receipt.external_job_id)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Final

import httpx

from transcribeflow.core.exceptions import (
    GatewayConnectionError,
    GatewayError,
    GatewayRateLimitError,
    GatewayTimeoutError,
)
from transcribeflow.core.models import TranscriptionRequest
from transcribeflow.gateway.base import (
    RemoteStatus,
    ResultFetch,
    ResultFile,
    StatusQuery,
    StatusReport,
    SubmissionGateway,
    SubmissionReceipt,
)

__all__ = ["SpeechServiceClient", "SERVICE_NAME"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Service label used in error messages.
SERVICE_NAME: Final[str] = "speech-service"

#: Header carrying the subscription key.
_KEY_HEADER: Final[str] = "Ocp-Apim-Subscription-Key"

#: Statuses whose ``Retry-After`` header is worth reading.
_RETRY_AFTER_STATUS: Final[frozenset[int]] = frozenset({429, 503})

#: Default timeout for establishing a connection (seconds).
_DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0


class SpeechServiceClient(SubmissionGateway, StatusQuery, ResultFetch):
    """Single-request client for the batch transcription REST API.

    Args:
        endpoint: Base URL, e.g. ``https://region.api.example.com/speechtotext/v3.1``.
        api_key: Subscription key.
        timeout: Per-request timeout in seconds.
        transport: Optional transport, used by tests
            (:class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout, connect=min(timeout, _DEFAULT_CONNECT_TIMEOUT))
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> SpeechServiceClient:
        await self._ensure_client()
        return self

    async def close(self) -> None:
        """Close the connection pool.  Safe to call more than once."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("Speech service HTTP session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # SubmissionGateway
    # ------------------------------------------------------------------

    async def submit(self, request: TranscriptionRequest) -> SubmissionReceipt:
        response = await self._send(
            "POST", f"{self._endpoint}/transcriptions", json=_submission_body(request)
        )
        body = _json(response)
        location = body.get("self") or response.headers.get("location")
        if not location:
            raise GatewayError(
                SERVICE_NAME,
                "Submission response carried no job location",
                status_code=response.status_code,
            )
        external_id = location.rstrip("/").rsplit("/", 1)[-1]
        logger.debug("Submitted %s as remote job %s", request.audio_url, external_id)
        return SubmissionReceipt(external_job_id=external_id, location=location)

    # ------------------------------------------------------------------
    # StatusQuery
    # ------------------------------------------------------------------

    async def query_status(self, external_job_id: str) -> StatusReport:
        response = await self._send("GET", f"{self._endpoint}/transcriptions/{external_job_id}")
        body = _json(response)
        try:
            status = RemoteStatus(body.get("status", ""))
        except ValueError as exc:
            raise GatewayError(
                SERVICE_NAME,
                f"Unknown remote status {body.get('status')!r}",
                status_code=response.status_code,
            ) from exc

        error = (body.get("properties") or {}).get("error") or {}
        return StatusReport(
            external_job_id=external_job_id,
            status=status,
            created_at=_parse_datetime(body.get("createdDateTime")),
            error_code=error.get("code"),
            error_message=error.get("message"),
        )

    # ------------------------------------------------------------------
    # ResultFetch
    # ------------------------------------------------------------------

    async def list_result_files(self, external_job_id: str) -> list[ResultFile]:
        response = await self._send(
            "GET", f"{self._endpoint}/transcriptions/{external_job_id}/files"
        )
        files: list[ResultFile] = []
        for item in _json(response).get("values", []):
            files.append(
                ResultFile(
                    name=item.get("name", ""),
                    kind=item.get("kind", ""),
                    size_bytes=(item.get("properties") or {}).get("size"),
                    content_url=(item.get("links") or {}).get("contentUrl"),
                )
            )
        return files

    async def download_file(self, file: ResultFile) -> bytes:
        if not file.content_url:
            raise GatewayError(SERVICE_NAME, f"File {file.name!r} has no content URL")
        response = await self._send("GET", file.content_url, authenticated=False)
        return response.content

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Return the open HTTP client, creating it lazily if needed."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"Accept": "application/json"},
                transport=self._transport,
            )
            logger.debug("Speech service HTTP session opened (%s).", self._endpoint)
        return self._http

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: Any | None = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """Perform exactly one request and map failures.

        Raises:
            GatewayRateLimitError: HTTP 429.
            GatewayTimeoutError: The request timed out client-side.
            GatewayConnectionError: Any other transport failure.
            GatewayError: Any other non-2xx response.
        """
        client = await self._ensure_client()
        headers = {_KEY_HEADER: self._api_key} if authenticated else None
        try:
            response = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(SERVICE_NAME, f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise GatewayConnectionError(SERVICE_NAME, str(exc) or type(exc).__name__) from exc

        logger.debug(
            "HTTP %s %s -> %d (%d bytes)",
            method,
            url,
            response.status_code,
            len(response.content),
        )
        if response.is_success:
            return response
        _raise_for_status(response)
        raise AssertionError("unreachable")  # pragma: no cover


# ---------------------------------------------------------------------------
# Request and response helpers
# ---------------------------------------------------------------------------


def _submission_body(request: TranscriptionRequest) -> dict[str, Any]:
    properties: dict[str, Any] = {
        "diarizationEnabled": request.diarization,
        "wordLevelTimestampsEnabled": request.word_timestamps,
    }
    if request.diarization and request.max_speakers is not None:
        properties["diarization"] = {
            "speakers": {"minCount": 1, "maxCount": request.max_speakers}
        }
    return {
        "contentUrls": [request.audio_url],
        "locale": request.language,
        "displayName": request.display_name or f"Transcription of {request.audio_url}",
        "properties": properties,
    }


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise GatewayError(
            SERVICE_NAME,
            "Response body is not valid JSON",
            status_code=response.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise GatewayError(
            SERVICE_NAME, "Response body is not a JSON object", status_code=response.status_code
        )
    return body


def _parse_datetime(value: object) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None


def _raise_for_status(response: httpx.Response) -> None:
    """Raise the gateway exception matching a non-2xx *response*."""
    status = response.status_code
    retry_after = _parse_retry_after(response) if status in _RETRY_AFTER_STATUS else None
    if status == 429:
        logger.warning("Speech service HTTP 429, retry_after=%s", retry_after)
        raise GatewayRateLimitError(SERVICE_NAME, retry_after)

    code: str | None = None
    message = response.reason_phrase or "Request failed"
    try:
        error = response.json().get("error") or {}
        code = error.get("code")
        message = error.get("message") or message
    except (ValueError, AttributeError):
        text = response.text.strip()
        if text:
            message = text[:200]

    raise GatewayError(
        SERVICE_NAME,
        f"HTTP {status}: {message}",
        status_code=status,
        service_code=code,
        retry_after=retry_after,
    )


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Return the ``Retry-After`` header in seconds, or ``None``."""
    header = response.headers.get("retry-after", "")
    if not header:
        return None
    try:
        return max(float(header), 1.0)
    except ValueError:
        logger.debug("Could not parse Retry-After header %r.", header)
        return None
