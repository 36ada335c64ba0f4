"""Thin async client for the Google Generative Language API.

Only the two endpoints the pipeline needs are wrapped:

- the Files API resumable upload (two phases: ``start`` returns an upload
  URL in the ``x-goog-upload-url`` header, ``upload, finalize`` sends the
  bytes and returns the file resource),
- ``models/{model}:generateContent``.

The client never retries.  Non-2xx responses raise
:class:`GenerationServiceError` with the status code and response body so
the orchestrator can decide whether the failure is transient.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429})


class GenerationServiceError(Exception):
    """The generation service answered with a non-success status.

    Attributes:
        status_code: HTTP status, or 0 when no response was received
        message: Response body or transport error text
    """

    def __init__(self, status_code: int, message: str, *, operation: str = "Gemini API"):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{operation} error [{status_code}]: {message}")

    @property
    def transient(self) -> bool:
        """Rate limiting, server errors and transport failures are retryable."""
        return (
            self.status_code == 0
            or self.status_code in TRANSIENT_STATUS_CODES
            or self.status_code >= 500
        )


@dataclass(frozen=True)
class UploadedFile:
    """A file registered with the Files API."""

    uri: str
    mime_type: str


def _safe_text(response: httpx.Response) -> str:
    try:
        return response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""


def _json(response: httpx.Response, operation: str) -> dict:
    try:
        body = response.json()
    except ValueError as e:
        raise GenerationServiceError(
            response.status_code, f"Invalid JSON response: {e}", operation=operation
        ) from e

    if not isinstance(body, dict):
        raise GenerationServiceError(
            response.status_code,
            f"Invalid JSON response: expected an object, got {type(body).__name__}",
            operation=operation,
        )
    return body


class GeminiClient:
    """Async wrapper around the Files and generateContent endpoints.

    Args:
        api_key: Sent as ``x-goog-api-key`` on every request
        http: Shared ``httpx.AsyncClient`` (owned by the caller)
        base_url: Base URL of the ``models`` endpoints
        upload_url: Resumable upload endpoint
    """

    def __init__(
        self,
        api_key: str,
        http: httpx.AsyncClient,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        upload_url: str = "https://generativelanguage.googleapis.com/upload/v1beta/files",
    ) -> None:
        self._api_key = api_key
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._upload_url = upload_url

    async def _post(self, operation: str, url: str, **kwargs) -> httpx.Response:
        headers = {"x-goog-api-key": self._api_key, **kwargs.pop("headers", {})}
        try:
            response = await self._http.post(url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise GenerationServiceError(0, str(e) or type(e).__name__, operation=operation) from e

        if response.is_error:
            raise GenerationServiceError(
                response.status_code, _safe_text(response), operation=operation
            )
        return response

    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> UploadedFile:
        """Register bytes with the Files API using the resumable protocol.

        Args:
            data: Raw file content
            mime_type: Media type declared for the upload
            display_name: Human-readable name stored with the file

        Returns:
            The remote file URI and its media type

        Raises:
            GenerationServiceError: If either phase fails or the response
                is missing the upload URL or file URI
        """
        start = await self._post(
            "Gemini Files start",
            self._upload_url,
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(data)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
                "Content-Type": "application/json",
            },
            json={"file": {"display_name": display_name}},
        )

        session_url = start.headers.get("x-goog-upload-url")
        if not session_url:
            raise GenerationServiceError(
                start.status_code,
                "Gemini Files API did not return an upload URL",
                operation="Gemini Files start",
            )

        finalize = await self._post(
            "Gemini Files upload",
            session_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=data,
        )

        file_info = _json(finalize, "Gemini Files upload").get("file")
        if not isinstance(file_info, dict):
            file_info = {}
        uri = file_info.get("uri") or file_info.get("name")
        if not uri:
            raise GenerationServiceError(
                finalize.status_code,
                "Gemini Files API response missing file uri/name",
                operation="Gemini Files upload",
            )

        logger.debug("Uploaded %s (%d bytes) as %s", display_name, len(data), uri)
        return UploadedFile(uri=uri, mime_type=file_info.get("mimeType") or mime_type)

    async def generate_content(self, model: str, parts: list[dict]) -> dict:
        """Request image output for a single-turn prompt.

        Args:
            model: Model name, e.g. ``"gemini-2.5-flash-image-preview"``
            parts: Content parts (text plus inline data or file data)

        Returns:
            The decoded JSON response

        Raises:
            GenerationServiceError: On any non-2xx response
        """
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        response = await self._post(
            "Gemini API",
            f"{self._base_url}/models/{model}:generateContent",
            headers={"Content-Type": "application/json"},
            json=body,
        )
        return _json(response, "Gemini API")
