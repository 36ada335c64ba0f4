"""Per-item generation pipeline for a batch of source photos.

This module provides :class:`GenerationOrchestrator`, which turns a list of
source URLs and an instruction into enhanced images.  Items are processed
strictly one at a time because the upstream service is rate-limited and
billed per call.

Per-item Flow
-------------
1. **Re-validate** the URL (the batch was validated on acceptance; this
   second check runs right before the network call).
2. **Fetch** the source with a streamed GET.  Redirects are not followed.
   The response must declare an ``image/*`` content type and stay under
   ``max_source_bytes``, both by its ``Content-Length`` header and by the
   bytes actually received.
3. **Upload** the bytes through the two-phase Files API protocol.
4. **Generate** by walking an ordered list of :class:`Strategy` objects
   (model + input mode).  Every strategy runs inside :func:`retry_transient`
   (bounded attempts, exponential backoff on 429 / 5xx).  The first strategy
   that succeeds wins; when all fail, the last upstream message is raised.
5. **Extract** every inline image part of the response.  One input may
   yield several outputs; they are numbered ``enhanced-{i}-{j}``.

Any unrecoverable item failure aborts the whole batch.  A caller may pass an
``asyncio.Event`` to cancel the job; it is only checked between items so an
in-flight transfer is never interrupted.

See Also
--------
- :mod:`photoforge.core.gemini_client` — the upstream HTTP calls.
- :mod:`photoforge.core.coordinator` — the job lifecycle around this module.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import functools
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

import httpx

from .config import PhotoforgeConfig
from .errors import (
    FileTooLarge,
    GenerationCancelled,
    GenerationFailed,
    UnsupportedContentType,
    ValidationError,
)
from .gemini_client import GeminiClient, GenerationServiceError, UploadedFile
from .validation import check_reference

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_MIB = 1024 * 1024


@dataclass(frozen=True)
class GeneratedOutput:
    """One enhanced image produced for one source reference."""

    name: str
    data: bytes
    mime_type: str = "image/png"


@dataclass(frozen=True)
class Strategy:
    """A (model, input mode) combination tried for one item.

    Attributes:
        model: Model name passed to ``generateContent``
        use_file: Reference the uploaded file instead of sending inline bytes
    """

    model: str
    use_file: bool

    def __str__(self) -> str:
        return f"{self.model} ({'file' if self.use_file else 'inline'})"


def default_strategies(primary_model: str, fallback_model: str) -> list[Strategy]:
    """Return the fallback order: inline before file, primary before fallback."""
    return [
        Strategy(primary_model, use_file=False),
        Strategy(primary_model, use_file=True),
        Strategy(fallback_model, use_file=False),
        Strategy(fallback_model, use_file=True),
    ]


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.3,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Await ``call`` until it succeeds or a non-transient error occurs.

    Transient :class:`GenerationServiceError` failures (429, 5xx, transport
    errors) are retried with delays of ``base_delay * 2**attempt``.  No
    delay follows the final attempt.

    Args:
        call: Zero-argument coroutine factory
        attempts: Total attempts, including the first
        base_delay: First backoff delay in seconds
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Whatever ``call`` returns

    Raises:
        GenerationServiceError: The last error once attempts are exhausted,
            or immediately for a non-transient error
    """
    for attempt in range(attempts):
        try:
            return await call()
        except GenerationServiceError as e:
            if not e.transient or attempt == attempts - 1:
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                "Transient upstream error (attempt %d/%d), retrying in %.2fs: %s",
                attempt + 1,
                attempts,
                delay,
                e,
            )
            await sleep(delay)
    raise ValueError("attempts must be at least 1")


def normalize_image_mime(content_type: str) -> str:
    """Map a response content type onto a media type the service accepts."""
    content_type = content_type.lower()
    for family in ("png", "webp", "heic", "heif"):
        if f"image/{family}" in content_type:
            return f"image/{family}"
    return "image/jpeg"


def extension_for_mime(mime_type: str) -> str:
    if "png" in mime_type:
        return "png"
    if "webp" in mime_type:
        return "webp"
    return "jpg"


def _first_candidate_parts(response: object) -> list:
    """Return the parts of the first candidate, or nothing if the shape is off."""
    if not isinstance(response, dict):
        return []
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return []
    candidate = candidates[0]
    content = candidate.get("content") if isinstance(candidate, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    return parts if isinstance(parts, list) else []


def extract_images(response: dict, index: int) -> list[GeneratedOutput]:
    """Decode every inline image part of a ``generateContent`` response.

    Args:
        response: Decoded JSON response
        index: Zero-based position of the source item (used in names)

    Returns:
        One output per image part, in response order

    Raises:
        GenerationFailed: If the response carries no image data, or the
            image data is not valid base64
    """
    parts = [part for part in _first_candidate_parts(response) if isinstance(part, dict)]

    image_parts = []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            image_parts.append(inline)

    if not image_parts:
        notes = "\n".join(str(part["text"]) for part in parts if part.get("text"))
        message = f"Gemini returned no image data for input {index + 1}."
        if notes:
            message += f" Notes: {notes}"
        raise GenerationFailed(message)

    outputs = []
    for j, inline in enumerate(image_parts):
        mime_type = str(inline.get("mimeType") or inline.get("mime_type") or "image/png")
        try:
            data = base64.b64decode(inline["data"], validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise GenerationFailed(f"Gemini returned corrupt image data for input {index + 1}") from e

        suffix = f"-{j + 1}" if len(image_parts) > 1 else ""
        name = f"enhanced-{index + 1}{suffix}.{extension_for_mime(mime_type)}"
        outputs.append(GeneratedOutput(name=name, data=data, mime_type=mime_type))
    return outputs


class GenerationOrchestrator:
    """Fetch, upload and enhance every source image of a job.

    Attributes:
        _client (GeminiClient): Upstream generation service
        _http (httpx.AsyncClient): Client used to fetch source images
        _strategies (list[Strategy]): Ordered fallback strategies
    """

    def __init__(
        self,
        client: GeminiClient,
        http: httpx.AsyncClient,
        config: PhotoforgeConfig,
        *,
        strategies: Sequence[Strategy] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._http = http
        self._config = config
        self._strategies = list(
            strategies or default_strategies(config.primary_model, config.fallback_model)
        )
        self._sleep = sleep

    async def generate(
        self,
        references: Sequence[str],
        instruction: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[GeneratedOutput]:
        """Enhance every reference, in order.

        Args:
            references: Source image URLs
            instruction: User instruction merged into the prompt template
            cancel_event: When set, no further item is started

        Returns:
            All generated outputs, grouped by source item

        Raises:
            ValidationError: If a source is unsafe, not an image, or too large
            GenerationCancelled: If ``cancel_event`` was set between items
            GenerationFailed: If an item fails after every strategy
        """
        prompt = self._config.instruction_template.replace("{instruction}", instruction)
        results: list[GeneratedOutput] = []

        for index, reference in enumerate(references):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled(f"Job cancelled before item {index + 1}")

            logger.info("Processing item %d/%d", index + 1, len(references))
            outputs = await self._generate_item(index, reference, prompt)
            results.extend(outputs)

        return results

    async def _generate_item(self, index: int, reference: str, prompt: str) -> list[GeneratedOutput]:
        try:
            check_reference(reference)
        except ValidationError as e:
            raise type(e)(f"Blocked source URL [{index + 1}]: {e}") from e

        data, content_type = await self._fetch_source(index, reference)
        mime_type = normalize_image_mime(content_type)

        try:
            uploaded = await self._client.upload_file(data, mime_type, f"upload-{index + 1}")
        except GenerationServiceError as e:
            raise GenerationFailed(str(e)) from e

        inline_b64 = base64.b64encode(data).decode("ascii")
        response = await self._run_strategies(index, prompt, uploaded, inline_b64)
        outputs = extract_images(response, index)
        logger.info("Item %d produced %d image(s)", index + 1, len(outputs))
        return outputs

    async def _fetch_source(self, index: int, url: str) -> tuple[bytes, str]:
        """Download one source image with type and size enforcement."""
        limit = self._config.max_source_bytes
        label = index + 1

        try:
            async with self._http.stream("GET", url, follow_redirects=False) as response:
                if not response.is_success:
                    raise GenerationFailed(
                        f"Failed to fetch uploaded image [{label}]: "
                        f"{response.status_code} {response.reason_phrase}"
                    )

                content_type = response.headers.get("content-type", "").lower()
                if not content_type.startswith("image/"):
                    raise UnsupportedContentType(
                        f"Uploaded file is not an image [{label}]: content-type={content_type}"
                    )

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > limit:
                    raise FileTooLarge(
                        f"Uploaded file too large [{label}]: {int(declared) / _MIB:.1f} MB"
                    )

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer += chunk
                    if len(buffer) > limit:
                        raise FileTooLarge(
                            f"Uploaded file too large after download [{label}]: "
                            f"more than {limit / _MIB:.1f} MB"
                        )
        except httpx.HTTPError as e:
            raise GenerationFailed(f"Failed to fetch uploaded image [{label}]: {e}") from e

        return bytes(buffer), content_type

    def _parts_for(
        self, strategy: Strategy, prompt: str, uploaded: UploadedFile, inline_b64: str
    ) -> list[dict]:
        if strategy.use_file:
            media = {"fileData": {"mimeType": uploaded.mime_type, "fileUri": uploaded.uri}}
        else:
            media = {"inlineData": {"mimeType": uploaded.mime_type, "data": inline_b64}}
        return [{"text": prompt}, media]

    async def _run_strategies(
        self, index: int, prompt: str, uploaded: UploadedFile, inline_b64: str
    ) -> dict:
        last_error: GenerationServiceError | None = None

        for strategy in self._strategies:
            call = functools.partial(
                self._client.generate_content,
                strategy.model,
                self._parts_for(strategy, prompt, uploaded, inline_b64),
            )
            try:
                return await retry_transient(
                    call,
                    attempts=self._config.max_attempts,
                    base_delay=self._config.retry_base_delay,
                    sleep=self._sleep,
                )
            except GenerationServiceError as e:
                last_error = e
                logger.warning("Strategy %s failed for item %d: %s", strategy, index + 1, e)

        raise GenerationFailed(str(last_error) if last_error else "Gemini generation failed")
