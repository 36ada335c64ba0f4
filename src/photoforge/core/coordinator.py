"""Job lifecycle for photo-enhancement requests.

:class:`JobCoordinator` is the top-level sequencing component.  It owns the
job state machine::

    pending ──► processing ──► completed
                     │
                     └───────► failed

Sequence
--------
1. Validate references, instruction and label (no side effects).
2. Preview the credit split; reject with ``InsufficientCredits`` before any
   paid work.
3. Create the job (``pending``) and move it to ``processing``.
4. Run the orchestrator over every item.
5. Build the archive and store it (plus a few preview images).
6. Complete the job *and* debit the ledger in one atomic store call.

Any failure after step 3 marks the job ``failed``, discards whatever the job
already stored and leaves the ledger untouched.  Generation failures keep their upstream message; storage and
database failures are logged in full and re-raised with a generic message.

The store is synchronous SQLite, so every store call runs through
``asyncio.to_thread`` to keep the event loop free for other jobs.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal

from .archive import build_archive
from .config import PhotoforgeConfig
from .errors import (
    GenerationFailed,
    InsufficientCredits,
    PersistenceError,
    PhotoforgeError,
    ValidationError,
)
from .job_store import JobRecord, JobStatus, JobStore
from .ledger import CreditLedger, CreditPreview
from .orchestrator import GeneratedOutput, GenerationOrchestrator
from .storage import ObjectStore
from .validation import validate_group_name, validate_prompt, validate_references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessRequest:
    """A batch submitted by a caller.

    Attributes:
        user_id: Opaque id from the identity collaborator, or None
        file_urls: Source image URLs
        prompt: Enhancement instruction
        group_name: Optional label shown on the dashboard
    """

    user_id: str | None
    file_urls: Sequence[str]
    prompt: str
    group_name: str | None = None


@dataclass(frozen=True)
class ItemCost:
    index: int
    price: Decimal
    covered_by: str  # "free" or "paid"


@dataclass(frozen=True)
class JobSummary:
    """What the caller gets back for a completed job."""

    job: JobRecord
    unit_price: Decimal
    free_applied: int
    paid_applied: int
    download_url: str
    preview_urls: list[str] = field(default_factory=list)
    output_count: int = 0

    @property
    def item_costs(self) -> list[ItemCost]:
        return [
            ItemCost(
                index=i + 1,
                price=self.unit_price,
                covered_by="free" if i < self.free_applied else "paid",
            )
            for i in range(self.job.photo_count)
        ]

    def to_dict(self) -> dict:
        return {
            "success": True,
            "job": {
                "id": self.job.id,
                "prompt": self.job.prompt,
                "photoCount": self.job.photo_count,
                "cost": float(self.job.cost),
                "status": self.job.status.value,
                "groupName": self.job.group_name,
                "createdAt": self.job.created_at,
            },
            "downloadUrl": self.download_url,
            "previewUrls": self.preview_urls,
            "outputCount": self.output_count,
            "itemCosts": [
                {"index": c.index, "price": float(c.price), "coveredBy": c.covered_by}
                for c in self.item_costs
            ],
            "applied": {"free": self.free_applied, "paid": self.paid_applied},
            "message": "Photos processed successfully.",
        }


class JobCoordinator:
    """Drive one request from acceptance to a terminal job state."""

    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        orchestrator: GenerationOrchestrator,
        object_store: ObjectStore,
        config: PhotoforgeConfig,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._objects = object_store
        self._config = config

    async def process(
        self, request: ProcessRequest, *, cancel_event: asyncio.Event | None = None
    ) -> JobSummary:
        """Run a request through the whole pipeline.

        Raises:
            ValidationError: Bad input (before or during fetching)
            InsufficientCredits: Preview or settlement found too few credits
            GenerationFailed: An item failed after every retry and fallback
            PersistenceError: Archive storage or the database write failed
        """
        validate_references(request.file_urls, self._config.max_references)
        prompt = validate_prompt(request.prompt)
        group_name = validate_group_name(request.group_name)

        if request.user_id is None and not self._config.allow_anonymous:
            raise ValidationError("Please sign in to use the free trial and process photos.")

        count = len(request.file_urls)
        unit_price = self._config.price_per_item
        cost = unit_price * count

        if request.user_id is not None:
            split = await asyncio.to_thread(self._ledger.preview, request.user_id, count)
        else:
            split = CreditPreview(free_applied=0, paid_applied=0)

        job = await asyncio.to_thread(
            self._store.create_job, request.user_id, prompt, count, cost, group_name
        )

        stored: list[str] = []
        try:
            job = await asyncio.to_thread(
                self._store.update_job_status, job.id, JobStatus.PROCESSING
            )
            outputs = await self._orchestrator.generate(
                request.file_urls, prompt, cancel_event=cancel_event
            )
            if not outputs:
                raise GenerationFailed("No images returned from Gemini")

            archive = await asyncio.to_thread(build_archive, outputs)
            download_url = await asyncio.to_thread(self._objects.put, archive, suffix=".zip")
            stored.append(download_url)
            preview_urls = await self._store_previews(outputs)
            stored.extend(preview_urls)

            if request.user_id is not None:
                await asyncio.to_thread(
                    self._ledger.commit,
                    request.user_id,
                    split,
                    job_id=job.id,
                    download_url=download_url,
                )
            else:
                await asyncio.to_thread(
                    self._store.update_job_status, job.id, JobStatus.COMPLETED, download_url
                )
            # Settled: the objects now belong to a completed job.
            stored.clear()
            job = await asyncio.to_thread(self._store.get_job, job.id)

        except (ValidationError, InsufficientCredits, GenerationFailed) as e:
            logger.warning("Job %s failed: %s", job.id, e)
            await self._fail(job.id, stored)
            raise
        except PersistenceError as e:
            logger.exception("Job %s failed to persist results", job.id)
            await self._fail(job.id, stored)
            raise PersistenceError("Failed to save job results") from e
        except Exception:
            logger.exception("Job %s failed unexpectedly", job.id)
            await self._fail(job.id, stored)
            raise

        logger.info(
            "photo_processing_completed user=%s job=%s photos=%d outputs=%d cost=%s "
            "free=%d paid=%d",
            request.user_id,
            job.id,
            count,
            len(outputs),
            cost,
            split.free_applied,
            split.paid_applied,
        )
        return JobSummary(
            job=job,
            unit_price=unit_price,
            free_applied=split.free_applied,
            paid_applied=split.paid_applied,
            download_url=download_url,
            preview_urls=preview_urls,
            output_count=len(outputs),
        )

    async def _store_previews(self, outputs: list[GeneratedOutput]) -> list[str]:
        """Store the first few outputs individually; failures are not fatal."""
        urls = []
        for output in outputs[: self._config.preview_count]:
            suffix = "." + output.name.rsplit(".", 1)[-1]
            try:
                urls.append(await asyncio.to_thread(self._objects.put, output.data, suffix=suffix))
            except PersistenceError as e:
                logger.warning("Preview upload failed for %s: %s", output.name, e)
        return urls

    async def _fail(self, job_id: int, stored: list[str]) -> None:
        """Discard stored objects and mark the job failed."""
        for url in stored:
            try:
                await asyncio.to_thread(self._objects.delete, url)
            except PersistenceError as e:
                logger.warning("Could not discard %s for failed job %s: %s", url, job_id, e)

        try:
            await asyncio.to_thread(self._store.update_job_status, job_id, JobStatus.FAILED)
        except PhotoforgeError:
            logger.exception("job_status_update_failed job=%s", job_id)
