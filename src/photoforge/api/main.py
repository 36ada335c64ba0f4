"""Photoforge — FastAPI Application.

This module defines the FastAPI application, all REST API routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Pipeline objects** (store, ledger, orchestrator, coordinator) are built
  once in the lifespan handler and kept on ``app.state``.
- **Identity** comes from the upstream auth layer as an opaque
  ``X-User-Id`` header; this service never authenticates users itself.
- **Archives** are written by :class:`~photoforge.core.storage.LocalObjectStore`
  and served by ``StaticFiles`` under ``config.public_base_url``.
- **Errors** from the pipeline are mapped to JSON responses by exception
  handlers, so route handlers stay linear.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/health``                   Liveness check
POST      ``/api/process-photos``       Enhance a batch and return a ZIP URL
GET       ``/api/billing/me``           Current user's credit balance
GET       ``/api/dashboard``            Recent jobs and spending stats
PATCH     ``/api/jobs/{id}``            Rename a job
DELETE    ``/api/jobs/{id}``            Delete a job
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    photoforge

Direct invocation::

    python -m photoforge.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from photoforge import __version__
from photoforge.api.models import GroupNameRequest, ProcessPhotosRequest
from photoforge.core.config import PhotoforgeConfig, config
from photoforge.core.coordinator import JobCoordinator, ProcessRequest
from photoforge.core.errors import (
    GenerationFailed,
    InsufficientCredits,
    JobAccessDenied,
    JobNotFound,
    PersistenceError,
    ValidationError,
)
from photoforge.core.gemini_client import GeminiClient
from photoforge.core.job_store import JobStore
from photoforge.core.ledger import CreditLedger
from photoforge.core.orchestrator import GenerationOrchestrator
from photoforge.core.storage import LocalObjectStore
from photoforge.core.validation import validate_group_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity collaborator.
# ---------------------------------------------------------------------------


async def current_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Return the authenticated user id forwarded by the auth layer, if any."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def _require_user(user_id: str | None) -> str:
    if user_id is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id


# ---------------------------------------------------------------------------
# Exception handlers — pipeline errors to JSON responses.
# ---------------------------------------------------------------------------


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": str(exc)})


async def _insufficient_credits(request: Request, exc: InsufficientCredits) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "error": "Not enough credits",
            "details": str(exc),
            "needed": exc.needed,
            "credits": float(exc.balance),
            "shortfall": float(exc.shortfall),
        },
    )


async def _generation_failed(request: Request, exc: GenerationFailed) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={"error": "Failed to process images with Google Gemini", "details": str(exc)},
    )


async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    # Detail has already been logged where the error was raised.
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "Job not found"})


async def _job_access_denied(request: Request, exc: JobAccessDenied) -> JSONResponse:
    return JSONResponse(status_code=403, content={"error": "Forbidden"})


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    app_config: PhotoforgeConfig | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_config: Configuration to use (defaults to the global ``config``).
        http_client: Shared HTTP client for source fetches and Gemini calls.
            When omitted one is created in the lifespan and closed on
            shutdown.  Tests pass a client backed by ``httpx.MockTransport``.

    Returns:
        The configured application.
    """
    cfg = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the pipeline on startup and release the HTTP client on shutdown."""
        # --- Startup -------------------------------------------------------
        owns_client = http_client is None
        http = http_client or httpx.AsyncClient(timeout=cfg.request_timeout)

        store = JobStore(cfg.database_path)
        ledger = CreditLedger(store, cfg.free_allowance)
        gemini = GeminiClient(
            cfg.google_api_key,
            http,
            base_url=cfg.gemini_base_url,
            upload_url=cfg.gemini_upload_url,
        )
        orchestrator = GenerationOrchestrator(gemini, http, cfg)
        objects = LocalObjectStore(cfg.archives_dir, cfg.public_base_url)

        app.state.config = cfg
        app.state.store = store
        app.state.ledger = ledger
        app.state.coordinator = JobCoordinator(store, ledger, orchestrator, objects, cfg)
        logger.info("Photoforge pipeline initialised (db=%s).", cfg.database_path)

        yield

        # --- Shutdown ------------------------------------------------------
        if owns_client:
            await http.aclose()
        logger.info("Photoforge pipeline shut down.")

    app = FastAPI(
        title="Photoforge",
        description="Batch photo enhancement with free-trial and paid credits.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(InsufficientCredits, _insufficient_credits)
    app.add_exception_handler(GenerationFailed, _generation_failed)
    app.add_exception_handler(PersistenceError, _persistence_error)
    app.add_exception_handler(JobNotFound, _job_not_found)
    app.add_exception_handler(JobAccessDenied, _job_access_denied)

    # Serve stored archives when the public URL is a local path.
    if cfg.public_base_url.startswith("/"):
        app.mount(
            cfg.public_base_url.rstrip("/"),
            StaticFiles(directory=str(cfg.archives_dir)),
            name="files",
        )

    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "version": __version__}

    @app.post("/api/process-photos")
    async def process_photos(
        req: ProcessPhotosRequest,
        request: Request,
        user_id: str | None = Depends(current_user_id),
    ) -> dict:
        """Enhance a batch of photos and return the archive location.

        Returns:
            Job summary with ``downloadUrl``, ``previewUrls``, the per-item
            cost breakdown and the realised ``applied`` free/paid split.

        Raises:
            HTTPException: 401 when no user is signed in (and anonymous jobs
                are disabled); 503 when no API key is configured.
        """
        cfg: PhotoforgeConfig = request.app.state.config

        if user_id is None and not cfg.allow_anonymous:
            raise HTTPException(
                status_code=401,
                detail="Please sign in to use the free trial and process photos.",
            )
        if not cfg.google_api_key:
            raise HTTPException(status_code=503, detail="Generation service is not configured")

        coordinator: JobCoordinator = request.app.state.coordinator
        summary = await coordinator.process(
            ProcessRequest(
                user_id=user_id,
                file_urls=req.file_urls,
                prompt=req.prompt,
                group_name=req.group_name,
            )
        )
        return summary.to_dict()

    @app.get("/api/billing/me")
    def billing_me(request: Request, user_id: str | None = Depends(current_user_id)) -> dict:
        """Return the signed-in user's free-trial usage and paid credits."""
        cfg: PhotoforgeConfig = request.app.state.config
        if user_id is None:
            return {
                "authenticated": False,
                "freeUsed": 0,
                "freeAllowance": cfg.free_allowance,
                "credits": 0,
            }

        balance = request.app.state.ledger.balance(user_id)
        return {
            "authenticated": True,
            "freeUsed": balance.free_used,
            "freeAllowance": cfg.free_allowance,
            "credits": float(balance.credits),
        }

    @app.get("/api/dashboard")
    def dashboard(request: Request, user_id: str | None = Depends(current_user_id)) -> dict:
        """Return the user's 50 most recent jobs and aggregate statistics."""
        user_id = _require_user(user_id)
        store: JobStore = request.app.state.store
        return {
            "jobs": [job.to_dict() for job in store.list_jobs(user_id)],
            "stats": store.job_stats(user_id),
        }

    @app.patch("/api/jobs/{job_id}")
    def rename_job(
        job_id: int,
        req: GroupNameRequest,
        request: Request,
        user_id: str | None = Depends(current_user_id),
    ) -> dict:
        """Set or clear a job's label.  Only the owner may rename a job."""
        user_id = _require_user(user_id)
        group_name = validate_group_name(req.group_name)
        job = request.app.state.store.set_group_name(job_id, user_id, group_name)
        return {"success": True, "job": job.to_dict()}

    @app.delete("/api/jobs/{job_id}")
    def delete_job(
        job_id: int,
        request: Request,
        user_id: str | None = Depends(current_user_id),
    ) -> dict:
        """Delete a job owned by the current user."""
        user_id = _require_user(user_id)
        request.app.state.store.delete_job(job_id, user_id)
        return {"success": True, "message": "Job deleted successfully"}


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~photoforge.core.config.config`
    (``PHOTOFORGE_SERVER_HOST``, ``PHOTOFORGE_SERVER_PORT``,
    ``PHOTOFORGE_LOG_LEVEL``).

    This function is registered as the ``photoforge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "photoforge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
