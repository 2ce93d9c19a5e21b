"""StoryFlow Engine — FastAPI Application.

This module defines the FastAPI ``app`` instance, the REST routes and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Configuration** comes from :data:`storyflow.core.config.config`
  (``STORYFLOW_*`` environment variables).
- **The generation provider** is created once at startup from the
  ``provider_transport`` setting and shared through ``app.state``.
- **Workflow runs** create a fresh :class:`WorkflowEngine` per request.  One
  run at a time; ``POST /api/workflows/cancel`` interrupts it.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/health``               Version and provider reachability
GET       ``/api/instructions``         Instruction catalog with support levels
POST      ``/api/workflows/validate``   Validation report for a workflow
POST      ``/api/workflows/analyze``    Support counts for a workflow
POST      ``/api/workflows/run``        Execute a workflow
POST      ``/api/workflows/cancel``     Cancel the running workflow
GET       ``/api/provider/models``      Provider model catalog
GET       ``/api/provider/loras``       Provider LoRA catalog
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    storyflow

Direct invocation::

    python -m storyflow.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from storyflow import __version__
from storyflow.api.models import RunRequest, WorkflowRequest
from storyflow.core.config import config
from storyflow.core.engine import WorkflowEngine, WorkingDirectoryError
from storyflow.core.instructions import INSTRUCTION_TYPES, Instruction
from storyflow.core.support import analyze, support_info
from storyflow.core.validator import ValidationReport, validate_payload
from storyflow.core.workflow_io import instruction_counts
from storyflow.plugins import plugin_registry
from storyflow.providers import ProviderError, provider_registry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application lifecycle: provider setup and teardown.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the shared provider on startup and close it on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    app.state.config = config
    app.state.working_dir = config.working_dir
    app.state.provider = provider_registry.instantiate(config.provider_transport, config)
    app.state.plugins = [plugin_registry.instantiate("SaveMetadata")]
    app.state.engine = None
    logger.info("Provider '%s' ready at %s", config.provider_transport, config.provider_base_url)

    yield  # Application runs here.

    # --- Shutdown ----------------------------------------------------------
    await app.state.provider.close()
    logger.info("Provider closed on shutdown.")


# ---------------------------------------------------------------------------
# FastAPI application instance.
# ---------------------------------------------------------------------------
app = FastAPI(
    title="StoryFlow Engine",
    description="Validation, analysis and execution of StoryFlow image-generation workflows.",
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


def _decode_or_422(payload: list) -> tuple[list[Instruction], ValidationReport]:
    """Decode a wire payload, raising 422 with the report when it is malformed."""
    instructions, report = validate_payload(payload)
    if instructions is None:
        raise HTTPException(status_code=422, detail=report.to_dict())
    return instructions, report


# ---------------------------------------------------------------------------
# Health and catalog.
# ---------------------------------------------------------------------------


@app.get("/api/health")
async def health(request: Request) -> dict:
    """Report the server version and whether the provider is reachable."""
    provider = request.app.state.provider
    connected = await provider.check_connection()
    return {
        "status": "ok",
        "version": __version__,
        "provider": provider.get_provider_info(),
        "connected": connected,
    }


@app.get("/api/instructions")
async def list_instructions() -> dict:
    """Return every instruction wire key with its metadata and support level."""
    catalog = []
    for key, instruction_type in INSTRUCTION_TYPES.items():
        info = support_info(instruction_type)
        catalog.append(
            {
                "key": key,
                "title": instruction_type.title,
                "category": instruction_type.category.value,
                "icon": instruction_type.icon,
                "support": info.level.value,
                "reason": info.reason,
            }
        )
    return {"instructions": catalog, "count": len(catalog)}


# ---------------------------------------------------------------------------
# Workflow endpoints.
# ---------------------------------------------------------------------------


@app.post("/api/workflows/validate")
async def validate_workflow(req: WorkflowRequest) -> dict:
    """Validate a workflow without running it.

    Decode failures are reported as errors in the same report shape, so this
    endpoint always answers 200.
    """
    _, report = validate_payload(req.instructions)
    return report.to_dict()


@app.post("/api/workflows/analyze")
async def analyze_workflow(req: WorkflowRequest) -> dict:
    """Count how many instructions run fully, partially or not at all.

    Raises:
        HTTPException: 422 if the workflow cannot be decoded.
    """
    instructions, _ = _decode_or_422(req.instructions)
    analysis = analyze(instructions)
    return {
        "total": analysis.total,
        "full": analysis.full,
        "partial": analysis.partial,
        "unsupported": analysis.unsupported,
        "is_fully_supported": analysis.is_fully_supported,
        "has_generation_trigger": analysis.has_generation_trigger,
        "counts": instruction_counts(instructions),
    }


@app.post("/api/workflows/run")
async def run_workflow(req: RunRequest, request: Request) -> dict:
    """Execute a workflow and return the validation report and run result.

    Raises:
        HTTPException: 422 if the workflow cannot be decoded, or has
            validation errors while ``enforce_validation`` is set; 409 if a
            run is already in progress; 500 if the working directory is
            unusable.
    """
    instructions, report = _decode_or_422(req.instructions)
    if req.enforce_validation and not report.is_valid:
        raise HTTPException(status_code=422, detail=report.to_dict())

    state = request.app.state
    if state.engine is not None and state.engine.is_running:
        raise HTTPException(status_code=409, detail="A workflow is already running")

    engine = WorkflowEngine(
        state.provider,
        state.config,
        working_dir=state.working_dir,
        plugins=state.plugins,
    )
    state.engine = engine
    try:
        result = await engine.run(instructions, check_connection=req.check_connection)
    except WorkingDirectoryError as e:
        logger.error("Cannot run workflow: %s", e)
        raise HTTPException(status_code=500, detail=str(e)) from e

    return {"validation": report.to_dict(), "result": result.to_dict()}


@app.post("/api/workflows/cancel")
async def cancel_workflow(request: Request) -> dict:
    """Cancel the running workflow, if any."""
    engine = request.app.state.engine
    if engine is None or not engine.is_running:
        return {"cancelled": False}
    engine.cancel()
    return {"cancelled": True}


# ---------------------------------------------------------------------------
# Provider catalogs.
# ---------------------------------------------------------------------------


@app.get("/api/provider/models")
async def provider_models(request: Request) -> dict:
    """List the models the provider offers.

    Raises:
        HTTPException: 502 if the provider request fails.
    """
    try:
        models = await request.app.state.provider.fetch_models()
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"models": [{"name": m.display_name, "filename": m.filename} for m in models]}


@app.get("/api/provider/loras")
async def provider_loras(request: Request) -> dict:
    """List the LoRAs the provider offers.

    Raises:
        HTTPException: 502 if the provider request fails.
    """
    try:
        loras = await request.app.state.provider.fetch_loras()
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"loras": [{"name": lora.display_name, "filename": lora.filename} for lora in loras]}


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~storyflow.core.config.config`
    (``STORYFLOW_SERVER_HOST``, ``STORYFLOW_SERVER_PORT``,
    ``STORYFLOW_LOG_LEVEL``).

    This function is registered as the ``storyflow`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "storyflow.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
