"""HTTP trigger: run the orchestrator on request and report the run statistics."""

import asyncio
from typing import Annotated

from fastapi import APIRouter, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from media_tagger import __version__
from media_tagger.models import RunOptions
from media_tagger.orchestrator import BatchOrchestrator


router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.api_route("/run", methods=["GET", "POST"])
async def trigger_run(
    request: Request,
    force_reprocess: Annotated[
        bool,
        Query(alias="forceReprocess", description="Regenerate metadata even if a sidecar exists"),
    ] = False,
) -> JSONResponse:
    """
    Run the orchestrator once.

    200 carries the counters, even when some objects failed. 500 means the
    run itself failed (listing error or unexpected exception). 409 means a
    run is already in progress.
    """
    orchestrator: BatchOrchestrator = request.app.state.orchestrator
    run_lock: asyncio.Lock = request.app.state.run_lock

    if run_lock.locked():
        logger.warning("run_rejected_already_running")
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "run_in_progress"},
        )

    async with run_lock:
        logger.info("http_run_requested", force_reprocess=force_reprocess)
        try:
            stats = await orchestrator.run(RunOptions(force_reprocess=force_reprocess))
        except Exception as exc:  # noqa: BLE001
            logger.exception("http_run_failed", error=str(exc))
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "run_failed", "detail": str(exc)},
            )

    if stats.failed:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "run_failed", "detail": stats.fatal_error, "stats": stats.as_dict()},
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={**stats.as_dict(), "forceReprocess": force_reprocess},
    )


def create_app(orchestrator: BatchOrchestrator) -> FastAPI:
    app = FastAPI(title="media-tagger", version=__version__)
    app.state.orchestrator = orchestrator
    app.state.run_lock = asyncio.Lock()
    app.include_router(router)
    return app
