#!/usr/bin/env python3
"""
Media Tagger: generate captions, summaries and tags for media stored in an S3-compatible bucket.

For every JPEG/PNG image and PDF in the bucket that has no metadata yet, the content is sent to
a vision-language model and the result is written next to it as ``<key>.metadata.json``.
Objects that already have a sidecar are skipped, so runs can be repeated or interrupted safely.

Entry points:
 - ``media-tagger run``: one run, for cron or systemd timers (also the default command)
 - ``media-tagger schedule``: built-in timer, runs every ``--interval`` seconds
 - ``media-tagger serve``: HTTP endpoint (``/run``) triggering a run on request

Requirements:
 - Credentials for the bucket (standard AWS environment variables or profile).
 - An OpenAI-compatible endpoint (OpenAI, Ollama or LM Studio) serving a vision-language model.

"""
# ruff: noqa: PLR0913

import asyncio
import json
import os
import sys
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Literal

import uvicorn
from cyclopts import App, Parameter, validators
from loguru import logger

from media_tagger import __version__
from media_tagger.analyzer import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODEL_NAME,
    DEFAULT_RETRIES,
    DEFAULT_TEMPERATURE,
    AgentAnalyzer,
    ProviderName,
    create_agent,
)
from media_tagger.errors import AnalyzerConfigError
from media_tagger.models import RunOptions, RunStats
from media_tagger.orchestrator import DEFAULT_PAGE_SIZE, BatchOrchestrator
from media_tagger.server import create_app
from media_tagger.store import MAX_PAGE_SIZE, S3ObjectStore


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Configuration defaults
DEFAULT_BUCKET = os.getenv("MEDIA_BUCKET", "media")
DEFAULT_PREFIX = os.getenv("MEDIA_PREFIX", "")
DEFAULT_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL")
DEFAULT_REGION = os.getenv("AWS_REGION")
DEFAULT_PAGE_SIZE_ENV = int(os.getenv("PAGE_SIZE", str(DEFAULT_PAGE_SIZE)))
DEFAULT_INTERVAL = int(os.getenv("RUN_INTERVAL_SECONDS", "3600"))


# Cyclopts app
app = App(
    name="media-tagger",
    version=__version__,
)


@Parameter(name="*")
@dataclass
class Settings:
    """Bucket, model and logging settings shared by every command."""

    bucket: Annotated[
        str,
        Parameter(name=("--bucket", "-b"), help="Bucket holding the media and its sidecars"),
    ] = DEFAULT_BUCKET
    prefix: Annotated[
        str,
        Parameter(name=("--prefix",), help="Only consider keys starting with this prefix"),
    ] = DEFAULT_PREFIX
    endpoint_url: Annotated[
        str | None,
        Parameter(
            name=("--endpoint-url",),
            help="S3-compatible endpoint (R2, MinIO). Defaults to AWS S3",
        ),
    ] = DEFAULT_ENDPOINT_URL
    region: Annotated[
        str | None,
        Parameter(
            name=("--region",),
            help="Bucket region. Unset lets boto3 resolve it; use 'auto' with an R2 endpoint",
        ),
    ] = DEFAULT_REGION
    page_size: Annotated[
        int,
        Parameter(
            name=("--page-size",),
            validator=validators.Number(gte=1, lte=MAX_PAGE_SIZE),
            help="Objects per listing page; also the maximum number of concurrent tasks",
        ),
    ] = DEFAULT_PAGE_SIZE_ENV
    provider_name: Annotated[
        ProviderName,
        Parameter(name=("--provider",), help="Backend provider: 'openai', 'ollama' or 'lmstudio'"),
    ] = "openai"
    model_name: Annotated[
        str,
        Parameter(name=("--model", "-m"), help="Vision-language model name"),
    ] = DEFAULT_MODEL_NAME
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None
    temperature: Annotated[
        float,
        Parameter(name=("--temperature",), help="Sampling temperature (0.0-1.0)"),
    ] = DEFAULT_TEMPERATURE
    max_tokens: Annotated[
        int,
        Parameter(name=("--max-tokens",), help="Maximum tokens to generate"),
    ] = DEFAULT_MAX_TOKENS
    retries: Annotated[
        int,
        Parameter(name=("--retries",), help="Number of automatic output validation retries"),
    ] = DEFAULT_RETRIES
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "DEBUG"
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO"
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs")


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-media_tagger.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<30.40}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _build_orchestrator(settings: Settings) -> BatchOrchestrator:
    try:
        agent = create_agent(
            settings.provider_name,
            settings.model_name,
            api_base_url=settings.api_base_url,
            api_key=settings.api_key,
            retries=settings.retries,
        )
    except AnalyzerConfigError as exc:
        logger.error("analyzer_config_invalid", error=str(exc))
        raise SystemExit(1) from exc

    store = S3ObjectStore.from_settings(
        settings.bucket,
        endpoint_url=settings.endpoint_url,
        region=settings.region,
    )
    analyzer = AgentAnalyzer(
        agent,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        jpeg_dimensions=settings.jpeg_dimensions,
        jpeg_quality=settings.jpeg_quality,
    )
    return BatchOrchestrator(
        store,
        analyzer,
        prefix=settings.prefix,
        page_size=settings.page_size,
    )


def _start(settings: Settings, command: str, **extra: object) -> BatchOrchestrator:
    """Configure logging, log the effective settings and build the orchestrator."""
    setup_logging(
        file_log_level=settings.file_log_level,
        console_log_level=settings.console_log_level,
        log_folder=settings.log_folder,
    )
    effective = asdict(settings)
    effective["api_key_present"] = bool(effective.pop("api_key"))
    effective["log_folder"] = str(settings.log_folder)
    logger.info("starting_media_tagger", command=command, **effective, **extra)
    return _build_orchestrator(settings)


async def _run_forever(
    orchestrator: BatchOrchestrator,
    options: RunOptions,
    interval: float,
    max_runs: int | None = None,
) -> int:
    """Run back to back with ``interval`` seconds between runs; returns the number of runs."""
    runs = 0
    while max_runs is None or runs < max_runs:
        runs += 1
        try:
            stats = await orchestrator.run(options)
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduled_run_exception", run=runs, error=str(exc))
        else:
            if stats.failed:
                logger.error("scheduled_run_failed", run=runs, detail=stats.fatal_error)
        if max_runs is not None and runs >= max_runs:
            break
        logger.info("next_run_scheduled", seconds=interval)
        await asyncio.sleep(interval)
    return runs


def _report(stats: RunStats, *, force: bool) -> None:
    print(json.dumps({**stats.as_dict(), "forceReprocess": force}))  # noqa: T201


@app.command
def run(
    *,
    force: Annotated[
        bool,
        Parameter(
            name=("--force", "-f"),
            help="Regenerate metadata even for objects that already have a sidecar",
        ),
    ] = False,
    settings: Settings | None = None,
) -> None:
    """
    Run once over the bucket and print the counters as JSON.

    Exit status: 1 if a listing page could not be fetched (the run stopped early).
    Individual object failures are counted in ``errors`` and do not change the exit status.

    Examples:
        media-tagger run --bucket photos
        media-tagger run --bucket photos --prefix 2024/ --force
        media-tagger run --provider ollama -m qwen2.5vl:7b

    """
    settings = settings or Settings()
    orchestrator = _start(settings, "run", force=force)

    stats = asyncio.run(orchestrator.run(RunOptions(force_reprocess=force)))
    _report(stats, force=force)
    if stats.failed:
        logger.error("run_failed", detail=stats.fatal_error)
        raise SystemExit(1)


app.default(run)


@app.command
def schedule(
    *,
    interval: Annotated[
        int,
        Parameter(
            name=("--interval",),
            validator=validators.Number(gte=1),
            help="Seconds to wait between the end of one run and the start of the next",
        ),
    ] = DEFAULT_INTERVAL,
    max_runs: Annotated[
        int | None,
        Parameter(name=("--max-runs",), help="Stop after this many runs (default: run forever)"),
    ] = None,
    settings: Settings | None = None,
) -> None:
    """
    Run now and then every ``--interval`` seconds. Runs never overlap.

    Examples:
        media-tagger schedule --bucket photos --interval 900

    """
    settings = settings or Settings()
    orchestrator = _start(settings, "schedule", interval=interval, max_runs=max_runs)
    asyncio.run(_run_forever(orchestrator, RunOptions(), interval, max_runs))


@app.command
def serve(
    *,
    host: Annotated[str, Parameter(name=("--host",), help="Interface to bind")] = "127.0.0.1",
    port: Annotated[int, Parameter(name=("--port", "-p"), help="Port to listen on")] = 8787,
    settings: Settings | None = None,
) -> None:
    """
    Serve the HTTP trigger.

    ``GET|POST /run`` starts a run (add ``?forceReprocess=true`` to regenerate everything)
    and answers with the counters; ``GET /health`` reports liveness.

    Examples:
        media-tagger serve --bucket photos --port 8080

    """
    settings = settings or Settings()
    orchestrator = _start(settings, "serve", host=host, port=port)
    uvicorn.run(create_app(orchestrator), host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
