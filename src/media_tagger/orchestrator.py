"""
Batch orchestration: page through the bucket and generate missing metadata.

Each listing page becomes one wave of concurrent per-object tasks. A wave is
always joined in full (successes and failures alike) before the next page is
requested, so at most one page of work is ever in flight. Per-object failures
are counted and logged; only a failure to fetch a listing page ends a run early.
"""

import asyncio
import time
from collections.abc import Callable, Coroutine
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from media_tagger.analyzer import ContentAnalyzer, normalize_tags
from media_tagger.classify import classify, is_sidecar, sidecar_key
from media_tagger.errors import AnalyzerError, ObjectMissingError, StorageError
from media_tagger.gate import ExistenceGate
from media_tagger.models import (
    MediaKind,
    MediaObject,
    MetadataRecord,
    Outcome,
    RunOptions,
    RunStats,
    StoredObject,
)
from media_tagger.store import MAX_PAGE_SIZE, ObjectStore


DEFAULT_PAGE_SIZE = 500
METADATA_CONTENT_TYPE = "application/json"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def build_metadata_record(
    stored: StoredObject,
    kind: MediaKind,
    caption: str | None,
    summary: str | None,
    tags: list[str],
    generated_at: datetime,
) -> MetadataRecord:
    """Assemble the sidecar for an analysed object; fails when there is nothing to describe it."""
    caption = (caption or "").strip() or None
    summary = (summary or "").strip() or None
    if caption is None and summary is None:
        raise AnalyzerError(stored.key, "analyzer returned no caption or summary")
    return MetadataRecord(
        filename=stored.key,
        type=kind,
        caption=caption,
        summary=summary,
        tags=normalize_tags(tags),
        size=stored.size,
        last_modified=stored.uploaded_at,
        generated_at=generated_at,
    )


class BatchOrchestrator:
    """Drive one metadata generation run over a bucket."""

    def __init__(
        self,
        store: ObjectStore,
        analyzer: ContentAnalyzer,
        *,
        prefix: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
        gate: ExistenceGate | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not 0 < page_size <= MAX_PAGE_SIZE:
            msg = f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}"
            raise ValueError(msg)
        self._store = store
        self._analyzer = analyzer
        self._gate = gate or ExistenceGate(store)
        self._clock = clock
        self.prefix = prefix
        self.page_size = page_size

    async def run(self, options: RunOptions | None = None) -> RunStats:
        """
        Process every media object under the configured prefix.

        Returns the run statistics. When a listing page cannot be fetched the
        loop stops, one error is added for the failed page, and the partial
        statistics are returned with ``fatal_error`` set.
        """
        options = options or RunOptions()
        stats = RunStats()
        cursor: str | None = None
        page_number = 0
        t0 = time.perf_counter()

        logger.info(
            "run_started",
            prefix=self.prefix,
            page_size=self.page_size,
            force_reprocess=options.force_reprocess,
        )

        while True:
            page_number += 1
            try:
                page = await self._store.list_page(
                    prefix=self.prefix,
                    limit=self.page_size,
                    cursor=cursor,
                )
            except StorageError as exc:
                logger.error("listing_failed", page=page_number, error=str(exc))
                stats.errors += 1
                stats.fatal_error = f"listing page {page_number} failed: {exc}"
                break

            logger.debug("page_listed", page=page_number, objects=len(page.objects))
            wave_stats = await self._run_wave(page.objects, options)
            stats.merge(wave_stats)
            logger.info("page_settled", page=page_number, **wave_stats.as_dict())

            if not page.truncated:
                break
            if not page.cursor:
                logger.error("listing_truncated_without_cursor", page=page_number)
                stats.errors += 1
                stats.fatal_error = f"listing page {page_number} was truncated without a cursor"
                break
            cursor = page.cursor

        elapsed = round(time.perf_counter() - t0, 3)
        if stats.failed:
            logger.error("run_aborted", pages=page_number, seconds=elapsed, **stats.as_dict())
        else:
            logger.info("run_completed", pages=page_number, seconds=elapsed, **stats.as_dict())
        return stats

    async def _run_wave(self, objects: list[MediaObject], options: RunOptions) -> RunStats:
        """Launch one task per candidate on the page and wait for all of them to settle."""
        wave_stats = RunStats()
        tasks: list[Coroutine[Any, Any, Outcome]] = []
        task_keys: list[str] = []

        for obj in objects:
            if is_sidecar(obj.key):
                continue
            kind = classify(obj.key)
            if kind is MediaKind.UNSUPPORTED:
                logger.debug("skipping_unsupported_type", key=obj.key)
                wave_stats.record(Outcome.SKIPPED)
                continue
            if kind is MediaKind.VIDEO:
                logger.info("skipping_video_not_implemented", key=obj.key)
                wave_stats.record(Outcome.SKIPPED)
                continue
            tasks.append(self._process_object(obj, kind, options))
            task_keys.append(obj.key)

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for key, result in zip(task_keys, results, strict=True):
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(
                    "unhandled_task_failure",
                    key=key,
                    error=str(result),
                )
                wave_stats.record(Outcome.ERROR)
            else:
                wave_stats.record(result)
        return wave_stats

    async def _process_object(
        self,
        obj: MediaObject,
        kind: MediaKind,
        options: RunOptions,
    ) -> Outcome:
        """Gate, analyse and persist one object. Never raises for ordinary failures."""
        with logger.contextualize(key=obj.key, kind=str(kind)):
            try:
                if not await self._gate.should_process(obj, options):
                    return Outcome.SKIPPED

                logger.info("processing_object")
                _t0 = time.perf_counter()
                stored = await self._store.get(obj.key)
                if stored is None:
                    raise ObjectMissingError(obj.key)

                result = await self._analyzer.analyze(stored, kind)
                record = build_metadata_record(
                    stored,
                    kind,
                    result.caption,
                    result.summary,
                    result.tags,
                    self._clock(),
                )
                await self._store.put(
                    sidecar_key(obj.key),
                    record.to_json().encode("utf-8"),
                    content_type=METADATA_CONTENT_TYPE,
                )
            except (StorageError, AnalyzerError) as exc:
                logger.error("processing_failed", error=str(exc), error_type=type(exc).__name__)
                return Outcome.ERROR
            except Exception as exc:  # noqa: BLE001
                logger.exception("processing_exception", error=str(exc))
                return Outcome.ERROR

            logger.info(
                "metadata_written",
                sidecar=sidecar_key(obj.key),
                tags=len(record.tags),
                seconds=round(time.perf_counter() - _t0, 3),
            )
            return Outcome.PROCESSED
