"""In-memory fakes for the object store and the content analyzer."""

import asyncio
from datetime import UTC, datetime

from media_tagger.errors import AnalyzerError, StorageError
from media_tagger.models import AnalysisResult, ListPage, MediaKind, MediaObject, StoredObject


UPLOADED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
GENERATED_AT = datetime(2024, 6, 1, 8, 30, tzinfo=UTC)


class InMemoryStore:
    """
    ObjectStore over a dict, listing keys in lexical order.

    The cursor is the last key of the previous page, so objects written during
    a run (sidecars) never shift what later pages return.
    """

    def __init__(
        self,
        objects: dict[str, bytes] | None = None,
        *,
        fail_list_on_page: int | None = None,
        fail_head_for: set[str] | None = None,
        fail_put_for: set[str] | None = None,
    ) -> None:
        self.objects: dict[str, bytes] = dict(objects or {})
        self.fail_list_on_page = fail_list_on_page
        self.fail_head_for = fail_head_for or set()
        self.fail_put_for = fail_put_for or set()
        self.list_calls = 0
        self.head_calls: list[str] = []
        self.get_calls: list[str] = []
        self.puts: dict[str, tuple[bytes, str]] = {}
        self.events: list[str] = []

    async def list_page(self, *, prefix: str, limit: int, cursor: str | None) -> ListPage:
        self.list_calls += 1
        self.events.append(f"list:{self.list_calls}")
        await asyncio.sleep(0)
        if self.fail_list_on_page == self.list_calls:
            msg = "bucket unreachable"
            raise StorageError(msg)

        keys = sorted(k for k in self.objects if k.startswith(prefix))
        if cursor is not None:
            keys = [k for k in keys if k > cursor]
        page_keys = keys[:limit]
        truncated = len(keys) > limit
        return ListPage(
            objects=[
                MediaObject(key=k, size=len(self.objects[k]), uploaded_at=UPLOADED_AT)
                for k in page_keys
            ],
            truncated=truncated,
            cursor=page_keys[-1] if truncated else None,
        )

    async def head(self, key: str) -> MediaObject | None:
        self.head_calls.append(key)
        await asyncio.sleep(0)
        if key in self.fail_head_for:
            msg = f"permission denied for {key}"
            raise StorageError(msg)
        if key not in self.objects:
            return None
        return MediaObject(key=key, size=len(self.objects[key]), uploaded_at=UPLOADED_AT)

    async def get(self, key: str) -> StoredObject | None:
        self.get_calls.append(key)
        await asyncio.sleep(0)
        if key not in self.objects:
            return None
        body = self.objects[key]
        return StoredObject(key=key, body=body, size=len(body), uploaded_at=UPLOADED_AT)

    async def put(self, key: str, body: bytes, *, content_type: str) -> None:
        await asyncio.sleep(0)
        if key in self.fail_put_for:
            msg = f"write refused for {key}"
            raise StorageError(msg)
        self.objects[key] = body
        self.puts[key] = (body, content_type)


class ScriptedAnalyzer:
    """ContentAnalyzer returning canned results, failing for selected keys."""

    def __init__(
        self,
        *,
        fail_for: set[str] | None = None,
        delay: float = 0.0,
        events: list[str] | None = None,
    ) -> None:
        self.fail_for = fail_for or set()
        self.delay = delay
        self.events = events
        self.calls: list[tuple[str, MediaKind]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def analyze(self, obj: StoredObject, kind: MediaKind) -> AnalysisResult:
        self.calls.append((obj.key, kind))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.events is not None:
                self.events.append(f"analyzed:{obj.key}")
            if obj.key in self.fail_for:
                raise AnalyzerError(obj.key, "inference endpoint unreachable")
            if kind is MediaKind.PDF:
                return AnalysisResult(summary=f"Summary of {obj.key}", tags=["pdf", "report"])
            return AnalysisResult(caption=f"Caption of {obj.key}", tags=["photo", "beach"])
        finally:
            self.in_flight -= 1
