"""Data model: stored objects, run bookkeeping and the metadata sidecar schema."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class MediaKind(StrEnum):
    """Media kinds recognised by the classifier."""

    IMAGE = "image"
    PDF = "pdf"
    # Recognised so it can be skipped explicitly; analysis is not implemented yet.
    VIDEO = "video"
    UNSUPPORTED = "unsupported"


class Outcome(StrEnum):
    """How a single candidate object settled within a wave."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class MediaObject:
    """Listing entry for a blob in the store. Never mutated."""

    key: str
    size: int
    uploaded_at: datetime
    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class StoredObject:
    """A blob fetched from the store, body included."""

    key: str
    body: bytes
    size: int
    uploaded_at: datetime
    content_type: str | None = None


@dataclass(frozen=True, slots=True)
class ListPage:
    """One page of a bucket listing."""

    objects: list[MediaObject]
    truncated: bool
    cursor: str | None = None


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Options for a single orchestrator run."""

    force_reprocess: bool = False


@dataclass(slots=True)
class RunStats:
    """
    Counters for one orchestrator run.

    Every non-sidecar object seen by a run increments exactly one of
    ``processed``, ``skipped`` or ``errors``. A fatal listing failure adds one
    more error and is described in ``fatal_error``.

    Examples:
        >>> stats = RunStats.from_outcomes([Outcome.PROCESSED, Outcome.ERROR])
        >>> stats.as_dict()
        {'processed': 1, 'skipped': 0, 'errors': 1}

    """

    processed: int = 0
    skipped: int = 0
    errors: int = 0
    fatal_error: str | None = field(default=None, compare=False)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[Outcome]) -> "RunStats":
        stats = cls()
        for outcome in outcomes:
            stats.record(outcome)
        return stats

    @property
    def failed(self) -> bool:
        """True when the run ended early because a listing page could not be fetched."""
        return self.fatal_error is not None

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.errors

    def record(self, outcome: Outcome) -> None:
        if outcome is Outcome.PROCESSED:
            self.processed += 1
        elif outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def merge(self, other: "RunStats") -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.errors += other.errors

    def as_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "skipped": self.skipped, "errors": self.errors}


class AnalysisResult(BaseModel):
    """What a content analyzer returns for one object."""

    caption: str | None = None
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)


class MetadataRecord(BaseModel):
    """Schema of the ``<key>.metadata.json`` sidecar."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str
    type: MediaKind
    caption: str | None = None
    summary: str | None = None
    tags: list[str] = Field(default_factory=list)
    size: int
    last_modified: datetime = Field(alias="lastModified")
    generated_at: datetime = Field(alias="generatedAt")

    def to_json(self) -> str:
        """Pretty-printed JSON with camelCase keys; absent content fields are left out."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)
