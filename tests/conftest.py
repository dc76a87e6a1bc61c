"""Shared fixtures."""

import pytest

from .fakes import InMemoryStore, ScriptedAnalyzer


@pytest.fixture
def scenario_store() -> InMemoryStore:
    """Image without metadata, PDF with metadata, a video and an unsupported file."""
    return InMemoryStore(
        {
            "a.jpg": b"jpeg-bytes",
            "b.pdf": b"%PDF-1.7",
            "b.pdf.metadata.json": b"{}",
            "c.mp4": b"video",
            "d.txt": b"text",
        },
    )


@pytest.fixture
def analyzer() -> ScriptedAnalyzer:
    return ScriptedAnalyzer()
