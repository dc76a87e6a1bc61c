"""Tests covering the agent-backed content analyzer using LiteLLM mocks."""

import asyncio
import json
from io import BytesIO
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from PIL import Image
from pydantic_ai import BinaryContent, ModelSettings

from media_tagger.analyzer import (
    IMAGE_PROMPT,
    PDF_PROMPT,
    AgentAnalyzer,
    GeneratedContent,
    normalize_tags,
    prepare_image,
)
from media_tagger.errors import AnalyzerError
from media_tagger.models import MediaKind, StoredObject

from .fakes import UPLOADED_AT


class LiteLLMAgentStub:
    """Minimal agent stub that delegates to LiteLLM's mock completion helper."""

    def __init__(self, payload: str, *, model: str = "gpt-4o-mini") -> None:
        """Store the canned payload and model name used for mock completions."""
        self._payload = payload
        self._model = model
        self.calls: list[dict[str, Any]] = []

    async def run(
        self,
        items: list[object],
        model_settings: ModelSettings,
        output_type: type[GeneratedContent],
    ) -> SimpleNamespace:
        """Mimic Agent.run by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "max_tokens": model_settings.get("max_tokens"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        metadata = output_type.model_validate_json(content)
        return SimpleNamespace(output=metadata)


def _png_bytes(size: tuple[int, int] = (64, 32), mode: str = "RGBA") -> bytes:
    buf = BytesIO()
    Image.new(mode, size, (200, 10, 10, 128) if mode == "RGBA" else (200, 10, 10)).save(
        buf,
        format="PNG",
    )
    return buf.getvalue()


def _stored(key: str, body: bytes) -> StoredObject:
    return StoredObject(key=key, body=body, size=len(body), uploaded_at=UPLOADED_AT)


def _payload(description: str, tags: list[str]) -> str:
    return json.dumps({"description": description, "tags": tags})


def test_image_analysis_returns_caption_and_normalized_tags() -> None:
    """Images are re-encoded to JPEG, described, and tagged in lower case without duplicates."""
    agent = LiteLLMAgentStub(
        _payload("Two marmosets share a branch.", ["Animal", "Forest", "animal", " Primate "]),
    )
    target_temperature = 0.42
    target_max_tokens = 88
    analyzer = AgentAnalyzer(
        agent,  # type: ignore[arg-type]
        temperature=target_temperature,
        max_tokens=target_max_tokens,
    )

    result = asyncio.run(analyzer.analyze(_stored("a.png", _png_bytes()), MediaKind.IMAGE))

    assert result.caption == "Two marmosets share a branch."
    assert result.summary is None
    assert result.tags == ["animal", "forest", "primate"]

    assert len(agent.calls) == 1
    recorded = agent.calls[0]
    assert recorded["items"][0] == IMAGE_PROMPT
    assert isinstance(recorded["items"][1], BinaryContent)
    assert recorded["items"][1].media_type == "image/jpeg"
    assert recorded["temperature"] == target_temperature
    assert recorded["max_tokens"] == target_max_tokens


def test_pdf_analysis_sends_document_and_returns_summary() -> None:
    """PDFs are sent as-is and the description becomes the summary."""
    agent = LiteLLMAgentStub(_payload("A quarterly sales report.", ["Sales", "Report"]))
    analyzer = AgentAnalyzer(agent)  # type: ignore[arg-type]
    body = b"%PDF-1.7 fake"

    result = asyncio.run(analyzer.analyze(_stored("q3.pdf", body), MediaKind.PDF))

    assert result.summary == "A quarterly sales report."
    assert result.caption is None
    assert result.tags == ["sales", "report"]
    prompt, document = agent.calls[0]["items"]
    assert prompt == PDF_PROMPT
    assert document.media_type == "application/pdf"
    assert document.data == body


def test_invalid_payload_raises_analyzer_error() -> None:
    """Output that does not validate is reported as an AnalyzerError for the key."""
    analyzer = AgentAnalyzer(LiteLLMAgentStub("not-json"))  # type: ignore[arg-type]

    with pytest.raises(AnalyzerError) as excinfo:
        asyncio.run(analyzer.analyze(_stored("doc.pdf", b"%PDF"), MediaKind.PDF))

    assert excinfo.value.key == "doc.pdf"


def test_empty_description_raises_analyzer_error() -> None:
    """A blank description is treated as a failed analysis."""
    analyzer = AgentAnalyzer(LiteLLMAgentStub(_payload("  ", ["tag"])))  # type: ignore[arg-type]

    with pytest.raises(AnalyzerError, match="empty description"):
        asyncio.run(analyzer.analyze(_stored("doc.pdf", b"%PDF"), MediaKind.PDF))


def test_undecodable_image_raises_before_calling_model() -> None:
    """Corrupt image bytes fail fast without spending a model call."""
    agent = LiteLLMAgentStub(_payload("unused", []))
    analyzer = AgentAnalyzer(agent)  # type: ignore[arg-type]

    with pytest.raises(AnalyzerError, match="cannot decode image"):
        asyncio.run(analyzer.analyze(_stored("broken.jpg", b"not an image"), MediaKind.IMAGE))

    assert agent.calls == []


def test_video_is_not_analysed() -> None:
    """Video has no analyzer yet and is refused explicitly."""
    agent = LiteLLMAgentStub(_payload("unused", []))
    analyzer = AgentAnalyzer(agent)  # type: ignore[arg-type]

    with pytest.raises(AnalyzerError, match="no analyzer"):
        asyncio.run(analyzer.analyze(_stored("clip.mp4", b"\x00"), MediaKind.VIDEO))

    assert agent.calls == []


def test_prepare_image_downscales_and_flattens_alpha() -> None:
    """Large transparent PNGs become bounded RGB JPEGs."""
    content = prepare_image(_png_bytes((400, 200)), jpg_quality=70, max_size=100)

    assert content.media_type == "image/jpeg"
    img = Image.open(BytesIO(content.data))
    assert img.format == "JPEG"
    assert img.mode == "RGB"
    assert max(img.size) == 100
    assert img.size == (100, 50)


def test_normalize_tags_keeps_first_seen_order() -> None:
    """Tags are trimmed, lower-cased and de-duplicated in order."""
    assert normalize_tags([" Beach", "SUNSET", "beach", "", "  ", "Palm Trees"]) == [
        "beach",
        "sunset",
        "palm trees",
    ]
