"""
Content analysis: turn an image or PDF into a caption/summary and tags.

The orchestrator only knows the ``ContentAnalyzer`` protocol. ``AgentAnalyzer``
is the production implementation: it sends the media to a vision-language
model through a Pydantic AI agent, which validates the structured answer and
retries on malformed output.
"""

import asyncio
import os
import time
import urllib.parse
from http import HTTPStatus
from io import BytesIO
from typing import TYPE_CHECKING, Literal, Protocol

import httpx
from loguru import logger
from openai import OpenAIError
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field
from pydantic_ai import Agent, BinaryContent, ModelSettings
from pydantic_ai.exceptions import UserError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from media_tagger.errors import AnalyzerConfigError, AnalyzerError
from media_tagger.models import AnalysisResult, MediaKind, StoredObject


if TYPE_CHECKING:
    from collections.abc import Iterable

    from pydantic_ai import AgentRunResult


ProviderName = Literal["openai", "ollama", "lmstudio"]

# Configuration defaults
DEFAULT_OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
DEFAULT_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", DEFAULT_OPENAI_API_KEY)
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gpt-4o")
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "500"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "2"))
PROVIDER_URLS: dict[str, str | None] = {
    "openai": DEFAULT_OPENAI_BASE_URL,
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}
PROVIDER_API_KEYS: dict[str, str | None] = {
    "openai": DEFAULT_OPENAI_API_KEY,
    "ollama": DEFAULT_OLLAMA_API_KEY,
    "lmstudio": DEFAULT_LMSTUDIO_API_KEY,
}
PDF_MEDIA_TYPE = "application/pdf"

# Prompt templates
DEFAULT_SYSTEM_PROMPT = (
    "You are a media archivist. You describe images and documents accurately and "
    "produce short, reusable keyword tags. Answer strictly in the requested structure."
)

IMAGE_PROMPT = (
    "Describe this image in 1-2 concise sentences. "
    "Also provide a short list of relevant keywords (tags), each one to three words."
)

PDF_PROMPT = (
    "Summarize this PDF document in one or two short paragraphs. "
    "Also provide 5-10 relevant keyword tags covering its topics."
)


class GeneratedContent(BaseModel):
    """Schema for structured generation results."""

    description: str
    tags: list[str] = Field(default_factory=list)


class ContentAnalyzer(Protocol):
    """Produce descriptive metadata for one stored object."""

    async def analyze(self, obj: StoredObject, kind: MediaKind) -> AnalysisResult: ...


def normalize_tags(tags: "Iterable[str]") -> list[str]:
    """
    Lower-case, strip and de-duplicate tags, keeping first-seen order.

    Examples:
        >>> normalize_tags([" Beach", "sunset", "beach", "", "Palm Trees"])
        ['beach', 'sunset', 'palm trees']

    """
    cleaned = (str(tag).strip().lower() for tag in tags)
    return list(dict.fromkeys(tag for tag in cleaned if tag))


def prepare_image(
    data: bytes,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Re-encode an image as a downscaled JPEG ready to send to the model.

    Transparent images are composited onto white first. The whole conversion
    happens in memory.

    Args:
        data: Raw image bytes (JPEG or PNG)
        jpg_quality: JPEG compression quality (1-100, recommended: 80)
        max_size: Maximum dimension in pixels for resizing (recommended: <=1280)

    Returns:
        BinaryContent object ready for the Pydantic AI agent

    """
    img = Image.open(BytesIO(data))

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        alpha = img.convert("RGBA")
        bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, alpha).convert("RGB")
    else:
        img = img.convert("RGB")

    # Downscale only, keeping the aspect ratio
    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()
    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


class AgentAnalyzer:
    """ContentAnalyzer that asks a vision-language model through a Pydantic AI agent."""

    def __init__(
        self,
        agent: Agent,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ) -> None:
        self._agent = agent
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.jpeg_dimensions = jpeg_dimensions
        self.jpeg_quality = jpeg_quality

    async def _media_content(self, obj: StoredObject, kind: MediaKind) -> tuple[str, BinaryContent]:
        if kind is MediaKind.IMAGE:
            try:
                content = await asyncio.to_thread(
                    prepare_image,
                    obj.body,
                    self.jpeg_quality,
                    self.jpeg_dimensions,
                )
            except (UnidentifiedImageError, OSError, ValueError) as exc:
                raise AnalyzerError(obj.key, f"cannot decode image: {exc}") from exc
            return IMAGE_PROMPT, content
        if kind is MediaKind.PDF:
            return PDF_PROMPT, BinaryContent(data=obj.body, media_type=PDF_MEDIA_TYPE)
        raise AnalyzerError(obj.key, f"no analyzer for {kind} content")

    async def analyze(self, obj: StoredObject, kind: MediaKind) -> AnalysisResult:
        """
        Describe one object.

        Images yield a ``caption`` and PDFs a ``summary``; both come with
        normalised tags. Any failure of the model call, including output that
        does not validate after the agent's retries, becomes an ``AnalyzerError``.
        """
        prompt, content = await self._media_content(obj, kind)

        _t0 = time.perf_counter()
        try:
            result: AgentRunResult[GeneratedContent] = await self._agent.run(
                [prompt, content],
                model_settings=ModelSettings(
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                output_type=GeneratedContent,
            )
        except Exception as exc:  # noqa: BLE001
            raise AnalyzerError(obj.key, f"{type(exc).__name__}: {exc}") from exc

        logger.info(
            "ai_inference_completed",
            seconds=round(time.perf_counter() - _t0, 3),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

        description = result.output.description.strip()
        if not description:
            raise AnalyzerError(obj.key, "model returned an empty description")
        tags = normalize_tags(result.output.tags)
        logger.debug("ai_generated_metadata", description=description, tags=tags)

        if kind is MediaKind.IMAGE:
            return AnalysisResult(caption=description, tags=tags)
        return AnalysisResult(summary=description, tags=tags)


def ensure_model_available(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when an OpenAI-compatible server (LM Studio) does not serve the requested model."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        msg = f"invalid model listing URL: {url}"
        raise AnalyzerConfigError(msg)

    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        msg = f"model listing request to {url} failed: {exc}"
        raise AnalyzerConfigError(msg) from exc

    if response.status_code != HTTPStatus.OK:
        msg = f"model listing at {url} returned HTTP {response.status_code}"
        raise AnalyzerConfigError(msg)

    try:
        listing = response.json()
    except ValueError as exc:
        msg = f"model listing at {url} is not valid JSON"
        raise AnalyzerConfigError(msg) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]
    if model_name not in models:
        msg = f"model {model_name!r} is not available; served models: {models}"
        raise AnalyzerConfigError(msg)

    logger.debug("model_validated", model=model_name, url=url)


def create_agent(
    provider_name: ProviderName,
    model_name: str,
    *,
    api_base_url: str | None = None,
    api_key: str | None = None,
    retries: int = DEFAULT_RETRIES,
) -> Agent:
    """Build the Pydantic AI agent for the chosen OpenAI-compatible provider."""
    resolved_url = api_base_url or PROVIDER_URLS.get(provider_name)
    resolved_api_key = api_key or PROVIDER_API_KEYS.get(provider_name)
    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
        api_key_present=bool(resolved_api_key),
    )

    if provider_name == "lmstudio" and resolved_url:
        ensure_model_available(resolved_url, model_name, resolved_api_key)

    try:
        if provider_name == "ollama":
            provider = OllamaProvider(base_url=resolved_url, api_key=resolved_api_key)
        else:
            provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)
    except (UserError, OpenAIError) as exc:
        msg = f"cannot configure provider {provider_name!r}: {exc}"
        raise AnalyzerConfigError(msg) from exc

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=GeneratedContent,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )
