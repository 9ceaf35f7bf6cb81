"""
AI-authored photo titles through a vision-language model.

The model sees optional reference photos of identified people, then the photo
to name, then an instruction prompt with whatever context is known (people,
album path, GPS position, user notes). It answers with a short title only;
dates and sequence numbers are added by the naming template afterwards.
"""
# ruff: noqa: PLR0913

import os
import time
import urllib.parse
from collections.abc import Sequence
from http import HTTPStatus
from io import BytesIO
from typing import Literal

import httpx
from loguru import logger
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider

from photo_renamer.references import PersonReference

ProviderName = Literal["ollama", "lmstudio", "openai"]

# Configuration defaults
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
DEFAULT_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "qwen/qwen3-vl-30b")
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.2"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "200"))
DEFAULT_REQUEST_TIMEOUT = float(os.getenv("AI_TIMEOUT", "60"))
DEFAULT_VALIDATION_RETRIES = int(os.getenv("RETRIES", "2"))
DEFAULT_MEDIA_TYPE = "image/jpeg"
LMSTUDIO_LISTING_TIMEOUT = 5.0
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
    "openai": DEFAULT_OPENAI_BASE_URL,
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a photo archivist who writes short, specific, human-sounding titles for photos. "
    "A title names the subject, activity, place or occasion in under ten words, uses normal "
    "capitalization and spaces, and never contains a file extension, date or number prefix."
)

TITLE_INSTRUCTIONS = (
    "Generate a short, descriptive title for the LAST photo above (no file extension, "
    "no date prefix, no sequence number). Use normal capitalization and spaces. Be specific "
    "about the subject, location, activity, or scene. If people are identified (via face "
    "recognition or reference photos), include their names naturally. If the album path gives "
    "useful context (location, event, trip), incorporate it naturally. If GPS coordinates are "
    "provided, use them to identify the location and include the place name, not the "
    "coordinates. Do NOT include a date prefix or number; those are added automatically. "
    'Examples: "Sarah and John on a boat", "Kids playing in the backyard", '
    '"Golden Gate Bridge on a foggy morning".'
)

REFERENCE_INSTRUCTIONS = (
    "Reference photos are provided of people who may appear in this album: {names}. "
    "Use them to identify people in the main photo even if their face is not clearly visible; "
    "you can match by clothing, hair, body shape, accessories, etc. Only include a person's "
    "name if you are reasonably confident they appear in the photo."
)


class GeneratedTitle(BaseModel):
    """Schema for structured generation results."""

    title: str


def _list_lmstudio_models(api_base_url: str, api_key: str | None) -> list[str]:
    """Model ids LM Studio has loaded, from `<base>/models`. Exits if the listing is unusable."""
    url = f"{api_base_url.rstrip('/')}/models"
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        logger.error("lmstudio_url_invalid", url=url, scheme=parsed.scheme)
        raise SystemExit(1)

    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=LMSTUDIO_LISTING_TIMEOUT)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_unreachable", url=url, error=str(exc))
        raise SystemExit(1) from exc
    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_listing_failed",
            url=url,
            status=response.status_code,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_listing_not_json", url=url, error=str(exc))
        raise SystemExit(1) from exc
    entries = listing.get("data", []) if isinstance(listing, dict) else []
    return [str(entry["id"]) for entry in entries if isinstance(entry, dict) and "id" in entry]


def create_agent(
    provider_name: ProviderName,
    model_name: str,
    *,
    api_base_url: str | None = None,
    api_key: str | None = None,
    retries: int = DEFAULT_VALIDATION_RETRIES,
) -> Agent:
    """Build a pydantic-ai agent that returns a GeneratedTitle."""
    resolved_url = api_base_url or PROVIDER_URLS.get(provider_name, DEFAULT_OLLAMA_BASE_URL)
    if api_base_url is None:
        logger.debug("using_default_provider_url", url=resolved_url)

    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
    )

    if provider_name == "ollama":
        provider = OllamaProvider(base_url=resolved_url, api_key=api_key or DEFAULT_OLLAMA_API_KEY)
    elif provider_name == "lmstudio":
        resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
        loaded = _list_lmstudio_models(resolved_url, resolved_api_key)
        if model_name not in loaded:
            logger.error("lmstudio_model_not_loaded", requested=model_name, loaded=loaded)
            raise SystemExit(1)
        provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)
    else:
        provider = OpenAIProvider(base_url=resolved_url, api_key=api_key or DEFAULT_OPENAI_API_KEY)

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=GeneratedTitle,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


def image_media_type(data: bytes) -> str:
    """
    MIME type of encoded image bytes, as detected by Pillow; JPEG when unknown.

    Examples:
        >>> image_media_type(b"not an image")
        'image/jpeg'

    """
    try:
        with Image.open(BytesIO(data)) as img:
            return Image.MIME.get(img.format or "", DEFAULT_MEDIA_TYPE)
    except (UnidentifiedImageError, OSError):
        return DEFAULT_MEDIA_TYPE


def build_title_prompt(
    people: Sequence[str],
    reference_names: Sequence[str],
    collection_path: str | None = None,
    location: str | None = None,
    notes: str | None = None,
) -> str:
    """
    Assemble the instruction text that follows the images.

    Examples:
        >>> print(
        ...     build_title_prompt(["Ana"], [], "Trips / Lisbon 2019", "38.72230, -9.13934", None)
        ... )  # doctest: +SKIP
        Generate a short, descriptive title ...

        Additional context:
        People identified in this photo via face recognition: Ana
        Album location: Trips / Lisbon 2019
        GPS coordinates: 38.72230, -9.13934

    """
    sections = [TITLE_INSTRUCTIONS]
    if reference_names:
        sections.append(REFERENCE_INSTRUCTIONS.format(names=", ".join(reference_names)))

    context: list[str] = []
    if people:
        context.append(f"People identified in this photo via face recognition: {', '.join(people)}")
    if collection_path:
        context.append(f"Album location: {collection_path}")
    if location:
        context.append(f"GPS coordinates: {location}")
    if notes:
        context.append(f"User notes: {notes}")
    if context:
        sections.append("Additional context:\n" + "\n".join(context))
    return "\n\n".join(sections)


def build_title_request(
    image_bytes: bytes,
    people: Sequence[str],
    references: Sequence[PersonReference],
    context_text: str,
) -> list[str | BinaryContent]:
    """Order the message parts: references first, then the photo, then the prompt."""
    parts: list[str | BinaryContent] = []
    for ref in references:
        parts.append(f"Reference photo of {ref.person_name}:")
        media_type = image_media_type(ref.image_bytes)
        parts.append(BinaryContent(data=ref.image_bytes, media_type=media_type))
    if references:
        parts.append("Now here is the photo to name:")
    parts.append(BinaryContent(data=image_bytes, media_type=image_media_type(image_bytes)))
    parts.append(context_text)
    logger.debug("title_request_built", people=list(people), references=len(references))
    return parts


class TitleGenerator:
    """Asks the vision-language model for one photo title per call."""

    def __init__(
        self,
        agent: Agent,
        *,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.agent = agent
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def request_title(
        self,
        image_bytes: bytes,
        people: Sequence[str],
        references: Sequence[PersonReference],
        context_text: str,
    ) -> str:
        """
        Request a title for one photo.

        Raises whatever the agent raises (network, HTTP, validation); callers retry.
        """
        _t0 = time.perf_counter()
        result: AgentRunResult[GeneratedTitle] = await self.agent.run(
            build_title_request(image_bytes, people, references, context_text),
            model_settings=ModelSettings(
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            ),
            output_type=GeneratedTitle,
        )
        title = result.output.title.strip().strip('"').strip()
        logger.info("ai_title_generated", seconds=round(time.perf_counter() - _t0, 3), title=title)
        if not title:
            msg = "model returned an empty title"
            raise ValueError(msg)
        return title
