"""Tests covering AI title generation using LiteLLM mocks."""

import asyncio
import json
from http import HTTPStatus
from io import BytesIO
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from PIL import Image
from pydantic import ValidationError
from pydantic_ai import Agent, BinaryContent, ModelSettings

import photo_renamer.titles as t
from photo_renamer.references import PersonReference
from photo_renamer.titles import (
    REFERENCE_INSTRUCTIONS,
    TITLE_INSTRUCTIONS,
    GeneratedTitle,
    TitleGenerator,
    build_title_prompt,
    create_agent,
    image_media_type,
)


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
        output_type: type[GeneratedTitle],
    ) -> SimpleNamespace:
        """Mimic Agent.run by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "max_tokens": model_settings.get("max_tokens"),
                "timeout": model_settings.get("timeout"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        title = output_type.model_validate_json(content)
        return SimpleNamespace(output=title)


def _request(generator: TitleGenerator, references: list[PersonReference] | None = None) -> str:
    return asyncio.run(
        generator.request_title(b"\xff\xd8photo", ["Ana"], references or [], "context text"),
    )


def test_request_title_parses_litellm_payload() -> None:
    """The title is parsed from the model output and settings are forwarded."""
    agent = LiteLLMAgentStub(json.dumps({"title": "Ana feeding ducks at the lake"}))
    generator = TitleGenerator(agent, temperature=0.33, max_tokens=64, timeout=12.0)  # type: ignore[arg-type]

    assert _request(generator) == "Ana feeding ducks at the lake"

    assert len(agent.calls) == 1
    recorded = agent.calls[0]
    assert recorded["temperature"] == pytest.approx(0.33)
    assert recorded["max_tokens"] == 64  # noqa: PLR2004
    assert recorded["timeout"] == pytest.approx(12.0)
    items = recorded["items"]
    assert len(items) == 2  # noqa: PLR2004
    assert isinstance(items[0], BinaryContent)
    assert items[0].data == b"\xff\xd8photo"
    assert items[1] == "context text"


def test_request_title_orders_references_before_photo() -> None:
    """Reference images come first, each labeled, then the photo, then the prompt."""
    agent = LiteLLMAgentStub(json.dumps({"title": "Picnic"}))
    generator = TitleGenerator(agent)  # type: ignore[arg-type]
    references = [
        PersonReference("Ana", b"ana-bytes", "1"),
        PersonReference("Rui", b"rui-bytes", "2"),
    ]

    _request(generator, references)

    items = agent.calls[0]["items"]
    assert items[0] == "Reference photo of Ana:"
    assert items[1].data == b"ana-bytes"
    assert items[2] == "Reference photo of Rui:"
    assert items[3].data == b"rui-bytes"
    assert items[4] == "Now here is the photo to name:"
    assert items[5].data == b"\xff\xd8photo"
    assert items[6] == "context text"


def test_request_title_strips_quotes() -> None:
    """Quotes the model wraps around the title are removed."""
    agent = LiteLLMAgentStub(json.dumps({"title": ' "Foggy harbor at dawn" '}))
    assert _request(TitleGenerator(agent)) == "Foggy harbor at dawn"  # type: ignore[arg-type]


def test_request_title_empty_title_raises() -> None:
    """An empty title counts as a failed request."""
    agent = LiteLLMAgentStub(json.dumps({"title": '""'}))
    with pytest.raises(ValueError, match="empty title"):
        _request(TitleGenerator(agent))  # type: ignore[arg-type]


def test_request_title_invalid_litellm_payload_raises() -> None:
    """Invalid LiteLLM output bubbles up as a validation error."""
    agent = LiteLLMAgentStub("not-json")
    with pytest.raises(ValidationError):
        _request(TitleGenerator(agent))  # type: ignore[arg-type]


def test_build_title_prompt_includes_all_context() -> None:
    """People, album path, GPS and notes are listed under additional context."""
    prompt = build_title_prompt(
        ["Ana", "Rui"],
        ["Ana"],
        "Trips / Lisbon 2019",
        "38.72230, -9.13934",
        "Rui's birthday",
    )

    assert prompt.startswith(TITLE_INSTRUCTIONS)
    assert REFERENCE_INSTRUCTIONS.format(names="Ana") in prompt
    assert "People identified in this photo via face recognition: Ana, Rui" in prompt
    assert "Album location: Trips / Lisbon 2019" in prompt
    assert "GPS coordinates: 38.72230, -9.13934" in prompt
    assert "User notes: Rui's birthday" in prompt


def test_build_title_prompt_without_context_is_instructions_only() -> None:
    """No known context leaves only the base instructions."""
    assert build_title_prompt([], []) == TITLE_INSTRUCTIONS


def test_image_media_type_detects_format() -> None:
    """Photos are labeled with their real format; unreadable bytes default to JPEG."""
    png = BytesIO()
    Image.new("RGB", (4, 4)).save(png, format="PNG")
    jpeg = BytesIO()
    Image.new("RGB", (4, 4)).save(jpeg, format="JPEG")

    assert image_media_type(png.getvalue()) == "image/png"
    assert image_media_type(jpeg.getvalue()) == "image/jpeg"
    assert image_media_type(b"\xff\xd8photo") == "image/jpeg"


LMSTUDIO_URL = "http://localhost:1234/v1"


class _ListingResponse:
    """What httpx.get returns for LM Studio's model listing."""

    def __init__(self, status_code: int, payload: Any) -> None:  # noqa: ANN401
        self.status_code = status_code
        self.payload = payload

    def json(self) -> Any:  # noqa: ANN401
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    @property
    def text(self) -> str:
        return str(self.payload)


@pytest.fixture
def lmstudio_listing(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Serve a model listing to create_agent; tests set `response` and read `calls`."""
    state: dict[str, Any] = {"response": _ListingResponse(HTTPStatus.OK, {"data": []}), "calls": []}

    def fake_get(url: str, *, headers: dict[str, str], timeout: float) -> _ListingResponse:
        state["calls"].append({"url": url, "headers": headers, "timeout": timeout})
        return state["response"]

    monkeypatch.setattr(t.httpx, "get", fake_get)
    return state


def test_create_agent_ollama_needs_no_listing(lmstudio_listing: dict[str, Any]) -> None:
    """Ollama and OpenAI agents are built without contacting the server."""
    ollama = create_agent("ollama", "qwen2.5vl", api_base_url="http://localhost:11434/v1")
    assert isinstance(ollama, Agent)
    assert isinstance(create_agent("openai", "gpt-4o-mini", api_key="sk-test"), Agent)
    assert lmstudio_listing["calls"] == []


def test_create_agent_lmstudio_checks_loaded_models(lmstudio_listing: dict[str, Any]) -> None:
    """LM Studio is asked for its models with the API key, and a loaded model gives an agent."""
    lmstudio_listing["response"] = _ListingResponse(
        HTTPStatus.OK,
        {"data": [{"id": "qwen/qwen3-vl-30b"}, {"object": "model"}]},
    )

    agent = create_agent(
        "lmstudio",
        "qwen/qwen3-vl-30b",
        api_base_url="http://localhost:1234/v1/",
        api_key="secret",
    )

    assert isinstance(agent, Agent)
    call = lmstudio_listing["calls"][0]
    assert call["url"] == "http://localhost:1234/v1/models"
    assert call["timeout"] == pytest.approx(5.0)
    assert call["headers"] == {"Accept": "application/json", "Authorization": "Bearer secret"}


@pytest.mark.parametrize(
    "response",
    [
        _ListingResponse(HTTPStatus.OK, {"data": [{"id": "other-model"}]}),
        _ListingResponse(HTTPStatus.OK, ["qwen/qwen3-vl-30b"]),
        _ListingResponse(HTTPStatus.OK, ValueError("not json")),
        _ListingResponse(HTTPStatus.INTERNAL_SERVER_ERROR, {}),
    ],
    ids=["model-not-loaded", "unexpected-shape", "invalid-json", "server-error"],
)
def test_create_agent_lmstudio_unusable_listing_exits(
    lmstudio_listing: dict[str, Any],
    response: _ListingResponse,
) -> None:
    """The run stops before any photo is processed when the model cannot be confirmed."""
    lmstudio_listing["response"] = response
    with pytest.raises(SystemExit):
        create_agent("lmstudio", "qwen/qwen3-vl-30b", api_base_url=LMSTUDIO_URL, api_key="k")


def test_create_agent_lmstudio_rejects_non_http_url(lmstudio_listing: dict[str, Any]) -> None:
    """Only http(s) endpoints are queried."""
    with pytest.raises(SystemExit):
        create_agent("lmstudio", "qwen/qwen3-vl-30b", api_base_url="file:///etc/v1", api_key="k")
    assert lmstudio_listing["calls"] == []
