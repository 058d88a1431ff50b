"""Tests for the OpenAI generator and prompt builder."""
import asyncio
import json

import httpx
import pytest
from citybingo.config import Settings
from citybingo.services.errors import EmptyResult, UpstreamGenerationError
from citybingo.services.openai_client import OpenAIGenerator, extract_image_source
from citybingo.services.prompt_builder import (
    build_image_prompt,
    build_items_messages,
    fallback_description,
    parse_item_texts,
    pick_style,
)
from citybingo.services.retry import BackoffPolicy


STYLES = [
    {"style": "Street photography", "bestFor": "food, markets", "keywords": "candid, gritty"},
    {"style": "Watercolor", "bestFor": "parks, bridges", "keywords": "soft, pastel"},
]


def _generator(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIGenerator(
        Settings(OPENAI_API_KEY="sk-test"),
        http_client=lambda: client,
        policy=BackoffPolicy(max_attempts=3, base_delay=0.0),
        **kwargs,
    )


class TestPromptBuilder:
    def test_style_chosen_by_keyword_overlap(self):
        assert pick_style("Sketch the bridges of Central Park", STYLES)["style"] == "Watercolor"

    def test_first_style_on_no_hits(self):
        assert pick_style("See a show", STYLES)["style"] == "Street photography"

    def test_no_styles(self):
        assert pick_style("anything", None) is None
        assert "best suits the subject" in build_image_prompt("anything", "New York")

    def test_description_truncated(self):
        prompt = build_image_prompt("Bagel", "New York", description="x" * 500)
        assert prompt.endswith("x" * 200 + "...")

    def test_fallback_description(self):
        assert "New York" in fallback_description("Eat a bagel", "New York")


class TestGenerateImage:
    def test_returns_url(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json={"data": [{"url": "https://img.test/a.png"}]})

        url = asyncio.run(_generator(handler).generate_image("Eat a bagel", {"city_name": "New York"}))
        assert url == "https://img.test/a.png"
        assert seen["auth"] == "Bearer sk-test"
        assert "New York" in seen["body"]["prompt"]

    def test_b64_payload_becomes_data_uri(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"b64_json": "aGVsbG8="}]})

        assert asyncio.run(_generator(handler).generate_image("x")) == "data:image/png;base64,aGVsbG8="

    def test_retries_rate_limit_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(429, json={"error": "slow down"})
            return httpx.Response(200, json={"data": [{"url": "https://img.test/b.png"}]})

        assert asyncio.run(_generator(handler).generate_image("x")) == "https://img.test/b.png"
        assert len(calls) == 3

    def test_exhausted_retries_raise_upstream_error(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(UpstreamGenerationError) as exc_info:
            asyncio.run(_generator(handler).generate_image("x"))
        assert "503" in exc_info.value.message

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"error": "bad prompt"})

        with pytest.raises(UpstreamGenerationError):
            asyncio.run(_generator(handler).generate_image("x"))
        assert len(calls) == 1

    def test_missing_api_key(self):
        generator = OpenAIGenerator(Settings(OPENAI_API_KEY=""))
        with pytest.raises(UpstreamGenerationError):
            asyncio.run(generator.generate_image("x"))


class TestGenerateDescription:
    def test_returns_content(self):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": " Great bagels. "}}]})

        assert asyncio.run(_generator(handler).generate_description("Eat a bagel", "New York")) == "Great bagels."

    def test_falls_back_on_failure(self):
        def handler(request):
            return httpx.Response(500)

        text = asyncio.run(_generator(handler).generate_description("Eat a bagel", "New York"))
        assert text == fallback_description("Eat a bagel", "New York")


class TestGenerateItems:
    def test_returns_item_texts(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            content = json.dumps({"items": [{"text": "Eat a bagel"}, {"text": " Ride the subway "}, {}]})
            return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})

        texts = asyncio.run(_generator(handler).generate_items("New York", theme="food"))
        assert texts == ["Eat a bagel", "Ride the subway"]
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert "Theme: food" in seen["body"]["messages"][1]["content"]

    def test_unparseable_reply_is_empty_result(self):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": "not json"}}]})

        with pytest.raises(EmptyResult):
            asyncio.run(_generator(handler).generate_items("New York"))

    def test_upstream_failure_raises(self):
        def handler(request):
            return httpx.Response(401, json={"error": "bad key"})

        with pytest.raises(UpstreamGenerationError):
            asyncio.run(_generator(handler).generate_items("New York"))

    def test_items_prompt(self):
        messages = build_items_messages("Paris", count=12)
        assert "12 things" in messages[1]["content"]
        assert "Theme" not in messages[1]["content"]

    def test_parse_accepts_plain_strings(self):
        assert parse_item_texts('{"items": ["See the Louvre", ""]}') == ["See the Louvre"]
        assert parse_item_texts('{"other": []}') == []
        assert parse_item_texts(None) == []


class TestExtractImageSource:
    def test_empty(self):
        assert extract_image_source({}) is None
        assert extract_image_source({"data": [{}]}) is None
