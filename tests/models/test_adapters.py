import json

import httpx
import pytest

from models.adapters.gemini import GeminiAdapter, GeminiConfig
from models.adapters.openrouter import OpenRouterAdapter, OpenRouterConfig
from models.errors import ConfigError, GenerationErrorKind, ParseError, ProviderError
from models.schemas import GenerationRequest

SCHEMA = {
    "type": "object",
    "properties": {"action": {"type": "string", "enum": ["BUY", "HOLD"]}},
    "required": ["action"],
}


def _request(**overrides):
    return GenerationRequest(prompt="Decide.", schema=SCHEMA, label="Analyst-jim", **overrides)


def _gemini(handler):
    return GeminiAdapter(GeminiConfig(api_key="g-key"), transport=httpx.MockTransport(handler))


def _openrouter(handler, **config):
    return OpenRouterAdapter(
        OpenRouterConfig(api_key="or-key", **config), transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_gemini_sends_schema_and_returns_json_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {"parts": [{"text": "thinking", "thought": True}, {"text": '{"action": "HOLD"}'}]},
                        "finishReason": "STOP",
                    }
                ]
            },
        )

    adapter = _gemini(handler)
    result = await adapter.generate(_request(temperature=0.2))
    await adapter.aclose()

    assert seen["url"].endswith("/models/gemini-2.5-flash:generateContent")
    assert seen["key"] == "g-key"
    generation = seen["body"]["generationConfig"]
    assert generation["responseMimeType"] == "application/json"
    assert generation["responseSchema"]["type"] == "OBJECT"
    assert generation["temperature"] == 0.2
    assert result.text == '{"action": "HOLD"}'
    assert result.provider == "gemini"
    assert result.finish_reason == "STOP"
    assert result.request_id.startswith("req_")


@pytest.mark.asyncio
async def test_gemini_rate_limit_is_classified():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "7"}, text="Resource exhausted")

    adapter = _gemini(handler)
    with pytest.raises(ProviderError) as excinfo:
        await adapter.generate(_request())
    assert excinfo.value.is_rate_limit
    assert excinfo.value.retry_after == 7.0
    assert excinfo.value.provider == "gemini"


@pytest.mark.asyncio
async def test_gemini_empty_text_is_a_parse_error(caplog):
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": []}, "finishReason": "MAX_TOKENS"}]})

    adapter = _gemini(handler)
    with pytest.raises(ParseError):
        await adapter.generate(_request())
    assert "MAX_TOKENS" in caplog.text


@pytest.mark.asyncio
async def test_openrouter_recovers_fenced_json_and_sends_attribution():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        content = '<think>hmm</think>\n```json\n{"action": "BUY"}\n```'
        return httpx.Response(
            200, json={"choices": [{"message": {"content": content}, "finish_reason": "stop"}]}
        )

    adapter = _openrouter(handler)
    result = await adapter.generate(_request())

    assert result.text == '{"action": "BUY"}'
    assert seen["headers"]["authorization"] == "Bearer or-key"
    assert seen["headers"]["x-title"] == "nof1 decision engine"
    body = seen["body"]
    assert body["provider"] == {"data_collection": "allow", "allow_fallbacks": True}
    assert body["response_format"]["type"] == "json_schema"
    assert body["response_format"]["json_schema"]["name"] == "analyst_jim"
    assert body["response_format"]["json_schema"]["schema"]["additionalProperties"] is False


@pytest.mark.asyncio
async def test_openrouter_retries_once_without_response_format():
    bodies = []

    def handler(request):
        body = json.loads(request.content)
        bodies.append(body)
        if "response_format" in body:
            return httpx.Response(400, json={"error": {"message": "response_format is not supported"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"action": "HOLD"}'}}]})

    adapter = _openrouter(handler)
    result = await adapter.generate(_request())
    assert len(bodies) == 2
    assert "response_format" not in bodies[1]
    assert result.text == '{"action": "HOLD"}'


@pytest.mark.asyncio
async def test_openrouter_prefers_parsed_message():
    def handler(request):
        return httpx.Response(
            200,
            json={"choices": [{"message": {"parsed": {"action": "BUY"}, "content": "ignored"}, "finish_reason": "stop"}]},
        )

    result = await _openrouter(handler, structured_outputs=False).generate(_request())
    assert json.loads(result.text) == {"action": "BUY"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, body, kind",
    [
        (404, {"error": {"message": "No endpoints found for model x"}}, GenerationErrorKind.NO_ENDPOINTS),
        (429, {"error": {"message": "slow down"}}, GenerationErrorKind.RATE_LIMIT),
        (401, {"error": {"message": "bad key"}}, GenerationErrorKind.AUTH),
        (500, {"error": {"message": "oops"}}, GenerationErrorKind.UPSTREAM),
    ],
)
async def test_openrouter_error_kinds(status, body, kind):
    def handler(request):
        return httpx.Response(status, json=body)

    with pytest.raises(ProviderError) as excinfo:
        await _openrouter(handler).generate(_request())
    assert excinfo.value.kind is kind


@pytest.mark.asyncio
async def test_transport_failure_is_classified():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError) as excinfo:
        await _openrouter(handler).generate(_request())
    assert excinfo.value.kind is GenerationErrorKind.TRANSPORT


def test_configs_validate_at_construction():
    with pytest.raises(ConfigError):
        GeminiConfig(api_key="")
    with pytest.raises(ConfigError):
        GeminiConfig(api_key="k", temperature=3.0)
    with pytest.raises(ConfigError):
        OpenRouterConfig(api_key="k", max_output_tokens=0)
    with pytest.raises(ConfigError):
        OpenRouterConfig(api_key="k", data_collection="maybe")
