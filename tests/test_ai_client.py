import json

import httpx
import pytest

from cineai_rec.ai_client import AIProviderError, AIProviderUnavailable, AnthropicCompletion


def _completion(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicCompletion("test-key", client=client, **kwargs)


def test_requires_api_key():
    with pytest.raises(ValueError):
        AnthropicCompletion("")


@pytest.mark.asyncio
async def test_posts_prompt_and_returns_first_text_block():
    seen = {}

    def handler(request):
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": [
            {"type": "tool_use", "id": "x"},
            {"type": "text", "text": '{"recommendations": []}'},
        ]})

    complete = _completion(handler, model="test-model")
    text = await complete("Recommend something", {"system": "User prefers subtitles."})
    await complete.aclose()

    assert text == '{"recommendations": []}'
    assert seen["headers"]["x-api-key"] == "test-key"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["messages"] == [{"role": "user", "content": "Recommend something"}]
    assert seen["body"]["system"].endswith("User prefers subtitles.")


@pytest.mark.asyncio
async def test_empty_content_raises():
    complete = _completion(lambda request: httpx.Response(200, json={"content": []}))

    with pytest.raises(AIProviderError, match="No response from AI"):
        await complete("prompt")


@pytest.mark.asyncio
async def test_http_errors_are_wrapped():
    complete = _completion(lambda request: httpx.Response(529, json={"error": "overloaded"}))

    with pytest.raises(AIProviderError, match="HTTP 529"):
        await complete("prompt")


@pytest.mark.asyncio
async def test_malformed_json_is_wrapped():
    complete = _completion(lambda request: httpx.Response(200, content=b"<html>"))

    with pytest.raises(AIProviderError, match="malformed JSON"):
        await complete("prompt")


@pytest.mark.asyncio
@pytest.mark.parametrize("status, transient", [(429, True), (503, True), (400, False), (401, False)])
async def test_status_errors_record_whether_retry_is_safe(status, transient):
    complete = _completion(lambda request: httpx.Response(status, json={"error": "nope"}))

    with pytest.raises(AIProviderError) as excinfo:
        await complete("prompt")

    assert excinfo.value.status_code == status
    assert isinstance(excinfo.value, AIProviderUnavailable) is transient


@pytest.mark.asyncio
async def test_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    complete = _completion(handler)

    with pytest.raises(AIProviderUnavailable, match="ConnectError"):
        await complete("prompt")
