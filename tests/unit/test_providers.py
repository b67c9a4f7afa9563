import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from competitor_intel.services.llm_service import (
    SYSTEM_PROMPT,
    ClaudeProvider,
    OllamaProvider,
    TokenUsage,
    create_ai_provider,
    render_user_message,
)
from competitor_intel.services.search_service import (
    BraveProvider,
    TavilyProvider,
    create_search_provider,
)
from competitor_intel.utils.errors import ConfigurationError, RateLimitError, UpstreamError


def http_error(status_code, method="POST", url="https://api.example.com"):
    request = httpx.Request(method, url)
    response = httpx.Response(status_code, text="upstream said no", request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.fixture
def mock_httpx_client():
    client = AsyncMock(spec=httpx.AsyncClient)
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = 200
    mock_response.json.return_value = {}
    client.get.return_value = mock_response
    client.post.return_value = mock_response
    return client


# =============================================================================
# Search Providers
# =============================================================================

@pytest.mark.asyncio
async def test_tavily_search(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.json.return_value = {
        "results": [
            {"url": "https://a.example", "title": "A", "content": "Widget $70", "score": 0.9},
            {"url": "https://b.example", "title": "B", "content": "Widget $80", "score": 0.7},
        ]
    }

    results = await provider.search("Widget Pro competitors", limit=5)

    assert results.provider == "tavily"
    assert [h.url for h in results.hits] == ["https://a.example", "https://b.example"]
    assert results.hits[0].score == 0.9

    payload = mock_httpx_client.post.call_args.kwargs["json"]
    assert payload["query"] == "Widget Pro competitors"
    assert payload["max_results"] == 5
    assert payload["api_key"] == "tvly-test-key"


@pytest.mark.asyncio
async def test_tavily_empty_results(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.json.return_value = {"results": []}

    results = await provider.search("nothing")
    assert results.hits == []
    assert results.as_dicts() == []


@pytest.mark.asyncio
async def test_tavily_malformed_envelope(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.json.return_value = {"answer": "no results key"}

    with pytest.raises(UpstreamError, match="missing 'results'"):
        await provider.search("Widget")


@pytest.mark.asyncio
async def test_tavily_non_json(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.json.side_effect = json.JSONDecodeError("bad", "<html>", 0)

    with pytest.raises(UpstreamError, match="non-JSON"):
        await provider.search("Widget")


@pytest.mark.asyncio
async def test_tavily_rate_limited(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.raise_for_status.side_effect = http_error(429)

    with pytest.raises(RateLimitError, match="rate limit"):
        await provider.search("Widget")


@pytest.mark.asyncio
async def test_tavily_server_error(settings, mock_httpx_client):
    provider = TavilyProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.post.return_value.raise_for_status.side_effect = http_error(500)

    with pytest.raises(UpstreamError, match="HTTP 500") as exc_info:
        await provider.search("Widget")
    assert not isinstance(exc_info.value, RateLimitError)


@pytest.mark.asyncio
async def test_search_requires_api_key(settings, mock_httpx_client):
    unconfigured = settings.model_copy(update={"tavily_api_key": None})
    provider = TavilyProvider(settings=unconfigured, client=mock_httpx_client)

    with pytest.raises(ConfigurationError):
        await provider.search("Widget")
    mock_httpx_client.post.assert_not_called()


@pytest.mark.asyncio
async def test_brave_search(settings, mock_httpx_client):
    provider = BraveProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.get.return_value.json.return_value = {
        "web": {
            "results": [
                {"url": "https://a.example", "title": "A", "description": "Widget for $70"},
            ]
        }
    }

    results = await provider.search("Widget", limit=3)

    assert results.provider == "brave"
    assert results.hits[0].snippet == "Widget for $70"
    assert results.hits[0].content is None
    headers = mock_httpx_client.get.call_args.kwargs["headers"]
    assert headers["X-Subscription-Token"] == "brave-test-key"


@pytest.mark.asyncio
async def test_brave_null_fields(settings, mock_httpx_client):
    provider = BraveProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.get.return_value.json.return_value = {
        "web": {"results": [{"url": None, "title": None, "description": "Widget for $70"}]}
    }

    results = await provider.search("Widget")

    assert results.hits[0].url == ""
    assert results.hits[0].title == ""


@pytest.mark.asyncio
async def test_brave_without_web_block(settings, mock_httpx_client):
    provider = BraveProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.get.return_value.json.return_value = {"type": "search"}

    results = await provider.search("Widget")
    assert results.hits == []


@pytest.mark.asyncio
async def test_search_respects_limit(settings, mock_httpx_client):
    provider = BraveProvider(settings=settings, client=mock_httpx_client)
    mock_httpx_client.get.return_value.json.return_value = {
        "web": {"results": [{"url": f"https://{i}.example", "title": str(i)} for i in range(10)]}
    }

    results = await provider.search("Widget", limit=4)
    assert len(results.hits) == 4


@pytest.mark.asyncio
async def test_search_provider_context_manager_keeps_injected_client(settings, mock_httpx_client):
    async with TavilyProvider(settings=settings, client=mock_httpx_client) as provider:
        assert provider.name == "tavily"
    mock_httpx_client.aclose.assert_not_called()


def test_create_search_provider(settings):
    assert isinstance(create_search_provider(settings), TavilyProvider)

    brave = settings.model_copy(update={"search_provider": "brave"})
    assert isinstance(create_search_provider(brave), BraveProvider)

    unconfigured = settings.model_copy(update={"tavily_api_key": None})
    with pytest.raises(ConfigurationError):
        create_search_provider(unconfigured)


# =============================================================================
# AI Providers
# =============================================================================

def claude_message(text='{"competitors": []}', input_tokens=1000, output_tokens=500):
    message = MagicMock()
    message.content = [MagicMock(type="text", text=text)]
    message.usage.input_tokens = input_tokens
    message.usage.output_tokens = output_tokens
    return message


def anthropic_status_error(cls, status_code):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return cls("error", response=httpx.Response(status_code, request=request), body=None)


@pytest.fixture
def mock_anthropic_client():
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=claude_message())
    client.close = AsyncMock()
    return client


def test_render_user_message():
    message = render_user_message("Analyze this.", {"entity_name": "Widget Pro", "entity_price": "100"})
    assert message.startswith("Analyze this.\n\nData:\n")
    assert json.loads(message.split("Data:\n", 1)[1]) == {"entity_name": "Widget Pro", "entity_price": "100"}


def test_token_usage_cost():
    usage = TokenUsage(input_tokens=1000, output_tokens=1000, model="claude-sonnet-4-20250514")
    assert usage.total_tokens == 2000
    assert usage.calculate_cost() == pytest.approx(0.018)
    assert TokenUsage(input_tokens=1000, model="unknown").calculate_cost() == 0.0


@pytest.mark.asyncio
async def test_claude_analyze(settings, mock_anthropic_client):
    provider = ClaudeProvider(settings, client=mock_anthropic_client, backoff_base=0)

    response = await provider.analyze("prompt", {"entity_name": "Widget Pro"})

    assert response.raw_text == '{"competitors": []}'
    assert response.provider == "claude"
    assert response.input_tokens == 1000
    kwargs = mock_anthropic_client.messages.create.call_args.kwargs
    assert kwargs["system"] == SYSTEM_PROMPT
    assert kwargs["model"] == settings.ai_model
    assert "Widget Pro" in kwargs["messages"][0]["content"]
    assert provider.get_usage_stats()["total_requests"] == 1


@pytest.mark.asyncio
async def test_claude_retries_server_errors(settings, mock_anthropic_client):
    mock_anthropic_client.messages.create.side_effect = [
        anthropic_status_error(anthropic.InternalServerError, 500),
        claude_message(text='{"strategy": {}}'),
    ]
    provider = ClaudeProvider(settings, client=mock_anthropic_client, backoff_base=0)

    response = await provider.analyze("prompt", {})

    assert response.raw_text == '{"strategy": {}}'
    assert mock_anthropic_client.messages.create.call_count == 2


@pytest.mark.asyncio
async def test_claude_client_error_not_retried(settings, mock_anthropic_client):
    mock_anthropic_client.messages.create.side_effect = anthropic_status_error(anthropic.BadRequestError, 400)
    provider = ClaudeProvider(settings, client=mock_anthropic_client, backoff_base=0)

    with pytest.raises(UpstreamError) as exc_info:
        await provider.analyze("prompt", {})

    assert exc_info.value.details["status_code"] == 400
    assert mock_anthropic_client.messages.create.call_count == 1


@pytest.mark.asyncio
async def test_claude_rate_limit_exhausted(settings, mock_anthropic_client):
    mock_anthropic_client.messages.create.side_effect = anthropic_status_error(anthropic.RateLimitError, 429)
    provider = ClaudeProvider(settings, client=mock_anthropic_client, max_retries=2, backoff_base=0)

    with pytest.raises(RateLimitError):
        await provider.analyze("prompt", {})
    assert mock_anthropic_client.messages.create.call_count == 2


@pytest.mark.asyncio
async def test_claude_gives_up_after_max_retries(settings, mock_anthropic_client):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    mock_anthropic_client.messages.create.side_effect = anthropic.APITimeoutError(request=request)
    provider = ClaudeProvider(settings, client=mock_anthropic_client, max_retries=3, backoff_base=0)

    with pytest.raises(UpstreamError, match="after 3 attempts"):
        await provider.analyze("prompt", {})
    assert mock_anthropic_client.messages.create.call_count == 3


def test_claude_requires_key(settings):
    with pytest.raises(ConfigurationError):
        ClaudeProvider(settings.model_copy(update={"anthropic_api_key": None}))


@pytest.mark.asyncio
async def test_claude_close(settings, mock_anthropic_client):
    async with ClaudeProvider(settings, client=mock_anthropic_client) as provider:
        assert provider.name == "claude"
    mock_anthropic_client.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_ollama_analyze(settings, mock_httpx_client):
    mock_httpx_client.post.return_value.json.return_value = {
        "response": '{"competitors": []}',
        "prompt_eval_count": 120,
        "eval_count": 40,
    }
    provider = OllamaProvider(settings, client=mock_httpx_client)

    response = await provider.analyze("prompt", {"entity_name": "Widget Pro"})

    assert response.raw_text == '{"competitors": []}'
    assert response.output_tokens == 40
    payload = mock_httpx_client.post.call_args.kwargs["json"]
    assert payload["format"] == "json"
    assert payload["stream"] is False


@pytest.mark.asyncio
async def test_ollama_missing_response_key(settings, mock_httpx_client):
    mock_httpx_client.post.return_value.json.return_value = {"error": "model not found"}
    provider = OllamaProvider(settings, client=mock_httpx_client)

    with pytest.raises(UpstreamError, match="missing 'response'"):
        await provider.analyze("prompt", {})


@pytest.mark.asyncio
async def test_ollama_http_error(settings, mock_httpx_client):
    mock_httpx_client.post.return_value.raise_for_status.side_effect = http_error(404)
    provider = OllamaProvider(settings, client=mock_httpx_client)

    with pytest.raises(UpstreamError, match="HTTP 404"):
        await provider.analyze("prompt", {})


def test_create_ai_provider(settings):
    assert isinstance(create_ai_provider(settings), ClaudeProvider)

    ollama = settings.model_copy(update={"ai_provider": "ollama", "ai_model": "gemma-2b"})
    provider = create_ai_provider(ollama)
    assert isinstance(provider, OllamaProvider)
    assert provider.model_name == "gemma-2b"
