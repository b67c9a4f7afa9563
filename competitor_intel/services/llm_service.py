"""
AI providers for the analysis step.

The pipeline depends only on ``AIProvider.analyze(prompt, context)``, which
returns the model's raw text. Parsing is deliberately left to ResultParser so
every provider's output goes through the same tolerant JSON extraction.

Adapters:
    - ClaudeProvider: Anthropic Messages API via the official async SDK
    - OllamaProvider: local models through Ollama's /api/generate endpoint

Transient failures (rate limits, 5xx, timeouts) are retried with exponential
backoff; anything left over is raised as UpstreamError.

Example:
    >>> provider = ClaudeProvider(settings)
    >>> response = await provider.analyze(prompt, {"entity_name": "Widget Pro"})
    >>> response.raw_text[:1]
    '{'
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import anthropic
import httpx
from anthropic import APIError, APIStatusError, APITimeoutError
from anthropic import RateLimitError as AnthropicRateLimitError
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from competitor_intel.config.settings import Settings, get_settings
from competitor_intel.utils.errors import ConfigurationError, RateLimitError, UpstreamError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

SYSTEM_PROMPT = """You are a senior e-commerce pricing analyst.
You compare a merchant's product against competitor offers found on the web.

CRITICAL RULES:
1. ONLY output valid JSON - no markdown, no explanation, no code blocks
2. Follow the exact structure requested in the instructions
3. Use null for missing values, never make up prices or URLs"""

# Per 1K tokens
TOKEN_COSTS = {
    "claude-sonnet-4-20250514": {"input": 0.003, "output": 0.015},
    "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
    "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class TokenUsage:
    """Token usage tracking for a single request."""
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    model: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def calculate_cost(self) -> float:
        """Calculate estimated cost based on token usage."""
        costs = TOKEN_COSTS.get(self.model)
        if costs:
            self.estimated_cost = (
                (self.input_tokens / 1000) * costs["input"]
                + (self.output_tokens / 1000) * costs["output"]
            )
        return self.estimated_cost


class AIResponse(BaseModel):
    """Raw model output plus bookkeeping."""
    raw_text: str
    model: str = ""
    provider: str = ""
    elapsed_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


def render_user_message(prompt: str, context: dict[str, Any]) -> str:
    """Instructions followed by the serialized analysis context."""
    return f"{prompt}\n\nData:\n{json.dumps(context, indent=2, default=str)}"


# =============================================================================
# Abstract AI Provider
# =============================================================================

class AIProvider(ABC):
    """Abstract base class for AI providers."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""

    @property
    def model_name(self) -> str:
        """Model identifier, used by PromptBuilder to pick a template."""
        return self.settings.ai_model

    @abstractmethod
    async def analyze(self, prompt: str, context: dict[str, Any]) -> AIResponse:
        """
        Send the prompt and context to the model.

        Raises:
            UpstreamError: On transport or API failures after retries.
        """

    async def close(self) -> None:
        """Release network resources."""

    async def __aenter__(self) -> "AIProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# =============================================================================
# Claude Provider
# =============================================================================

class ClaudeProvider(AIProvider):
    """
    Anthropic Claude adapter.

    Attributes:
        client: Anthropic async client
        token_usage_history: Usage of every successful request
        total_cost: Running total of estimated API costs
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
        max_retries: Optional[int] = None,
        backoff_base: float = 1.0,
    ):
        """
        Initialize the Claude provider.

        Args:
            settings: Application settings instance
            client: Pre-built Anthropic client (built from settings if omitted)
            max_retries: Attempts per request (defaults to MAX_RETRIES)
            backoff_base: Base delay in seconds for exponential backoff
        """
        super().__init__(settings)
        if client is None:
            if not self.settings.anthropic_api_key:
                raise ConfigurationError("ANTHROPIC_API_KEY is not configured")
            client = anthropic.AsyncAnthropic(
                api_key=self.settings.anthropic_api_key.get_secret_value(),
                timeout=float(self.settings.request_timeout_seconds),
                max_retries=0,
            )
        self.client = client
        self.max_retries = max_retries if max_retries is not None else self.settings.max_retries
        self.backoff_base = backoff_base

        self.token_usage_history: list[TokenUsage] = []
        self.total_cost: float = 0.0

    @property
    def name(self) -> str:
        return "claude"

    async def close(self) -> None:
        await self.client.close()
        logger.info(
            "ClaudeProvider closed",
            total_requests=len(self.token_usage_history),
            total_cost=f"${self.total_cost:.4f}",
        )

    async def analyze(self, prompt: str, context: dict[str, Any]) -> AIResponse:
        messages = [{"role": "user", "content": render_user_message(prompt, context)}]
        attempts = max(1, self.max_retries)

        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                start_time = time.time()
                response = await self.client.messages.create(
                    model=self.model_name,
                    max_tokens=self.settings.ai_max_tokens,
                    temperature=self.settings.ai_temperature,
                    system=SYSTEM_PROMPT,
                    messages=messages,
                )
                elapsed_ms = int((time.time() - start_time) * 1000)

                text = "".join(
                    block.text for block in response.content if getattr(block, "type", "text") == "text"
                )

                usage = TokenUsage(
                    input_tokens=response.usage.input_tokens,
                    output_tokens=response.usage.output_tokens,
                    model=self.model_name,
                )
                usage.calculate_cost()
                self.token_usage_history.append(usage)
                self.total_cost += usage.estimated_cost

                logger.info(
                    "Claude call successful",
                    attempt=attempt + 1,
                    elapsed_ms=elapsed_ms,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    cost=f"${usage.estimated_cost:.4f}",
                )

                return AIResponse(
                    raw_text=text,
                    model=self.model_name,
                    provider=self.name,
                    elapsed_ms=elapsed_ms,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                )

            except AnthropicRateLimitError as e:
                last_error = RateLimitError(f"Claude rate limit exceeded: {e}")
                wait_time = self._calculate_backoff(attempt, base=self.backoff_base * 30)
                logger.warning(
                    "Rate limit hit, backing off",
                    attempt=attempt + 1,
                    wait_seconds=wait_time,
                    error=str(e),
                )

            except APIStatusError as e:
                if e.status_code < 500:
                    # Client errors will not succeed on retry
                    logger.error("Claude API error", status_code=e.status_code, error=str(e))
                    raise UpstreamError(
                        f"Claude API error: {e}",
                        {"status_code": e.status_code},
                    ) from e
                last_error = e
                wait_time = self._calculate_backoff(attempt)
                logger.warning(
                    "Server error, retrying",
                    attempt=attempt + 1,
                    status_code=e.status_code,
                    wait_seconds=wait_time,
                )

            except (APITimeoutError, APIError, asyncio.TimeoutError) as e:
                last_error = e
                wait_time = self._calculate_backoff(attempt)
                logger.warning(
                    "Claude request failed, retrying",
                    attempt=attempt + 1,
                    wait_seconds=wait_time,
                    error=str(e),
                )

            if attempt < attempts - 1:
                await asyncio.sleep(wait_time)

        logger.error("Max retries exceeded", max_retries=attempts, last_error=str(last_error))
        if isinstance(last_error, RateLimitError):
            raise last_error
        raise UpstreamError(f"Claude failed after {attempts} attempts: {last_error}")

    def _calculate_backoff(self, attempt: int, base: Optional[float] = None) -> float:
        """Exponential backoff with jitter."""
        base = self.backoff_base if base is None else base
        if base <= 0:
            return 0.0
        return min(base * (2 ** attempt) + random.uniform(0, 1), 60.0)

    def get_usage_stats(self) -> dict[str, Any]:
        return {
            "total_requests": len(self.token_usage_history),
            "total_input_tokens": sum(u.input_tokens for u in self.token_usage_history),
            "total_output_tokens": sum(u.output_tokens for u in self.token_usage_history),
            "total_cost": round(self.total_cost, 4),
        }


# =============================================================================
# Ollama Provider
# =============================================================================

class OllamaProvider(AIProvider):
    """Local models served by Ollama. Usually small, hence the CoT prompt branch."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(settings)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.ollama_url,
            timeout=httpx.Timeout(float(self.settings.request_timeout_seconds), connect=10.0),
        )

    @property
    def name(self) -> str:
        return "ollama"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _generate(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post("/api/generate", json=payload)
        response.raise_for_status()
        return response.json()

    async def analyze(self, prompt: str, context: dict[str, Any]) -> AIResponse:
        payload = {
            "model": self.model_name,
            "prompt": render_user_message(prompt, context),
            "system": SYSTEM_PROMPT,
            "stream": False,
            "format": "json",
            "options": {"temperature": self.settings.ai_temperature},
        }

        start_time = time.time()
        try:
            data = await self._generate(payload)
        except httpx.HTTPStatusError as e:
            logger.error("Ollama request failed", status_code=e.response.status_code)
            raise UpstreamError(f"Ollama error: HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Ollama transport error", error=str(e))
            raise UpstreamError(f"Ollama error: {e}") from e
        except ValueError as e:
            raise UpstreamError("Ollama returned a non-JSON envelope") from e

        if not isinstance(data, dict) or "response" not in data:
            raise UpstreamError("Malformed Ollama response: missing 'response'")

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info("Ollama call successful", model=self.model_name, elapsed_ms=elapsed_ms)

        return AIResponse(
            raw_text=str(data["response"]),
            model=self.model_name,
            provider=self.name,
            elapsed_ms=elapsed_ms,
            input_tokens=int(data.get("prompt_eval_count") or 0),
            output_tokens=int(data.get("eval_count") or 0),
        )


# =============================================================================
# Factory
# =============================================================================

def create_ai_provider(settings: Optional[Settings] = None) -> AIProvider:
    """Instantiate the provider selected by ``AI_PROVIDER``."""
    settings = settings or get_settings()
    if settings.ai_provider == "ollama":
        return OllamaProvider(settings)
    return ClaudeProvider(settings)


__all__ = [
    "AIResponse",
    "AIProvider",
    "ClaudeProvider",
    "OllamaProvider",
    "TokenUsage",
    "SYSTEM_PROMPT",
    "create_ai_provider",
    "render_user_message",
]
