"""
Thin adapter exposing the Anthropic Messages API as a completion function.

Anything with the shape `async (prompt, context) -> str` can drive
RecommendationService; this is the one used in production.
"""
import logging

import httpx

from .config import (
    AI_HTTP_TIMEOUT,
    AI_MAX_TOKENS,
    AI_MODEL,
    AI_TEMPERATURE,
    ANTHROPIC_API_URL,
    ANTHROPIC_VERSION,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are CineAI, a movie recommendation assistant. Use the user's stated mood, "
    "intent and preferences to suggest films that actually exist. "
    "Return ONLY valid JSON in the exact format requested. No markdown, no extra text."
)


class AIProviderError(Exception):
    """Raised when the AI provider returns no usable text."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AIProviderUnavailable(AIProviderError):
    """Transient provider failure (429, 5xx, transport error); safe to retry."""


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class AnthropicCompletion:
    def __init__(
        self,
        api_key: str,
        model: str = AI_MODEL,
        max_tokens: int = AI_MAX_TOKENS,
        temperature: float = AI_TEMPERATURE,
        api_url: str = ANTHROPIC_API_URL,
        client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.api_url = api_url
        self.client = client or httpx.AsyncClient(timeout=AI_HTTP_TIMEOUT)

    async def aclose(self):
        await self.client.aclose()

    async def __call__(self, prompt: str, context: dict | None = None) -> str:
        system = SYSTEM_PROMPT
        if context and context.get("system"):
            system = f"{system}\n\n{context['system']}"

        try:
            resp = await self.client.post(
                self.api_url,
                headers={
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": self.max_tokens,
                    "temperature": self.temperature,
                    "system": system,
                    "messages": [{"role": "user", "content": prompt}],
                },
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            error_cls = AIProviderUnavailable if _is_transient_status(status) else AIProviderError
            raise error_cls(f"AI provider returned HTTP {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            raise AIProviderUnavailable(f"AI provider request failed: {type(exc).__name__}: {exc}") from exc
        except ValueError as exc:
            raise AIProviderError(f"AI provider returned malformed JSON: {exc}") from exc

        text = next(
            (block.get("text", "") for block in payload.get("content", []) if block.get("type") == "text"),
            "",
        )
        if not text:
            raise AIProviderError("No response from AI")
        logger.debug(f"AI response: {len(text)} characters")
        return text
