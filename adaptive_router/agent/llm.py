"""LiteLLM wrapper for model-agnostic LLM calls.

LiteLLM provides a unified interface for 100+ LLM providers. All calls go
through a LiteLLM proxy so catalog model names ("gemini-fast",
"claude-fast", ...) map to real deployments in proxy config, not here.

This module:
- Wraps litellm.acompletion() and litellm.aembedding()
- Retries transient failures briefly via tenacity before the fallback
  chain moves to the next model
- Normalizes errors to our domain exceptions
- Logs token usage for billing/monitoring
"""

from __future__ import annotations

from typing import Any

import litellm
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from adaptive_router.config import Settings, get_settings

log = structlog.get_logger(__name__)

# Types of errors worth retrying (transient network/rate-limit failures)
_RETRYABLE = (
    litellm.exceptions.RateLimitError,
    litellm.exceptions.ServiceUnavailableError,
    litellm.exceptions.Timeout,
    ConnectionError,
)


class LLMError(Exception):
    """Base exception for all LLM call failures."""


class LLMRateLimitError(LLMError):
    """Upstream LLM rate limit exceeded."""


class LLMUnavailableError(LLMError):
    """LLM service is unavailable."""


class LLMClient:
    """Thin wrapper around LiteLLM with retry logic and structured logging."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        litellm.api_base = self._settings.litellm_base_url
        litellm.api_key = self._settings.litellm_api_key.get_secret_value()

    def qualify(self, model: str) -> str:
        """Prefix a catalog model name with the proxy provider route."""
        if "/" in model:
            return model
        return f"{self._settings.litellm_model_prefix}{model}"

    async def complete(
        self,
        *,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        **kwargs: Any,
    ) -> litellm.ModelResponse:
        """Send a chat completion request via LiteLLM.

        Args:
            messages: List of role/content dicts (OpenAI format)
            model: Catalog model name or fully qualified LiteLLM model id
            temperature: Sampling temperature (0.0 = deterministic)
            max_tokens: Maximum output tokens
            **kwargs: Additional kwargs passed to litellm.acompletion()

        Raises:
            LLMRateLimitError: Upstream rate limit after retries
            LLMUnavailableError: Service unavailable after retries
            LLMError: Any other LLM failure
        """
        effective_model = self.qualify(model)

        log.debug(
            "llm.completion_request",
            model=effective_model,
            message_count=len(messages),
            max_tokens=max_tokens,
        )

        try:
            response: litellm.ModelResponse = await self._acompletion(
                model=effective_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            )
        except litellm.exceptions.RateLimitError as exc:
            raise LLMRateLimitError(f"Rate limit from upstream LLM: {exc}") from exc
        except litellm.exceptions.ServiceUnavailableError as exc:
            raise LLMUnavailableError(f"LLM service unavailable: {exc}") from exc
        except Exception as exc:
            raise LLMError(f"LLM completion failed: {exc}") from exc

        usage = getattr(response, "usage", None)
        if usage:
            log.info(
                "llm.completion_done",
                model=effective_model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )

        return response

    async def complete_text(
        self,
        *,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> str:
        """Run a completion and return only the assistant text."""
        response = await self.complete(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return self.extract_text(response)

    async def embed(
        self,
        texts: list[str],
        model: str | None = None,
    ) -> list[list[float]]:
        """Create embeddings for a list of texts.

        Returns:
            List of embedding vectors (one per input text)

        Raises:
            LLMError: If embedding fails
        """
        effective_model = model or self._settings.litellm_embedding_model

        if not texts:
            return []

        try:
            response = await self._aembedding(model=effective_model, input=texts)
        except Exception as exc:
            raise LLMError(f"Embedding failed: {exc}") from exc

        embeddings = [item["embedding"] for item in response.data]
        log.debug(
            "llm.embedding_done",
            model=effective_model,
            text_count=len(texts),
            dimensions=len(embeddings[0]) if embeddings else 0,
        )
        return embeddings

    def extract_text(self, response: litellm.ModelResponse) -> str:
        """Extract the assistant text content from a completion response."""
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""

    # ------------------------------------------------------------------
    # Retried transport calls
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _acompletion(self, **kwargs: Any) -> litellm.ModelResponse:
        return await litellm.acompletion(**kwargs)

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _aembedding(self, **kwargs: Any) -> Any:
        return await litellm.aembedding(**kwargs)
