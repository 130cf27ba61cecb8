"""LiteLLM client wrapper with retry, timeout, and API key validation.

All embedding, completion and rerank calls route through this module.
LiteLLM's built-in retry is used (``num_retries``); every call carries a
``timeout``. Connection, timeout and provider failures surface as
``ModelUnavailable`` so callers can degrade (queries) or defer (indexing)
instead of crashing.
"""

from __future__ import annotations

import logging
import os
from typing import Protocol

import litellm

from obsidx.errors import ModelUnavailable

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

# Errors meaning "the backend cannot answer right now" (after litellm retries).
_UNAVAILABLE_ERRORS: tuple[type[Exception], ...] = (
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.RateLimitError,
    litellm.AuthenticationError,
    litellm.NotFoundError,
    litellm.BadRequestError,
    litellm.APIError,
)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "jina_ai": "JINA_AI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
    "infinity": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required (e.g. ollama) or provider unknown

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


class ModelProvider(Protocol):
    """What the embedder needs from a model backend.

    Every method raises ``ModelUnavailable`` when the backend cannot answer.
    """

    def embed(self, model: str, texts: list[str]) -> list[list[float]]: ...

    def complete(self, model: str, prompt: str, max_tokens: int = 256) -> str: ...

    def rerank(self, model: str, query: str, documents: list[str]) -> list[float]: ...


class LiteLLMProvider:
    """``ModelProvider`` backed by litellm (any provider litellm routes to)."""

    def __init__(self, timeout: float = 30.0, num_retries: int = 2) -> None:
        self.timeout = timeout
        self.num_retries = num_retries

    def embed(self, model: str, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in one request. Returns vectors in input order."""
        _require_key("embedding", model)
        try:
            response = litellm.embedding(
                model=model,
                input=texts,
                timeout=self.timeout,
                num_retries=self.num_retries,
            )
        except _UNAVAILABLE_ERRORS as exc:
            raise _unavailable("embedding", model, exc) from exc
        data = response.data
        if len(data) != len(texts):
            raise ModelUnavailable(
                "embedding", model, f"expected {len(texts)} vectors, got {len(data)}"
            )
        return [list(d["embedding"]) for d in data]

    def complete(self, model: str, prompt: str, max_tokens: int = 256) -> str:
        """Single-turn completion (temperature 0). Returns the content string."""
        _require_key("expansion", model)
        try:
            response = litellm.completion(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=0.0,
                timeout=self.timeout,
                num_retries=self.num_retries,
            )
        except _UNAVAILABLE_ERRORS as exc:
            raise _unavailable("expansion", model, exc) from exc
        return response.choices[0].message.content or ""

    def rerank(self, model: str, query: str, documents: list[str]) -> list[float]:
        """Cross-encoder relevance of each document to *query*, in input order."""
        if not documents:
            return []
        _require_key("rerank", model)
        try:
            response = litellm.rerank(
                model=model,
                query=query,
                documents=documents,
                top_n=len(documents),
                timeout=self.timeout,
                num_retries=self.num_retries,
            )
        except _UNAVAILABLE_ERRORS as exc:
            raise _unavailable("rerank", model, exc) from exc
        scores = [0.0] * len(documents)
        for item in response.results:
            scores[item["index"]] = float(item["relevance_score"])
        return scores


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)


def _require_key(kind: str, model: str) -> None:
    try:
        validate_api_key(model)
    except EnvironmentError as exc:
        raise ModelUnavailable(kind, model, str(exc)) from exc


def _unavailable(kind: str, model: str, exc: Exception) -> ModelUnavailable:
    logger.debug("%s call to %s failed: %s", kind, model, exc)
    return ModelUnavailable(kind, model, type(exc).__name__)
