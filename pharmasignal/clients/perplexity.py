"""Client for the Perplexity chat completions API (OpenAI-compatible)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, OpenAIError, RateLimitError

from pharmasignal.config import settings
from pharmasignal.observability.metrics import metrics
from pharmasignal.services.research.errors import TransportError
from pharmasignal.services.research.escalation import RetrievalRequest, RetrievalResponse, TokenUsage

logger = logging.getLogger(__name__)


class PerplexityError(TransportError):
    """Base error for Perplexity client failures."""

    def __init__(self, message: str, code: str = "502_RETRIEVAL_UPSTREAM") -> None:
        super().__init__(message, code=code)


class PerplexityRateLimitError(PerplexityError):
    """Raised when Perplexity responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Perplexity") -> None:
        super().__init__(message, code="429_RATE_LIMIT")


class PerplexityTimeoutError(PerplexityError):
    """Raised when a Perplexity request exceeds its deadline."""

    def __init__(self, message: str = "Perplexity request timed out") -> None:
        super().__init__(message, code="504_RETRIEVAL_TIMEOUT")


class PerplexitySchemaError(PerplexityError):
    """Raised when the completion carries no message content."""

    def __init__(self, message: str = "Unexpected Perplexity response schema") -> None:
        super().__init__(message, code="502_RETRIEVAL_SCHEMA")


class PerplexityClient:
    """Thin wrapper around the OpenAI SDK pointed at Perplexity."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.Client | None = None,
        sdk_client: Any | None = None,
    ) -> None:
        if sdk_client is None and not api_key:
            raise ValueError("PERPLEXITY_API_KEY is required to create a PerplexityClient.")
        self._client = sdk_client or OpenAI(
            api_key=api_key,
            base_url=(base_url or settings.perplexity_base_url).rstrip("/"),
            timeout=timeout or settings.research_timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls) -> PerplexityClient:
        """Instantiate the client using PERPLEXITY_API_KEY from settings."""
        return cls(settings.perplexity_api_key or "")

    def retrieve(self, request: RetrievalRequest) -> RetrievalResponse:
        """Issue one chat completion; never retries."""
        tags = {"model": request.model, "policy": request.policy}
        with metrics.timer("retrieval.latency_ms", tags=tags):
            completion = self._create(request, tags)

        response = _to_retrieval_response(completion)
        logger.info(
            "retrieval.completed",
            extra={
                "model": response.model or request.model,
                "policy": request.policy,
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "citations": len(response.citations),
            },
        )
        return response

    def _create(self, request: RetrievalRequest, tags: dict[str, str]) -> Any:
        try:
            return self._client.chat.completions.create(
                model=request.model,
                messages=request.messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                timeout=request.timeout_seconds,
                extra_body={
                    "response_format": request.response_format,
                    "reasoning_effort": request.reasoning_effort,
                    "search_domain_filter": request.search_domain_filter,
                    "web_search_options": {"search_context_size": request.search_context_size},
                },
            )
        except APITimeoutError as exc:
            metrics.increment("retrieval.errors", tags={**tags, "code": "504_RETRIEVAL_TIMEOUT"})
            raise PerplexityTimeoutError() from exc
        except RateLimitError as exc:
            metrics.increment("retrieval.errors", tags={**tags, "code": "429_RATE_LIMIT"})
            raise PerplexityRateLimitError() from exc
        except APIStatusError as exc:
            metrics.increment("retrieval.errors", tags={**tags, "code": "502_RETRIEVAL_UPSTREAM"})
            detail = getattr(exc, "message", str(exc))
            raise PerplexityError(f"Perplexity request failed: {exc.status_code} - {detail}") from exc
        except (APIConnectionError, OpenAIError) as exc:
            metrics.increment("retrieval.errors", tags={**tags, "code": "502_RETRIEVAL_UPSTREAM"})
            raise PerplexityError(f"HTTP error calling Perplexity: {exc}") from exc


def _to_retrieval_response(completion: Any) -> RetrievalResponse:
    choices = getattr(completion, "choices", None) or []
    if not choices:
        raise PerplexitySchemaError("Perplexity response did not include any choices.")
    content = getattr(choices[0].message, "content", None)
    if isinstance(content, list):
        content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
    if not isinstance(content, str) or not content.strip():
        raise PerplexitySchemaError("Perplexity response did not include text output.")

    usage = getattr(completion, "usage", None)
    citations = getattr(completion, "citations", None)
    if citations is None:
        extra = getattr(completion, "model_extra", None) or {}
        citations = extra.get("citations") or []
    return RetrievalResponse(
        content=content.strip(),
        usage=TokenUsage(
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        ),
        citations=[str(url) for url in citations],
        model=getattr(completion, "model", None),
    )
