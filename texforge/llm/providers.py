"""HTTP clients for the hosted AI providers.

Every client exposes the same coroutine, ``complete(request)``, and raises
ProviderRateLimitedError on HTTP 429 and ProviderCallError on any other
failure. Clients never touch registry state.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from texforge.config import ProviderConfig
from texforge.core.errors import (
    ProviderCallError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
    is_rate_limit_message,
)
from texforge.llm.models import Completion, CompletionRequest

log = structlog.get_logger()


class LLMProvider(Protocol):
    name: str

    async def complete(self, request: CompletionRequest) -> Completion:
        ...


class HTTPProvider(ABC):
    """Shared request/response handling for JSON-over-HTTP providers."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: Optional[str],
        extra_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.extra_headers = dict(extra_headers or {})
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            **self.extra_headers,
        }

    @abstractmethod
    def _url(self, request: CompletionRequest) -> str:
        ...

    @abstractmethod
    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _parse(self, data: Any) -> tuple[str, Optional[int]]:
        """Return (text, tokens_used) from a decoded response body."""

    async def complete(self, request: CompletionRequest) -> Completion:
        if not self._api_key:
            raise ProviderUnavailableError(f"{self.name} API key missing", provider=self.name)

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                timeout=request.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    self._url(request),
                    headers=self._headers(),
                    json=self._payload(request),
                )
        except httpx.TimeoutException as e:
            raise ProviderCallError(
                f"{self.name} request timed out after {request.timeout_seconds}s",
                provider=self.name,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderCallError(
                f"{self.name} connection error: {e}", provider=self.name
            ) from e

        if response.status_code == 429:
            raise ProviderRateLimitedError(
                f"{self.name} rate limit (HTTP 429)", provider=self.name
            )

        if response.status_code >= 400:
            body = response.text[:500]
            if is_rate_limit_message(body):
                raise ProviderRateLimitedError(
                    f"{self.name} rate limit: {body}", provider=self.name
                )
            raise ProviderCallError(
                f"{self.name} HTTP {response.status_code}: {body}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            text, tokens_used = self._parse(response.json())
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderCallError(
                f"{self.name} returned an invalid JSON payload: {e}", provider=self.name
            ) from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        log.debug("provider_response",
                  provider=self.name,
                  model=request.model,
                  latency_ms=latency_ms,
                  tokens_used=tokens_used,
                  content_length=len(text))

        return Completion(
            text=text.strip(),
            provider=self.name,
            model=request.model,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
        )


class OpenAICompatibleProvider(HTTPProvider):
    """Chat Completions API (OpenAI, Groq, TogetherAI, OpenRouter)."""

    def _url(self, request: CompletionRequest) -> str:
        return f"{self.base_url}/chat/completions"

    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        return {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.prompt},
            ],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }

    def _parse(self, data: Any) -> tuple[str, Optional[int]]:
        content = data["choices"][0]["message"].get("content") or ""
        usage = data.get("usage") or {}
        total = usage.get("total_tokens")
        return content, int(total) if total else None


class AnthropicProvider(HTTPProvider):
    """Anthropic Messages API."""

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
            **self.extra_headers,
        }

    def _url(self, request: CompletionRequest) -> str:
        return f"{self.base_url}/messages"

    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        return {
            "model": request.model,
            "system": request.system,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }

    def _parse(self, data: Any) -> tuple[str, Optional[int]]:
        content = data["content"]
        text = "".join(
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )
        usage = data.get("usage") or {}
        if "input_tokens" in usage or "output_tokens" in usage:
            tokens = int(usage.get("input_tokens", 0) or 0) + int(usage.get("output_tokens", 0) or 0)
            return text, tokens
        return text, None


class HuggingFaceProvider(HTTPProvider):
    """HuggingFace text-generation inference API."""

    def _url(self, request: CompletionRequest) -> str:
        return f"{self.base_url}/{request.model}"

    def _payload(self, request: CompletionRequest) -> Dict[str, Any]:
        return {
            "inputs": (
                f"<|system|>\n{request.system}\n"
                f"<|user|>\n{request.prompt}\n"
                f"<|assistant|>"
            ),
            "parameters": {
                "temperature": request.temperature,
                "max_new_tokens": request.max_tokens,
                "return_full_text": False,
            },
        }

    def _parse(self, data: Any) -> tuple[str, Optional[int]]:
        # The inference API answers with either an object or a one-element list
        if isinstance(data, list):
            data = data[0]
        return data["generated_text"], None


PROVIDER_KINDS = {
    "openai": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
    "huggingface": HuggingFaceProvider,
}


def build_provider(
    name: str,
    config: ProviderConfig,
    api_key: Optional[str],
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> HTTPProvider:
    """Create the client for a configured provider."""
    provider_cls = PROVIDER_KINDS[config.kind]
    return provider_cls(
        name=name,
        base_url=config.base_url,
        api_key=api_key,
        extra_headers=config.extra_headers,
        transport=transport,
    )
