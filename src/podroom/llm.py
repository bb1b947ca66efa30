"""
Text Generation Clients

Thin async clients for Ollama and OpenAI-compatible chat endpoints
(OpenAI, DashScope compatible mode). Every call has a timeout, failures
surface as UpstreamError, and retries follow an explicit RetryPolicy.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings, settings
from .errors import ConfigurationError, UpstreamError
from .stats import UsageStats

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """How many times an upstream call is attempted. 1 means no retry."""

    max_attempts: int = 1
    wait_seconds: float = 2.0
    max_wait_seconds: float = 30.0

    @classmethod
    def from_settings(cls, config: Settings = None) -> "RetryPolicy":
        config = config or settings
        return cls(
            max_attempts=max(1, config.upstream_max_attempts),
            wait_seconds=config.upstream_retry_wait,
            max_wait_seconds=config.upstream_retry_max_wait,
        )

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Await fn, retrying on UpstreamError up to max_attempts."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=self.max_wait_seconds),
            retry=retry_if_exception_type(UpstreamError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying {getattr(fn, '__name__', 'call')} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                    )
                return await fn(*args, **kwargs)


class LLMClient(ABC):
    """Text generation collaborator."""

    provider = "base"

    def __init__(
        self,
        model: str,
        timeout: float = None,
        retry: Optional[RetryPolicy] = None,
        stats: Optional[UsageStats] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: float = None,
    ):
        self.model = model
        self.timeout = timeout or settings.llm_timeout_seconds
        self.temperature = settings.llm_temperature if temperature is None else temperature
        self.retry = retry or RetryPolicy()
        self.stats = stats or UsageStats()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    async def _generate(
        self,
        prompt: str,
        system: Optional[str],
        max_tokens: Optional[int],
        temperature: float,
    ) -> str:
        """Make one request and return the generated text."""

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Generate text for a prompt.

        Raises:
            UpstreamError: On HTTP errors, timeouts or empty output
        """
        temperature = self.temperature if temperature is None else temperature
        try:
            text = await self.retry.call(self._request, prompt, system, max_tokens, temperature)
        except UpstreamError:
            self.stats.incr("llm_failures")
            raise
        self.stats.record_llm(prompt, text)
        return text

    async def _request(self, prompt, system, max_tokens, temperature) -> str:
        try:
            text = await self._generate(prompt, system, max_tokens, temperature)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.provider} request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"{self.provider} returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.provider} request failed: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise UpstreamError(f"{self.provider} returned an unexpected payload: {e}") from e

        if not text or not text.strip():
            raise UpstreamError(f"{self.provider} returned an empty response")
        return text.strip()


class OllamaClient(LLMClient):
    """Ollama /api/generate client."""

    provider = "ollama"

    def __init__(self, base_url: str = None, model: str = None, **kwargs):
        super().__init__(model=model or settings.ollama_model, **kwargs)
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")

    async def _generate(self, prompt, system, max_tokens, temperature) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if system:
            payload["system"] = system
        if max_tokens:
            payload["options"]["num_predict"] = max_tokens

        async with self._client() as client:
            response = await client.post(f"{self.base_url}/api/generate", json=payload)
            response.raise_for_status()
            return response.json()["response"]


class OpenAIClient(LLMClient):
    """OpenAI-compatible /chat/completions client."""

    provider = "openai"

    def __init__(self, api_key: str = None, base_url: str = None, model: str = None, **kwargs):
        super().__init__(model=model or settings.openai_model, **kwargs)
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        if not self.api_key:
            raise ConfigurationError("PODROOM_OPENAI_API_KEY is required for the openai provider")
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")

    async def _generate(self, prompt, system, max_tokens, temperature) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens:
            payload["max_tokens"] = max_tokens

        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            return response.json()["choices"][0]["message"]["content"]


def create_llm_client(config: Settings = None, stats: Optional[UsageStats] = None) -> LLMClient:
    """Build the configured text generation client."""
    config = config or settings
    retry = RetryPolicy.from_settings(config)
    if config.llm_provider == "openai":
        return OpenAIClient(
            api_key=config.openai_api_key,
            base_url=config.openai_base_url,
            model=config.openai_model,
            timeout=config.llm_timeout_seconds,
            retry=retry,
            temperature=config.llm_temperature,
            stats=stats,
        )
    if config.llm_provider == "ollama":
        return OllamaClient(
            base_url=config.ollama_base_url,
            model=config.ollama_model,
            timeout=config.llm_timeout_seconds,
            retry=retry,
            temperature=config.llm_temperature,
            stats=stats,
        )
    raise ConfigurationError(f"Unknown LLM provider: {config.llm_provider}")
