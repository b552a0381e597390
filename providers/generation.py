"""
Text generation providers.

Ollama (local) and OpenAI (remote) speak HTTP through httpx; Anthropic goes
through the official SDK. All three share request validation, retries and
statistics from GenerationProvider.
"""

import json
import time
from abc import abstractmethod
from typing import Any, Dict

import httpx
from anthropic import AsyncAnthropic

import config
from providers.base import (
    BaseProvider,
    ProviderConfigurationError,
    ProviderError,
    ProviderValidationError,
)
from providers.models import (
    FinishReason,
    GenerationRequest,
    GenerationResult,
    ModelInfo,
    ProviderConfig,
    TokenUsage,
)
from utils.logger import setup_logger
from utils.tokens import get_token_counter

logger = setup_logger(__name__)


def with_schema(prompt: str, schema: Dict[str, Any]) -> str:
    """Append JSON-only instructions and the schema to a prompt."""
    return (
        f"{prompt}\n\nRespond with a single JSON object only, matching this schema:\n"
        f"{json.dumps(schema, indent=2)}"
    )


class GenerationProvider(BaseProvider):
    """Uniform interface over text generation backends."""

    def __init__(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        provider_config: ProviderConfig
    ):
        super().__init__(model, provider_config)
        self.max_tokens = max_tokens
        self.temperature = temperature

    def validate_request(self, request: GenerationRequest) -> None:
        if not request.prompt or not request.prompt.strip():
            raise ProviderValidationError("Prompt cannot be empty")
        if request.max_tokens is not None and not 1 <= request.max_tokens <= self.max_tokens:
            raise ProviderValidationError(f"max_tokens must be between 1 and {self.max_tokens}")
        if request.temperature is not None and not 0 <= request.temperature <= 2:
            raise ProviderValidationError("temperature must be between 0 and 2")

    def cost_for(self, usage: TokenUsage) -> float:
        return 0.0

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one completion.

        Args:
            request: Prompt and decoding parameters

        Returns:
            GenerationResult with text, finish reason and token usage

        Raises:
            ProviderValidationError: Request failed validation (not retried)
            Exception: The backend's last error once retries are exhausted
        """
        self.validate_request(request)
        started = time.perf_counter()
        try:
            result = await self._with_retry(self._complete, request)
        except Exception as e:
            self._record(self._elapsed(started), failed=True)
            logger.error(f"{self.provider_name} generation failed: {e}")
            raise

        elapsed = self._elapsed(started)
        self._record(elapsed, tokens=result.usage.total_tokens, cost=self.cost_for(result.usage))
        return result.model_copy(update={"processing_time": elapsed})

    async def generate_structured(self, request: GenerationRequest, schema: Dict[str, Any]) -> GenerationResult:
        """Completion constrained to JSON matching `schema`."""
        return await self.generate(request.model_copy(update={"json_schema": schema}))

    def estimate_tokens(self, text: str) -> int:
        return get_token_counter().estimate(text)

    def truncate_prompt(self, prompt: str, max_tokens: int) -> str:
        """Cut a prompt to roughly max_tokens, preferring a sentence end."""
        if self.estimate_tokens(prompt) <= max_tokens:
            return prompt
        max_chars = max_tokens * 4
        cut = get_token_counter().find_sentence_boundary(prompt, max_chars)
        if cut < max_chars * 0.8:
            cut = max_chars
        return prompt[:cut].rstrip()

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(name=self.model, provider=self.provider_name, max_tokens=self.max_tokens)

    async def test_connection(self) -> bool:
        try:
            await self._complete(GenerationRequest(prompt="Reply with OK.", max_tokens=5, temperature=0))
            return True
        except Exception as e:
            logger.warning(f"{self.provider_name} generation connection test failed: {e}")
            return False

    def _resolve(self, request: GenerationRequest) -> tuple:
        max_tokens = request.max_tokens if request.max_tokens is not None else self.max_tokens
        temperature = request.temperature if request.temperature is not None else self.temperature
        return max_tokens, temperature

    @abstractmethod
    async def _complete(self, request: GenerationRequest) -> GenerationResult:
        """One backend call; retried by the caller."""
        pass


class OllamaGenerationProvider(GenerationProvider):
    """Completions from a local Ollama server."""

    provider_name = "ollama"

    def __init__(
        self,
        model: str = config.OLLAMA_LLM_MODEL,
        base_url: str = config.OLLAMA_BASE_URL,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        provider_config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        super().__init__(model, max_tokens, temperature, provider_config or ProviderConfig.local())
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.config.timeout, transport=self._transport)

    async def _complete(self, request: GenerationRequest) -> GenerationResult:
        max_tokens, temperature = self._resolve(request)
        options: Dict[str, Any] = {"temperature": temperature, "num_predict": max_tokens}
        if request.stop_sequences:
            options["stop"] = request.stop_sequences

        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": request.prompt,
            "stream": False,
            "options": options,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if request.json_schema is not None:
            payload["prompt"] = with_schema(request.prompt, request.json_schema)
            payload["format"] = "json"

        async with self._client() as client:
            response = await client.post("/api/generate", json=payload)
            response.raise_for_status()
            data = response.json()

        if "response" not in data:
            raise ProviderError("Invalid generation response from Ollama")

        prompt_tokens = data.get("prompt_eval_count", 0)
        completion_tokens = data.get("eval_count", 0)
        return GenerationResult(
            text=data["response"],
            finish_reason=FinishReason.MAX_TOKENS if data.get("done_reason") == "length" else FinishReason.COMPLETED,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens
            ),
            model=data.get("model", self.model)
        )

    async def test_connection(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                names = [m.get("name", "") for m in response.json().get("models", [])]
        except Exception as e:
            logger.warning(f"Ollama connection test failed: {e}")
            return False
        wanted = self.model.split(":")[0]
        return any(name == self.model or name.split(":")[0] == wanted for name in names)


class OpenAIGenerationProvider(GenerationProvider):
    """Chat completions from the OpenAI API."""

    provider_name = "openai"

    # USD per 1K tokens: (prompt, completion)
    PRICING = {
        "gpt-4": (0.03, 0.06),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-3.5-turbo": (0.0005, 0.0015),
    }

    FINISH_REASONS = {
        "stop": FinishReason.COMPLETED,
        "length": FinishReason.MAX_TOKENS,
        "content_filter": FinishReason.STOP_SEQUENCE,
    }

    def __init__(
        self,
        api_key: str | None = config.OPENAI_API_KEY,
        model: str = config.OPENAI_LLM_MODEL,
        base_url: str = config.OPENAI_BASE_URL,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        provider_config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        if not api_key:
            raise ProviderConfigurationError("OPENAI_API_KEY is required for the openai generation provider")
        super().__init__(model, max_tokens, temperature, provider_config or ProviderConfig.remote())
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.config.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport
        )

    def cost_for(self, usage: TokenUsage) -> float:
        # Longest matching prefix so gpt-4-turbo is not priced as gpt-4
        matches = [name for name in self.PRICING if self.model.startswith(name)]
        if not matches:
            return 0.0
        prompt_price, completion_price = self.PRICING[max(matches, key=len)]
        return usage.prompt_tokens / 1000 * prompt_price + usage.completion_tokens / 1000 * completion_price

    async def _complete(self, request: GenerationRequest) -> GenerationResult:
        max_tokens, temperature = self._resolve(request)
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if request.stop_sequences:
            payload["stop"] = request.stop_sequences
        if request.json_schema is not None:
            payload["response_format"] = {"type": "json_object"}

        async with self._client() as client:
            response = await client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()

        try:
            choice = data["choices"][0]
            text = choice["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Invalid completion response from OpenAI: {e}")

        usage = data.get("usage", {})
        return GenerationResult(
            text=text,
            finish_reason=self.FINISH_REASONS.get(choice.get("finish_reason"), FinishReason.COMPLETED),
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
                total_tokens=usage.get("total_tokens", 0)
            ),
            model=data.get("model", self.model)
        )


class AnthropicGenerationProvider(GenerationProvider):
    """Messages API completions through the anthropic SDK."""

    provider_name = "anthropic"

    STOP_REASONS = {
        "end_turn": FinishReason.COMPLETED,
        "max_tokens": FinishReason.MAX_TOKENS,
        "stop_sequence": FinishReason.STOP_SEQUENCE,
    }

    def __init__(
        self,
        api_key: str | None = config.ANTHROPIC_API_KEY,
        model: str = config.ANTHROPIC_MODEL,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        provider_config: ProviderConfig | None = None,
        client: Any = None
    ):
        if client is None and not api_key:
            raise ProviderConfigurationError("ANTHROPIC_API_KEY is required for the anthropic generation provider")
        config_ = provider_config or ProviderConfig.remote()
        super().__init__(model, max_tokens, temperature, config_)
        # The SDK's own retries are disabled; RetryHandler owns retrying
        self.client = client or AsyncAnthropic(api_key=api_key, max_retries=0, timeout=config_.timeout)

    async def _complete(self, request: GenerationRequest) -> GenerationResult:
        max_tokens, temperature = self._resolve(request)
        prompt = request.prompt
        if request.json_schema is not None:
            prompt = with_schema(prompt, request.json_schema)

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": min(temperature, 1.0),
            "messages": [{"role": "user", "content": prompt}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.stop_sequences:
            kwargs["stop_sequences"] = request.stop_sequences

        response = await self.client.messages.create(**kwargs)

        text = "".join(getattr(block, "text", "") for block in response.content)
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        return GenerationResult(
            text=text,
            finish_reason=self.STOP_REASONS.get(response.stop_reason, FinishReason.COMPLETED),
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens
            ),
            model=getattr(response, "model", self.model)
        )
