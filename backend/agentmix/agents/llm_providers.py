"""LLM Provider Protocol, optional capabilities, implementations, and factory."""

import asyncio
import json
import logging
import os
import time
from typing import Any, AsyncIterator, Mapping, Optional, Protocol, runtime_checkable

from agentmix.agents.config import AgentConfig
from agentmix.exceptions import ConfigurationError
from agentmix.models.agent_schemas import LLMResponse
from agentmix.models.enums import ProviderName

logger = logging.getLogger(__name__)


@runtime_checkable
class LLMProvider(Protocol):
    """Structural interface every LLM backend must satisfy.

    Implementations must honour task cancellation and raise errors the retry
    executor can classify: ``FatalProviderError`` / ``TransientProviderError``,
    or SDK exceptions carrying an HTTP status code.
    """

    @property
    def provider_name(self) -> str: ...

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.0,
    ) -> LLMResponse: ...

    async def complete_with_tools(
        self,
        system_prompt: str,
        user_message: str,
        tools: list[dict[str, Any]],
        *,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.0,
    ) -> LLMResponse: ...

    async def close(self) -> None: ...


@runtime_checkable
class SupportsStreaming(Protocol):
    """Optional capability: incremental token delivery."""

    def stream(
        self,
        system_prompt: str,
        user_message: str,
        *,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.0,
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class SupportsEndpointOverride(Protocol):
    """Optional capability: pointing the backend at a different base URL."""

    def set_endpoint(self, endpoint: str) -> None: ...


def _resolve_api_key(api_key: Optional[str], env_var: str, provider: str) -> str:
    key = api_key or os.environ.get(env_var)
    if not key:
        raise ConfigurationError(
            f"{provider}: API key missing — pass api_key or set {env_var}",
            details={"provider": provider, "env_var": env_var},
        )
    return key


def _usage(input_tokens: Optional[int], output_tokens: Optional[int]) -> dict[str, int]:
    return {"input_tokens": input_tokens or 0, "output_tokens": output_tokens or 0}


# ── ClaudeProvider ──────────────────────────────────────────────

class ClaudeProvider:
    """Anthropic Claude API."""

    provider_name: str = ProviderName.CLAUDE
    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
    DEFAULT_MAX_TOKENS = 4096

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = _resolve_api_key(api_key, "ANTHROPIC_API_KEY", self.provider_name)
        self._client = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self):
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    from anthropic import AsyncAnthropic
                    self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    def _request_kwargs(self, system_prompt, messages, model, max_output_tokens, temperature) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self.DEFAULT_MODEL,
            "max_tokens": max_output_tokens or self.DEFAULT_MAX_TOKENS,
            "temperature": temperature,
            "messages": messages,
        }
        # The Messages API rejects an empty system block.
        if system_prompt:
            kwargs["system"] = system_prompt
        return kwargs

    async def complete(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        client = await self._get_client()
        kwargs = self._request_kwargs(
            system_prompt, [{"role": "user", "content": user_message}],
            model, max_output_tokens, temperature,
        )
        start = time.monotonic()
        response = await client.messages.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)
        content = "".join(b.text for b in response.content if b.type == "text")
        if not content:
            logger.warning(
                "Empty Claude response: stop_reason=%s model=%s content_blocks=%d",
                response.stop_reason, kwargs["model"], len(response.content),
            )
        return LLMResponse(
            content=content,
            usage=_usage(response.usage.input_tokens, response.usage.output_tokens),
            model=kwargs["model"],
            latency_ms=latency_ms,
            provider=self.provider_name,
        )

    async def complete_with_tools(
        self, system_prompt, user_message, tools, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        client = await self._get_client()
        kwargs = self._request_kwargs(
            system_prompt, [{"role": "user", "content": user_message}],
            model, max_output_tokens, temperature,
        )
        kwargs["tools"] = [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "input_schema": tool.get("input_schema", {"type": "object", "properties": {}}),
            }
            for tool in tools
        ]
        start = time.monotonic()
        response = await client.messages.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append({"id": block.id, "name": block.name, "input": block.input})

        content = "\n".join(text_parts)
        if tool_calls and not content:
            content = json.dumps(tool_calls[0]["input"])

        return LLMResponse(
            content=content,
            usage=_usage(response.usage.input_tokens, response.usage.output_tokens),
            model=kwargs["model"],
            latency_ms=latency_ms,
            provider=self.provider_name,
            tool_calls=tool_calls or None,
        )

    async def stream(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> AsyncIterator[str]:
        client = await self._get_client()
        kwargs = self._request_kwargs(
            system_prompt, [{"role": "user", "content": user_message}],
            model, max_output_tokens, temperature,
        )
        async with client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ── OpenAIProvider (OpenAI and OpenAI-compatible servers) ───────

# provider -> (base_url, api key env var, default model)
OPENAI_COMPATIBLE: dict[str, tuple[Optional[str], Optional[str], str]] = {
    "openai":     (None,                             "OPENAI_API_KEY",     "gpt-4o-mini"),
    "ollama":     ("http://localhost:11434/v1",      None,                 "llama3.1"),
    "lmstudio":   ("http://localhost:1234/v1",       None,                 "local-model"),
    "openrouter": ("https://openrouter.ai/api/v1",   "OPENROUTER_API_KEY", "openai/gpt-4o-mini"),
    "groq":       ("https://api.groq.com/openai/v1", "GROQ_API_KEY",       "llama-3.1-8b-instant"),
    "deepseek":   ("https://api.deepseek.com/v1",    "DEEPSEEK_API_KEY",   "deepseek-chat"),
    "mistral":    ("https://api.mistral.ai/v1",      "MISTRAL_API_KEY",    "mistral-small-latest"),
}


class OpenAIProvider:
    """OpenAI chat completions, also used for any OpenAI-compatible server."""

    def __init__(self, name: str = "openai", api_key: Optional[str] = None) -> None:
        if name not in OPENAI_COMPATIBLE:
            raise ConfigurationError(f"Not an OpenAI-compatible provider: {name}")
        base_url, env_var, default_model = OPENAI_COMPATIBLE[name]
        self._name = str(name)
        self._base_url = base_url
        self._default_model = default_model
        # Local servers ignore the key but the SDK insists on one.
        self._api_key = _resolve_api_key(api_key, env_var, self._name) if env_var else (api_key or "not-needed")
        self._client = None
        self._client_lock = asyncio.Lock()

    @property
    def provider_name(self) -> str:
        return self._name

    @property
    def endpoint(self) -> Optional[str]:
        return self._base_url

    def set_endpoint(self, endpoint: str) -> None:
        if not endpoint.startswith(("http://", "https://")):
            raise ConfigurationError(f"{self._name}: endpoint must be an http(s) URL, got {endpoint!r}")
        if self._client is not None:
            raise ConfigurationError(
                f"{self._name}: endpoint cannot change once the client is in use",
                details={"provider": self._name, "endpoint": endpoint},
            )
        self._base_url = endpoint.rstrip("/")
        logger.debug("Endpoint override provider=%s endpoint=%s", self._name, self._base_url)

    async def _get_client(self):
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    def _request_kwargs(self, system_prompt, user_message, model, max_output_tokens, temperature) -> dict[str, Any]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_message})
        kwargs: dict[str, Any] = {
            "model": model or self._default_model,
            "temperature": temperature,
            "messages": messages,
        }
        if max_output_tokens:
            kwargs["max_tokens"] = max_output_tokens
        return kwargs

    def _to_response(self, response, model: str, latency_ms: int, content: str, tool_calls=None) -> LLMResponse:
        return LLMResponse(
            content=content,
            usage=_usage(
                response.usage.prompt_tokens if response.usage else 0,
                response.usage.completion_tokens if response.usage else 0,
            ),
            model=model,
            latency_ms=latency_ms,
            provider=self._name,
            tool_calls=tool_calls,
        )

    async def complete(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        client = await self._get_client()
        kwargs = self._request_kwargs(system_prompt, user_message, model, max_output_tokens, temperature)
        start = time.monotonic()
        response = await client.chat.completions.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)
        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        return self._to_response(response, kwargs["model"], latency_ms, content)

    async def complete_with_tools(
        self, system_prompt, user_message, tools, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        client = await self._get_client()
        kwargs = self._request_kwargs(system_prompt, user_message, model, max_output_tokens, temperature)
        kwargs["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for tool in tools
        ]
        start = time.monotonic()
        response = await client.chat.completions.create(**kwargs)
        latency_ms = int((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        content = choice.message.content or ""
        tool_calls = []
        for tc in choice.message.tool_calls or []:
            tool_calls.append({
                "id": tc.id,
                "name": tc.function.name,
                "input": json.loads(tc.function.arguments),
            })
        if tool_calls and not content:
            content = json.dumps(tool_calls[0]["input"])
        return self._to_response(response, kwargs["model"], latency_ms, content, tool_calls or None)

    async def stream(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> AsyncIterator[str]:
        client = await self._get_client()
        kwargs = self._request_kwargs(system_prompt, user_message, model, max_output_tokens, temperature)
        response = await client.chat.completions.create(stream=True, **kwargs)
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


# ── AzureOpenAIProvider ─────────────────────────────────────────

class AzureOpenAIProvider(OpenAIProvider):
    """Azure OpenAI (endpoint, deployment and API version from the environment)."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._name = ProviderName.AZURE_OPENAI
        self._api_key = _resolve_api_key(api_key, "AZURE_OPENAI_API_KEY", self._name)
        try:
            self._base_url = os.environ["AZURE_OPENAI_ENDPOINT"]
            self._default_model = os.environ["AZURE_OPENAI_DEPLOYMENT"]
        except KeyError as e:
            raise ConfigurationError(f"{self._name}: missing environment variable {e.args[0]}") from e
        self._api_version = os.environ.get("AZURE_OPENAI_API_VERSION", "2024-10-21")
        self._client = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self):
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    from openai import AsyncAzureOpenAI
                    self._client = AsyncAzureOpenAI(
                        api_key=self._api_key,
                        azure_endpoint=self._base_url,
                        api_version=self._api_version,
                    )
        return self._client


# ── GeminiProvider ──────────────────────────────────────────────

class GeminiProvider:
    """Google Gemini API (uses google-genai SDK)."""

    provider_name: str = ProviderName.GEMINI
    DEFAULT_MODEL = "gemini-2.5-flash"

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = _resolve_api_key(api_key, "GEMINI_API_KEY", self.provider_name)
        self._client = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self):
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    from google import genai
                    self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def _generate(self, user_message, config, model_name) -> tuple[Any, int]:
        client = await self._get_client()
        start = time.monotonic()
        response = await client.aio.models.generate_content(
            model=model_name, contents=user_message, config=config,
        )
        return response, int((time.monotonic() - start) * 1000)

    def _usage_of(self, response) -> dict[str, int]:
        meta = response.usage_metadata
        return _usage(
            meta.prompt_token_count if meta else 0,
            meta.candidates_token_count if meta else 0,
        )

    async def complete(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        from google.genai import types
        model_name = model or self.DEFAULT_MODEL
        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
        )
        response, latency_ms = await self._generate(user_message, config, model_name)
        return LLMResponse(
            content=response.text or "",
            usage=self._usage_of(response),
            model=model_name,
            latency_ms=latency_ms,
            provider=self.provider_name,
        )

    async def complete_with_tools(
        self, system_prompt, user_message, tools, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        from google.genai import types
        model_name = model or self.DEFAULT_MODEL
        gemini_tools = [
            types.Tool(function_declarations=[types.FunctionDeclaration(
                name=tool["name"],
                description=tool.get("description", ""),
                parameters=tool.get("input_schema"),
            )])
            for tool in tools
        ]
        config = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
            tools=gemini_tools,
        )
        response, latency_ms = await self._generate(user_message, config, model_name)

        # response.text raises if only function_call parts exist
        try:
            content = response.text or ""
        except ValueError:
            content = ""
        tool_calls = []
        if response.candidates and response.candidates[0].content:
            for part in response.candidates[0].content.parts:
                fc = getattr(part, "function_call", None)
                if fc:
                    tool_calls.append({"id": fc.name, "name": fc.name, "input": dict(fc.args) if fc.args else {}})
        if tool_calls and not content:
            content = json.dumps(tool_calls[0]["input"])

        return LLMResponse(
            content=content,
            usage=self._usage_of(response),
            model=model_name,
            latency_ms=latency_ms,
            provider=self.provider_name,
            tool_calls=tool_calls or None,
        )

    async def close(self) -> None:
        self._client = None


# ── LLMProviderFactory ──────────────────────────────────────────

class LLMProviderFactory:
    """Builds and caches provider instances for agent configurations.

    The cache lives on the factory instance, so each orchestrator owns the
    clients it created. Callers may ``register`` ready-made providers under
    any name and reference that name from ``AgentConfig.provider``.
    """

    def __init__(self, api_keys: Optional[Mapping[str, str]] = None) -> None:
        self._api_keys = dict(api_keys or {})
        self._registered: dict[str, LLMProvider] = {}
        self._providers: dict[tuple[str, Optional[str], Optional[str]], LLMProvider] = {}

    def register(self, name: str, provider: LLMProvider) -> None:
        if not isinstance(provider, LLMProvider):
            raise ConfigurationError(f"Object registered as {name!r} does not implement LLMProvider")
        self._registered[name] = provider

    def get_provider(self, config: AgentConfig) -> LLMProvider:
        registered = self._registered.get(config.provider)
        if registered is not None:
            # Registered instances are shared by every agent naming them.
            if config.endpoint:
                raise ConfigurationError(
                    f"agent {config.agent_name!r}: endpoint cannot be set on registered provider "
                    f"{config.provider!r}; configure the instance before registering it",
                    details={"provider": config.provider, "endpoint": config.endpoint},
                )
            return registered

        key = (config.provider, config.endpoint, config.api_key)
        if key not in self._providers:
            provider = self._create(config.provider, config.api_key or self._api_keys.get(config.provider))
            if config.endpoint:
                self._apply_endpoint(provider, config.endpoint)
            self._providers[key] = provider
            logger.info(
                "Provider created provider=%s endpoint=%s agent=%s",
                config.provider, config.endpoint or "default", config.agent_name,
            )
        return self._providers[key]

    def _create(self, name: str, api_key: Optional[str]) -> LLMProvider:
        if name == ProviderName.CLAUDE:
            return ClaudeProvider(api_key)
        if name == ProviderName.AZURE_OPENAI:
            return AzureOpenAIProvider(api_key)
        if name == ProviderName.GEMINI:
            return GeminiProvider(api_key)
        if name in OPENAI_COMPATIBLE:
            return OpenAIProvider(name, api_key)
        if name == ProviderName.MOCK:
            from agentmix.agents.mock_provider import MockProvider
            return MockProvider()
        raise ConfigurationError(f"Unknown provider: {name}")

    @staticmethod
    def _apply_endpoint(provider: LLMProvider, endpoint: str) -> None:
        if not isinstance(provider, SupportsEndpointOverride):
            raise ConfigurationError(
                f"Provider {provider.provider_name} does not support endpoint override",
                details={"provider": provider.provider_name, "endpoint": endpoint},
            )
        provider.set_endpoint(endpoint)

    async def close(self) -> None:
        for provider in list(self._providers.values()) + list(self._registered.values()):
            try:
                await provider.close()
            except Exception as e:
                logger.warning("Provider close failed provider=%s error=%s", provider.provider_name, e)
        self._providers.clear()
