"""Scripted in-process LLM backend for offline runs and tests."""

import asyncio
import time
from typing import Any, Callable, Optional, Sequence, Union

from agentmix.exceptions import FatalProviderError
from agentmix.models.agent_schemas import LLMResponse
from agentmix.models.enums import ProviderName

MockStep = Union[str, BaseException, Callable[[str], str]]


class MockProvider:
    """Returns preset responses in order, optionally raising scripted errors.

    Each step is a string (returned as content), an exception instance (raised)
    or a callable receiving the user message and returning content. When the
    script runs out the provider either loops or raises a fatal error. With no
    script at all, ``default_response`` is returned for every call.

    Instrumentation: ``calls`` records every request, ``active`` / ``max_active``
    track concurrent in-flight calls, and ``call_log`` (if shared between
    several mocks) records the global call order as ``(label, user_message)``.
    """

    provider_name: str = ProviderName.MOCK

    def __init__(
        self,
        responses: Sequence[MockStep] = (),
        *,
        default_response: str = "This is a mock response",
        loop_responses: bool = False,
        delay_seconds: float = 0.0,
        label: str = "mock",
        call_log: Optional[list[tuple[str, str]]] = None,
    ) -> None:
        self._responses = list(responses)
        self._index = 0
        self._default_response = default_response
        self._loop_responses = loop_responses
        self._delay_seconds = delay_seconds
        self.label = label
        self.call_log = call_log
        self.endpoint: Optional[str] = None
        self.calls: list[dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    def set_endpoint(self, endpoint: str) -> None:
        self.endpoint = endpoint

    def _next_step(self) -> MockStep:
        if not self._responses:
            return self._default_response
        if self._index >= len(self._responses):
            if not self._loop_responses:
                raise FatalProviderError(
                    f"mock responses exhausted for {self.label}", provider=self.provider_name,
                )
            self._index = 0
        step = self._responses[self._index]
        self._index += 1
        return step

    async def complete(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        return await self._respond(system_prompt, user_message, model, max_output_tokens, temperature, None)

    async def complete_with_tools(
        self, system_prompt, user_message, tools, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ) -> LLMResponse:
        return await self._respond(system_prompt, user_message, model, max_output_tokens, temperature, tools)

    async def _respond(self, system_prompt, user_message, model, max_output_tokens, temperature, tools) -> LLMResponse:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_message": user_message,
            "model": model,
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
            "tools": tools,
        })
        if self.call_log is not None:
            self.call_log.append((self.label, user_message))

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        start = time.monotonic()
        try:
            if self._delay_seconds:
                await asyncio.sleep(self._delay_seconds)
            step = self._next_step()
            if isinstance(step, BaseException):
                raise step
            content = step(user_message) if callable(step) else step
        finally:
            self.active -= 1

        return LLMResponse(
            content=content,
            usage={"input_tokens": len(user_message) // 4, "output_tokens": len(content) // 4},
            model=model or "mock-model",
            latency_ms=int((time.monotonic() - start) * 1000),
            provider=self.provider_name,
        )

    async def stream(
        self, system_prompt, user_message, *,
        model=None, max_output_tokens=None, temperature=0.0,
    ):
        response = await self.complete(
            system_prompt, user_message,
            model=model, max_output_tokens=max_output_tokens, temperature=temperature,
        )
        for i, word in enumerate(response.content.split(" ")):
            yield word if i == 0 else " " + word

    async def close(self) -> None:
        self.closed = True
