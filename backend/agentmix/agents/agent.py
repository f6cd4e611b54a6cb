"""Agent — a named backend configuration bound to a provider through a retry executor."""

import logging
from typing import AsyncIterator, Optional

from agentmix.agents.config import AgentConfig
from agentmix.agents.llm_providers import LLMProvider, SupportsStreaming
from agentmix.agents.retry import RetryExecutor
from agentmix.exceptions import UnsupportedCapabilityError
from agentmix.models.agent_schemas import GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)


class Agent:
    """
    One independently configured participant of a fan-out round.

    Agents hold only their frozen config, the provider they were bound to and a
    stateless RetryExecutor, so the same agent may serve concurrent requests.
    """

    def __init__(
        self,
        config: AgentConfig,
        llm_provider: LLMProvider,
        executor: Optional[RetryExecutor] = None,
    ) -> None:
        self.config = config
        self.llm = llm_provider
        self._executor = executor or RetryExecutor(config.retry)

    @property
    def name(self) -> str:
        return self.config.agent_name

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, provider={self.llm.provider_name!r}, model={self.config.model!r})"

    def build_request(self, text: str, *, system_prompt: Optional[str] = None) -> GenerationRequest:
        return GenerationRequest(
            prompt=text,
            system_prompt=self.config.system_prompt if system_prompt is None else system_prompt,
            model=self.config.model,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
            tools=self.config.tools,
        )

    async def generate(
        self,
        text: str,
        *,
        system_prompt: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> GenerationResult:
        """Generate a response for ``text`` through the retry executor.

        Raises AgentCallError subclasses when no usable response was produced.
        """
        request = self.build_request(text, system_prompt=system_prompt)
        return await self._executor.execute(self.llm, request, agent_name=self.name, deadline=deadline)

    async def stream(self, text: str, *, system_prompt: Optional[str] = None) -> AsyncIterator[str]:
        """Yield response tokens as the backend produces them. Not retried."""
        if not isinstance(self.llm, SupportsStreaming):
            raise UnsupportedCapabilityError(
                f"Provider {self.llm.provider_name} does not support streaming (agent {self.name})",
                provider=self.llm.provider_name,
                capability="streaming",
            )
        request = self.build_request(text, system_prompt=system_prompt)
        logger.debug("Streaming agent=%s provider=%s", self.name, self.llm.provider_name)
        async for token in self.llm.stream(
            request.system_prompt, request.prompt,
            model=request.model,
            max_output_tokens=request.max_output_tokens,
            temperature=request.temperature,
        ):
            yield token
