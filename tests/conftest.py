"""Shared test fixtures."""

from __future__ import annotations

import pytest

from agentmix.agents.config import AgentConfig, RetryPolicy
from agentmix.agents.llm_providers import LLMProviderFactory

FAST_RETRY = RetryPolicy(max_attempts=3, delay_seconds=0.0, attempt_timeout_seconds=2.0)


@pytest.fixture()
def agent_config():
    """Build an AgentConfig whose provider name defaults to the agent name, with zero backoff."""

    def _make(name: str, provider: str | None = None, **options) -> AgentConfig:
        options.setdefault("retry", FAST_RETRY)
        return AgentConfig(agent_name=name, provider=provider or name, **options)

    return _make


@pytest.fixture()
def mock_factory():
    """Build an LLMProviderFactory with mock providers registered by name."""

    def _make(**providers) -> LLMProviderFactory:
        factory = LLMProviderFactory()
        for name, provider in providers.items():
            factory.register(name, provider)
        return factory

    return _make


@pytest.fixture()
def call_log() -> list[tuple[str, str]]:
    return []
