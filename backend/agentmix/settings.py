"""Runtime configuration for the default MOA, loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from agentmix.agents.config import AgentConfig, MOAConfig, RetryPolicy
from agentmix.exceptions import ConfigurationError

# provider name -> environment variable holding its API key
API_KEY_ENV_VARS: dict[str, str] = {
    "claude": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "azure_openai": "AZURE_OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}


@dataclass(slots=True)
class RetrySettings:
    """Retry knobs shared by every agent of the default MOA."""

    max_attempts: int = 3
    delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    attempt_timeout_seconds: float = 60.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            delay_seconds=self.delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_seconds=self.max_delay_seconds,
            attempt_timeout_seconds=self.attempt_timeout_seconds,
        )


@dataclass(slots=True)
class MOASettings:
    """Shape of the default mixture."""

    agents: tuple[str, ...] = ("openai:gpt-4o-mini",)
    aggregator: str = "openai:gpt-4o-mini"
    iterations: int = 1
    max_parallel: Optional[int] = None
    agent_timeout_seconds: Optional[float] = 30.0
    temperature: float = 0.7


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    log_level: str = "INFO"
    log_file: Optional[str] = "agentmix.log"
    moa: MOASettings = field(default_factory=MOASettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    api_keys: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from the environment (and a local .env file, if any)."""

        load_dotenv()
        return cls(
            log_level=os.getenv("AGENTMIX_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("AGENTMIX_LOG_FILE", "agentmix.log") or None,
            moa=MOASettings(
                agents=_split_csv(os.getenv("AGENTMIX_AGENTS", "openai:gpt-4o-mini")),
                aggregator=os.getenv("AGENTMIX_AGGREGATOR", "openai:gpt-4o-mini").strip(),
                iterations=_int_env("AGENTMIX_ITERATIONS", 1),
                max_parallel=_optional_int_env("AGENTMIX_MAX_PARALLEL"),
                agent_timeout_seconds=_optional_float_env("AGENTMIX_AGENT_TIMEOUT_SECONDS", 30.0),
                temperature=_float_env("AGENTMIX_TEMPERATURE", 0.7),
            ),
            retry=RetrySettings(
                max_attempts=_int_env("AGENTMIX_RETRY_MAX_ATTEMPTS", 3),
                delay_seconds=_float_env("AGENTMIX_RETRY_DELAY_SECONDS", 2.0),
                backoff_multiplier=_float_env("AGENTMIX_RETRY_BACKOFF", 2.0),
                max_delay_seconds=_float_env("AGENTMIX_RETRY_MAX_DELAY_SECONDS", 30.0),
                attempt_timeout_seconds=_float_env("AGENTMIX_ATTEMPT_TIMEOUT_SECONDS", 60.0),
            ),
            api_keys=_collect_api_keys(),
        )

    def build_moa_config(self) -> MOAConfig:
        """Turn the ``provider:model`` specs into a validated MOAConfig."""

        policy = self.retry.to_policy()
        agents: list[AgentConfig] = []
        seen: dict[str, int] = {}
        for spec in self.moa.agents:
            provider, model = parse_agent_spec(spec)
            base_name = f"{provider}/{model or 'default'}"
            seen[base_name] = seen.get(base_name, 0) + 1
            name = base_name if seen[base_name] == 1 else f"{base_name}-{seen[base_name]}"
            agents.append(AgentConfig(
                agent_name=name,
                provider=provider,
                model=model,
                temperature=self.moa.temperature,
                retry=policy,
            ))

        provider, model = parse_agent_spec(self.moa.aggregator)
        aggregator = AgentConfig(
            agent_name="aggregator",
            provider=provider,
            model=model,
            temperature=self.moa.temperature,
            retry=policy,
        )
        return MOAConfig(
            agents=agents,
            aggregator=aggregator,
            iterations=self.moa.iterations,
            max_parallel=self.moa.max_parallel,
            agent_timeout_seconds=self.moa.agent_timeout_seconds,
        )


def parse_agent_spec(spec: str) -> tuple[str, Optional[str]]:
    """Split ``provider:model`` (model may itself contain colons, e.g. ``ollama:llama3:8b``)."""

    provider, _, model = spec.strip().partition(":")
    provider = provider.strip().lower()
    if not provider:
        raise ConfigurationError(f"invalid agent spec {spec!r}: expected 'provider:model'")
    return provider, (model.strip() or None)


def _collect_api_keys() -> dict[str, str]:
    return {
        provider: os.environ[env_var]
        for provider, env_var in API_KEY_ENV_VARS.items()
        if os.environ.get(env_var)
    }


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _optional_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw or raw.lower() == "none":
        return None
    return _int_env(name, 0)


def _optional_float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return default
    if not raw.strip() or raw.strip().lower() == "none":
        return None
    return _float_env(name, 0.0)
